import asyncio
import contextlib
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger("crash-observer")


class SelfPinger:
    """Periodically GETs our own public URL so idle hosting does not suspend us."""

    def __init__(self, url: str, interval: float = 240.0, timeout: float = 10.0):
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self.last_status: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def ping_once(self) -> Optional[int]:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(self.url) as resp:
                    self.last_status = resp.status
        except Exception as e:
            logger.warning(f"Self-ping failed: {e}")
            self.last_status = None
        return self.last_status

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.ping_once()
