import logging
from typing import Any, Optional

import aiohttp

logger = logging.getLogger("crash-observer")

TOKEN_PATH = ("data", "main", "centrifugeToken")


def extract_token(body: Any) -> Optional[str]:
    node = body
    for key in TOKEN_PATH:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, str) and node:
        return node
    return None


class TokenSource:
    """Fetches the short-lived stream credential. Returns None on any failure."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def fetch(self) -> Optional[str]:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(self.url) as resp:
                    body = await resp.json(content_type=None)
        except Exception as e:
            logger.warning(f"Token fetch failed: {e}")
            return None
        token = extract_token(body)
        if token is None:
            logger.warning("Token missing from credential response")
        return token
