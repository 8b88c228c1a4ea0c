import asyncio
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .diagnostics import Metrics
from .models import Notification, now_utc


class NotificationStream:
    """Fans round notifications out to /api/ws/stream subscribers.

    A subscriber whose send fails or exceeds ``send_timeout`` is dropped.
    """

    def __init__(self, metrics: Optional[Metrics] = None, send_timeout: float = 1.0):
        self.subscribers: Set[WebSocket] = set()
        self.metrics = metrics
        self.send_timeout = send_timeout

    @staticmethod
    def to_message(n: Notification) -> Dict[str, Any]:
        return {"schema": "v1", "type": n.type, "roundId": n.round_id, **n.payload, "ts": now_utc().isoformat()}

    async def subscribe(self, ws: WebSocket):
        await ws.accept()
        self.subscribers.add(ws)
        await ws.send_json({"type": "hello", "time": now_utc().isoformat()})

    def unsubscribe(self, ws: WebSocket):
        self.subscribers.discard(ws)

    async def publish(self, n: Notification) -> int:
        """Send one notification to every subscriber; returns how many were dropped."""
        targets = list(self.subscribers)
        if not targets:
            return 0
        message = self.to_message(n)
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_json(message), timeout=self.send_timeout) for ws in targets),
            return_exceptions=True,
        )
        dropped = [ws for ws, r in zip(targets, results) if isinstance(r, Exception)]
        for ws in dropped:
            self.subscribers.discard(ws)
        if dropped and self.metrics:
            self.metrics.bump("streamDrops", len(dropped))
        return len(dropped)
