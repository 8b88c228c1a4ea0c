"""Upstream websocket lifecycle: connect, authenticate, subscribe, reconnect."""
import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

from .context import ObserverContext
from .frames import KEEPALIVE_PONG, decode_frame
from .models import ConnectionSession, ConnectionState, now_utc
from .token_source import TokenSource

logger = logging.getLogger("crash-observer")

BACKOFF_BASE = 2.0
BACKOFF_FACTOR = 1.5
BACKOFF_CAP = 30.0

CONNECT_ID = 1
SUBSCRIBE_ID = 100


def backoff_delay(failures: int, base: float = BACKOFF_BASE, factor: float = BACKOFF_FACTOR,
                  cap: float = BACKOFF_CAP) -> float:
    if failures <= 0:
        return min(base, cap)
    # past this exponent the cap always wins
    return min(cap, base * (factor ** min(failures, 32)))


def connect_message(token: str) -> dict:
    return {"id": CONNECT_ID, "connect": {"token": token, "subs": {}}}


def subscribe_message(channel: str) -> dict:
    return {"id": SUBSCRIBE_ID, "subscribe": {"channel": channel}}


class ConnectionManager:
    def __init__(self, ctx: ObserverContext, token_source: Optional[TokenSource] = None,
                 connect: Optional[Callable[..., Any]] = None):
        self.ctx = ctx
        self.settings = ctx.settings
        self.token_source = token_source or TokenSource(self.settings.token_url)
        self._connect = connect or websockets.connect
        self.running = True
        self.ws = None
        self.session: Optional[ConnectionSession] = None
        self.last_session: Optional[ConnectionSession] = None
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.session is not None

    def start(self):
        if self._task is None:
            self.running = True
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run())

    async def stop(self, timeout: float = 5.0):
        self.running = False
        self._stop_event.set()
        ws = self.ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.error(f"Error on websocket close: {e}")
        if self._task:
            done, _ = await asyncio.wait({self._task}, timeout=timeout)
            if not done:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

    async def _sleep(self, delay: float):
        """Sleep that ends early once stop() is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self):
        while self.running:
            token = await self.token_source.fetch()
            if not self.running:
                break
            if not token:
                self.ctx.metrics.error("token_missing")
                self.ctx.diagnostics.push("TOKEN_MISSING", url=self.settings.token_url)
                await self._sleep(self.settings.token_retry_seconds)
                continue

            if await self._run_session(token):
                delay = backoff_delay(0)
            else:
                delay = backoff_delay(self.consecutive_failures)
                self.consecutive_failures += 1
            if self.running:
                logger.info(f"Reconnecting in {delay:.1f}s (failures={self.consecutive_failures})")
                await self._sleep(delay)
        logger.info("Connection loop stopped")

    async def _run_session(self, token: str) -> bool:
        """One socket lifetime. Returns False if the socket never opened."""
        hb = self.settings.heartbeat_interval
        try:
            ws = await self._connect(
                self.settings.ws_url,
                open_timeout=self.settings.ws_open_timeout,
                ping_interval=hb,
                ping_timeout=hb,
            )
        except Exception as e:
            logger.error(f"Websocket open failed: {e}")
            self.ctx.metrics.error("ws_open")
            self.ctx.diagnostics.push("WS_ERROR", stage="open", error=str(e))
            return False

        self.ws = ws
        self.session = ConnectionSession()
        self.consecutive_failures = 0
        self.ctx.diagnostics.push("WS_OPEN", url=self.settings.ws_url)
        reason: Optional[str] = None
        try:
            if not self.running:
                return True
            await self._handshake(ws, token)
            async for raw in ws:
                await self.handle_message(ws, raw)
        except ConnectionClosed as e:
            reason = str(e)
        except Exception as e:
            logger.error(f"Websocket session error: {e}")
            self.ctx.metrics.error("ws_session")
            self.ctx.diagnostics.push("WS_ERROR", stage="session", error=str(e))
            reason = f"error: {e}"
        finally:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Websocket close warning: {e}")
            self._record_close(ws, reason)
        return True

    def _record_close(self, ws: Any, reason: Optional[str]):
        session = self.session
        self.ws = None
        self.session = None
        if session is None:
            return
        if reason is None:
            code = getattr(ws, "close_code", None)
            text = getattr(ws, "close_reason", None)
            reason = f"code={code} reason={text or ''}".strip()
        session.closed_at = now_utc()
        session.close_reason = reason
        duration_ms = int((session.closed_at - session.opened_at).total_seconds() * 1000)
        self.last_session = session
        self.ctx.diagnostics.push("WS_CLOSE", reason=reason, durationMs=duration_ms)

    async def _handshake(self, ws: Any, token: str):
        await ws.send(json.dumps(connect_message(token)))
        await asyncio.sleep(self.settings.subscribe_delay_seconds)
        await ws.send(json.dumps(subscribe_message(self.settings.channel)))
        logger.info(f"Subscribed to channel {self.settings.channel}")

    async def handle_message(self, ws: Any, raw: Union[str, bytes]):
        self.ctx.metrics.message_received()
        frame = decode_frame(raw)
        if frame.keepalive:
            await ws.send(json.dumps(KEEPALIVE_PONG))
            self.ctx.metrics.bump("keepalivesAnswered")
            if self.session is not None:
                self.session.last_heartbeat_at = now_utc()
        if frame.malformed:
            sample = raw[:200] if isinstance(raw, str) else bytes(raw[:200]).decode("utf-8", errors="replace")
            self.ctx.metrics.bump("framesDropped")
            self.ctx.diagnostics.push("FRAME_DROPPED", sample=sample)
            return
        for envelope in frame.envelopes:
            await self.ctx.dispatch(envelope)

    def state(self) -> ConnectionState:
        session = self.session
        last = self.last_session
        since_ms = None
        if session is not None:
            since_ms = int((datetime.now(tz=timezone.utc) - session.opened_at).total_seconds() * 1000)
        return ConnectionState(
            connected=self.connected,
            running=self.running,
            opened_at=session.opened_at if session else None,
            last_heartbeat_at=session.last_heartbeat_at if session else None,
            since_connected_ms=since_ms,
            consecutive_failures=self.consecutive_failures,
            last_close_reason=last.close_reason if last else None,
            last_closed_at=last.closed_at if last else None,
        )
