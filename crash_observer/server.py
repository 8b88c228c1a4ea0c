from fastapi import FastAPI, APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from starlette.middleware.cors import CORSMiddleware
import os
import signal
import logging
import asyncio
from typing import Optional

from .config import Settings
from .connection import ConnectionManager
from .context import ObserverContext
from .keepalive import SelfPinger
from .models import ConnectionState, RoundSnapshot, now_utc
from .schemas import SchemaRegistry

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("crash-observer")

SHUTDOWN_EXIT_DELAY = 0.5
STREAM_HEARTBEAT_SECONDS = 30

api_router = APIRouter(prefix="/api")


def _ctx(request: Request) -> ObserverContext:
    return request.app.state.ctx


def _conn(request: Request) -> ConnectionManager:
    return request.app.state.connection


########################################################
# API Routes (read-only projections + admin shutdown)
########################################################

@api_router.get("/health")
async def health(request: Request):
    conn = _conn(request)
    return {"status": "ok", "time": now_utc().isoformat(), "running": conn.running, "upstreamConnected": conn.connected}


@api_router.get("/connection", response_model=ConnectionState)
async def connection(request: Request):
    return _conn(request).state()


@api_router.get("/round/current", response_model=RoundSnapshot)
async def current_round(request: Request):
    return _ctx(request).rounds.snapshot()


@api_router.get("/history")
async def history(request: Request, limit: Optional[int] = Query(default=None)):
    store = _ctx(request).history
    if limit is None:
        limit = store.capacity
    limit = max(1, min(limit, store.capacity))
    items = [r.model_dump(mode="json") for r in store.snapshot(limit)]
    return {"count": len(items), "items": items}


@api_router.get("/logs")
async def logs(request: Request, limit: int = 100):
    ctx = _ctx(request)
    limit = max(1, min(limit, ctx.settings.log_retention))
    return {"items": ctx.diagnostics.tail(limit)}


@api_router.get("/metrics")
async def metrics_endpoint(request: Request):
    ctx = _ctx(request)
    conn = _conn(request)
    return {
        **ctx.metrics.as_dict(),
        "currentSocketConnected": conn.connected,
        "consecutiveFailures": conn.consecutive_failures,
        "historySize": len(ctx.history),
        "wsSubscribers": len(ctx.stream.subscribers),
    }


@api_router.get("/schemas")
async def list_schemas(request: Request):
    registry = _ctx(request).schema_registry
    if not registry:
        return {"items": []}
    return registry.describe()


@api_router.post("/shutdown")
async def shutdown(request: Request):
    app = request.app
    ctx = _ctx(request)
    logger.info("[SERVER] Shutdown initiated via /api/shutdown endpoint")
    ctx.diagnostics.push("SHUTDOWN", reason="manual_request")
    try:
        await app.state.connection.stop()
    except Exception as e:
        logger.error(f"[SERVER] Error stopping stream: {e}")
    if app.state.exit_on_shutdown:
        app.state.exit_task = asyncio.create_task(_exit_process())
    return {"status": "shutting_down"}


async def _exit_process():
    # let the response flush before uvicorn receives SIGTERM
    await asyncio.sleep(SHUTDOWN_EXIT_DELAY)
    os.kill(os.getpid(), signal.SIGTERM)


########################################################
# App factory
########################################################

def create_app(settings: Optional[Settings] = None, start_stream: bool = True,
               exit_on_shutdown: bool = True, connect=None, token_source=None) -> FastAPI:
    settings = settings or Settings.from_env()
    try:
        schema_registry = SchemaRegistry()
    except Exception as e:
        logger.warning(f"SchemaRegistry load failed: {e}")
        schema_registry = None

    ctx = ObserverContext(settings, schema_registry)
    app = FastAPI(title="crash-observer")
    app.state.ctx = ctx
    app.state.connection = ConnectionManager(ctx, token_source=token_source, connect=connect)
    app.state.pinger = SelfPinger(settings.self_ping_url, settings.self_ping_interval) if settings.self_ping_url else None
    app.state.exit_on_shutdown = exit_on_shutdown

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "ok"

    @app.websocket("/api/ws/stream")
    async def ws_stream(ws: WebSocket):
        stream = ctx.stream
        await stream.subscribe(ws)
        try:
            while True:
                # inbound messages are ignored; reading surfaces the disconnect
                try:
                    await asyncio.wait_for(ws.receive_text(), timeout=STREAM_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    try:
                        await ws.send_json({"type": "heartbeat", "time": now_utc().isoformat()})
                    except Exception:
                        break
        except WebSocketDisconnect:
            pass
        finally:
            stream.unsubscribe(ws)

    app.include_router(api_router)
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        if start_stream:
            app.state.connection.start()
            logger.info("Crash stream observer started")
        if app.state.pinger:
            app.state.pinger.start()
            logger.info(f"Self-ping enabled for {settings.self_ping_url}")

    @app.on_event("shutdown")
    async def shutdown_event():
        try:
            if app.state.pinger:
                await app.state.pinger.stop()
        finally:
            await app.state.connection.stop()

    return app
