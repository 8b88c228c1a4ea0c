import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return default


class Settings(BaseModel):
    ws_url: str = "wss://ws.cs2run.app/connection/websocket"
    token_url: str = "https://cs2run.app/current-state"
    channel: str = "csgorun:crash"
    port: int = 10000
    log_retention: int = 2000
    history_size: int = 50
    ws_open_timeout: float = 10.0
    heartbeat_interval: float = 20.0
    token_retry_seconds: float = 3.0
    subscribe_delay_seconds: float = 0.2
    self_ping_url: Optional[str] = None
    self_ping_interval: float = 240.0
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            ws_url=os.environ.get("WS_URL", d.ws_url),
            token_url=os.environ.get("TOKEN_URL", d.token_url),
            channel=os.environ.get("CHANNEL", d.channel),
            port=_env_int("PORT", d.port),
            log_retention=max(1, _env_int("LOG_RETENTION", d.log_retention)),
            history_size=max(1, _env_int("HISTORY_SIZE", d.history_size)),
            ws_open_timeout=_env_float("WS_OPEN_TIMEOUT", d.ws_open_timeout),
            heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", d.heartbeat_interval),
            token_retry_seconds=_env_float("TOKEN_RETRY_SECONDS", d.token_retry_seconds),
            # subscribe must never race the connect frame
            subscribe_delay_seconds=max(0.01, _env_float("SUBSCRIBE_DELAY_SECONDS", d.subscribe_delay_seconds)),
            self_ping_url=os.environ.get("SELF_PING_URL") or None,
            self_ping_interval=_env_float("SELF_PING_INTERVAL", d.self_ping_interval),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        )
