import logging
from collections import Counter, deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import now_utc

logger = logging.getLogger("crash-observer")


class DiagnosticLog:
    """Bounded tail of structured diagnostic entries, mirrored to the logger."""

    def __init__(self, retention: int = 2000):
        self.entries = deque(maxlen=retention)

    def push(self, type: str, **extra: Any) -> Dict[str, Any]:
        entry = {"type": type, "ts": now_utc().isoformat(), **extra}
        self.entries.append(entry)
        logger.info(f"[{type}] {extra}")
        return entry

    def tail(self, limit: int = 100) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        items = list(self.entries)[-limit:]
        return [dict(e) for e in items]


# -------------------- In-memory ingestion counters --------------------
class Metrics:
    """Counters for the stream ingestion path, reported by /api/metrics."""

    COUNTERS = (
        "totalMessagesProcessed",
        "totalEnvelopes",
        "framesDropped",
        "keepalivesAnswered",
        "wagersAccepted",
        "wagersDiscarded",
        "roundsFinalized",
        "streamDrops",
    )

    def __init__(self):
        self.started_at = now_utc()
        self.counters: Counter = Counter(dict.fromkeys(self.COUNTERS, 0))
        self.errors: Counter = Counter()
        self.schema_results: Dict[str, Counter] = {}
        self.last_message_at: Optional[datetime] = None
        self.last_error_at: Optional[datetime] = None

    def bump(self, name: str, n: int = 1):
        self.counters[name] += n

    def message_received(self):
        self.counters["totalMessagesProcessed"] += 1
        self.last_message_at = now_utc()

    def error(self, key: str):
        self.errors[key] += 1
        self.last_error_at = now_utc()

    def schema_checked(self, schema_key: str, ok: bool):
        self.schema_results.setdefault(schema_key, Counter())["ok" if ok else "fail"] += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "serviceUptimeSec": int((now_utc() - self.started_at).total_seconds()),
            "lastMessageAt": (self.last_message_at.isoformat() if self.last_message_at else None),
            "lastErrorAt": (self.last_error_at.isoformat() if self.last_error_at else None),
            **self.counters,
            "errorCounters": dict(self.errors),
            "schemaValidation": {
                "total": sum(sum(c.values()) for c in self.schema_results.values()),
                "perEvent": {k: {"ok": c["ok"], "fail": c["fail"]} for k, c in self.schema_results.items()},
            },
        }
