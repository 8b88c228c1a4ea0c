import logging
from typing import Any, Dict, List, Optional

from .broadcast import NotificationStream
from .config import Settings
from .diagnostics import DiagnosticLog, Metrics
from .frames import parse_events, push_data
from .history import HistoryStore
from .models import Notification, WagerPlaced
from .rounds import AGGREGATE_READY, DELTA_KNOWN, ROUND_FINALIZED, WAGER_DISCARDED, RoundStateMachine
from .schemas import SchemaRegistry

logger = logging.getLogger("crash-observer")

_DIAGNOSTIC_TYPES = {
    AGGREGATE_READY: "AGGREGATE_READY",
    DELTA_KNOWN: "DELTA_KNOWN",
    ROUND_FINALIZED: "ROUND_FINALIZED",
}
_BROADCAST_TYPES = (AGGREGATE_READY, DELTA_KNOWN, ROUND_FINALIZED)


class ObserverContext:
    """Owns all mutable observer state.

    Only the connection's receive loop calls ``dispatch``; everything else reads
    snapshots. That single consumer is what keeps the round state consistent
    without a lock.
    """

    def __init__(self, settings: Optional[Settings] = None, schema_registry: Optional[SchemaRegistry] = None):
        self.settings = settings or Settings()
        self.metrics = Metrics()
        self.diagnostics = DiagnosticLog(self.settings.log_retention)
        self.history = HistoryStore(self.settings.history_size)
        self.rounds = RoundStateMachine(self.history)
        self.schema_registry = schema_registry
        self.stream = NotificationStream(self.metrics)

    async def dispatch(self, envelope: Dict[str, Any]) -> List[Notification]:
        """Apply one envelope. Faults stay inside this call."""
        self.metrics.bump("totalEnvelopes")
        try:
            self._validate(envelope)
            notifications: List[Notification] = []
            for event in parse_events(envelope):
                produced = self.rounds.apply(event)
                if isinstance(event, WagerPlaced) and not any(n.type == WAGER_DISCARDED for n in produced):
                    self.metrics.bump("wagersAccepted")
                notifications.extend(produced)
        except Exception as e:
            logger.error(f"Envelope handling error: {e}")
            self.metrics.error("envelope_handling")
            self.diagnostics.push("ENVELOPE_ERROR", error=str(e))
            return []
        for n in notifications:
            await self._publish(n)
        return notifications

    def _validate(self, envelope: Dict[str, Any]):
        if not self.schema_registry:
            return
        data = push_data(envelope)
        if data is None:
            return
        ok, err, key = self.schema_registry.validate_inbound(data.get("type"), data)
        if key:
            self.metrics.schema_checked(key, ok)
            if not ok:
                logger.warning(f"Schema validation failed for {key}: {err}")

    async def _publish(self, n: Notification):
        if n.type == WAGER_DISCARDED:
            self.metrics.bump("wagersDiscarded")
            reason = n.payload.get("reason")
            if reason != "not_collecting":
                self.diagnostics.push("WAGER_DISCARDED", roundId=n.round_id, **n.payload)
            return
        if n.type == ROUND_FINALIZED:
            self.metrics.bump("roundsFinalized")
        self.diagnostics.push(_DIAGNOSTIC_TYPES.get(n.type, n.type.upper()), roundId=n.round_id, **n.payload)
        if n.type in _BROADCAST_TYPES:
            try:
                await self.stream.publish(n)
            except Exception as e:
                logger.error(f"Broadcast error: {e}")
                self.metrics.error("broadcast")
