import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from .history import HistoryStore
from .models import (
    Event,
    FinalizedRound,
    Notification,
    ParticipantStake,
    RoundSnapshot,
    RoundStatus,
    Settled,
    StatusUpdate,
    Unrecognized,
    WagerPlaced,
)

logger = logging.getLogger("crash-observer")

# Ascending (boundary, category); first ``value < boundary`` wins.
CATEGORY_THRESHOLDS: Tuple[Tuple[float, str], ...] = (
    (1.2, "red"),
    (2.0, "blue"),
    (4.0, "pink"),
    (8.0, "green"),
    (25.0, "yellow"),
)
TOP_CATEGORY = "gradient"

AGGREGATE_READY = "aggregate_ready"
DELTA_KNOWN = "delta_known"
ROUND_FINALIZED = "round_finalized"
WAGER_DISCARDED = "wager_discarded"


def category_for(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    for boundary, name in CATEGORY_THRESHOLDS:
        if value < boundary:
            return name
    return TOP_CATEGORY


def coerce_amount(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        amount = float(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(amount) or amount < 0:
        return 0.0
    return amount


class BetAggregator:
    """Per-participant running totals for the open round."""

    def __init__(self):
        self._stakes: Dict[str, ParticipantStake] = {}

    def add(self, participant_id: str, display_name: Optional[str], amount: float, auto_hint: Any) -> ParticipantStake:
        stake = self._stakes.get(participant_id)
        if stake is None:
            stake = ParticipantStake(participant_id=participant_id, display_name=display_name)
            self._stakes[participant_id] = stake
        stake.total_stake += amount
        stake.last_auto_cashout_hint = auto_hint
        return stake

    def __len__(self) -> int:
        return len(self._stakes)

    def get(self, participant_id: str) -> Optional[ParticipantStake]:
        return self._stakes.get(participant_id)

    @property
    def total(self) -> float:
        return sum(s.total_stake for s in self._stakes.values())

    def copy_stakes(self) -> List[ParticipantStake]:
        return [s.model_copy(deep=True) for s in self._stakes.values()]

    def clear(self):
        self._stakes = {}


class RoundStateMachine:
    """Authoritative state of the round currently in progress.

    Driven only by decoded events; every ``apply`` call returns the one-shot
    notifications it produced. A settlement archives the round into the
    ``HistoryStore`` and resets the machine for the next round.
    """

    def __init__(self, history: HistoryStore):
        self.history = history
        self._reset()

    def _reset(self):
        self.round_id: Optional[str] = None
        self.status = RoundStatus.UNKNOWN
        self.status_code: Optional[int] = None
        self.delta: Optional[float] = None
        self.bets = BetAggregator()
        self._aggregate_sent = False
        self._delta_sent = False

    def apply(self, event: Event) -> List[Notification]:
        if isinstance(event, StatusUpdate):
            return self.apply_status_update(event.round_id, event.status_code, event.delta)
        if isinstance(event, WagerPlaced):
            return self.apply_wager(event)
        if isinstance(event, Settled):
            return self.apply_settlement(event.round_id, event.value)
        if isinstance(event, Unrecognized):
            return []
        raise TypeError(f"unsupported event {type(event).__name__}")

    def apply_status_update(self, round_id: Optional[str] = None, status_code: Optional[int] = None,
                            delta: Optional[float] = None) -> List[Notification]:
        if round_id and self.round_id is None:
            self.round_id = round_id
        if status_code is not None:
            self.status_code = status_code
            self.status = RoundStatus.from_code(status_code)
        if delta is not None:
            self.delta = delta

        out: List[Notification] = []
        if self.status is RoundStatus.SETTLING and not self._aggregate_sent:
            self._aggregate_sent = True
            out.append(Notification(
                type=AGGREGATE_READY,
                round_id=self.round_id,
                payload={"participantCount": len(self.bets), "totalStaked": self.bets.total},
            ))
        if self.status is RoundStatus.SETTLING and self.delta is not None and not self._delta_sent:
            self._delta_sent = True
            out.append(Notification(type=DELTA_KNOWN, round_id=self.round_id, payload={"delta": self.delta}))
        return out

    def apply_wager(self, wager: WagerPlaced) -> List[Notification]:
        if self.status is not RoundStatus.COLLECTING:
            reason = "not_collecting"
            if wager.wager_status is not None and RoundStatus.from_code(wager.wager_status) is RoundStatus.COLLECTING:
                # the wager claims collecting while the round does not
                reason = "status_divergence"
            return [Notification(
                type=WAGER_DISCARDED,
                round_id=self.round_id,
                payload={"reason": reason, "roundStatus": self.status.value,
                         "wagerStatus": wager.wager_status, "participantId": wager.participant_id},
            )]
        if not wager.participant_id:
            return [Notification(type=WAGER_DISCARDED, round_id=self.round_id, payload={"reason": "missing_participant"})]
        if self.round_id is None and wager.round_id:
            self.round_id = wager.round_id
        self.bets.add(wager.participant_id, wager.display_name, coerce_amount(wager.amount), wager.auto_hint)
        return []

    def apply_settlement(self, round_id: Optional[str] = None, value: Optional[float] = None) -> List[Notification]:
        participants = self.bets.copy_stakes()
        record = FinalizedRound(
            round_id=round_id or self.round_id,
            settlement_value=value,
            derived_category=category_for(value),
            participants=tuple(participants),
            participant_count=len(participants),
            total_staked=sum(p.total_stake for p in participants),
        )
        self.history.push(record)
        logger.info(f"Round {record.round_id} finalized crash={value} category={record.derived_category} "
                    f"players={record.participant_count} total={record.total_staked}")
        self._reset()
        return [Notification(
            type=ROUND_FINALIZED,
            round_id=record.round_id,
            payload={
                "settlementValue": record.settlement_value,
                "category": record.derived_category,
                "participantCount": record.participant_count,
                "totalStaked": record.total_staked,
            },
        )]

    def snapshot(self) -> RoundSnapshot:
        participants = self.bets.copy_stakes()
        return RoundSnapshot(
            round_id=self.round_id,
            status=self.status,
            status_code=self.status_code,
            settlement_delta=self.delta,
            participants=participants,
            participant_count=len(participants),
            total_staked=sum(p.total_stake for p in participants),
        )
