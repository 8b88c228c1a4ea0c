from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RoundStatus(str, Enum):
    UNKNOWN = "Unknown"
    COLLECTING = "Collecting"
    SETTLING = "Settling"

    @classmethod
    def from_code(cls, code: Optional[int]) -> "RoundStatus":
        if code == 1:
            return cls.COLLECTING
        if code == 2:
            return cls.SETTLING
        return cls.UNKNOWN


########################################################
# Round data
########################################################
class ParticipantStake(BaseModel):
    participant_id: str
    display_name: Optional[str] = None
    total_stake: float = 0.0
    last_auto_cashout_hint: Optional[Any] = None


class FinalizedRound(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_id: Optional[str] = None
    settlement_value: Optional[float] = None
    derived_category: Optional[str] = None
    participants: Tuple[ParticipantStake, ...] = ()
    participant_count: int = 0
    total_staked: float = 0.0
    finalized_at: datetime = Field(default_factory=now_utc)


class RoundSnapshot(BaseModel):
    round_id: Optional[str] = None
    status: RoundStatus = RoundStatus.UNKNOWN
    status_code: Optional[int] = None
    settlement_delta: Optional[float] = None
    participants: List[ParticipantStake] = Field(default_factory=list)
    participant_count: int = 0
    total_staked: float = 0.0


########################################################
# Connection data
########################################################
class ConnectionSession(BaseModel):
    opened_at: datetime = Field(default_factory=now_utc)
    last_heartbeat_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None


class ConnectionState(BaseModel):
    connected: bool
    running: bool = True
    opened_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    since_connected_ms: Optional[int] = None
    consecutive_failures: int = 0
    last_close_reason: Optional[str] = None
    last_closed_at: Optional[datetime] = None


########################################################
# Decoded upstream events (closed union)
########################################################
class StatusUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_id: Optional[str] = None
    status_code: Optional[int] = None
    delta: Optional[float] = None


class WagerPlaced(BaseModel):
    model_config = ConfigDict(frozen=True)

    participant_id: Optional[str] = None
    display_name: Optional[str] = None
    amount: Any = None
    auto_hint: Optional[Any] = None
    round_id: Optional[str] = None
    # status carried by the wager itself, only reported when it disagrees
    wager_status: Optional[int] = None


class Settled(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_id: Optional[str] = None
    value: Optional[float] = None


class Unrecognized(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: Optional[str] = None


Event = Union[StatusUpdate, WagerPlaced, Settled, Unrecognized]


########################################################
# Notifications emitted by the round state machine
########################################################
class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    round_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
