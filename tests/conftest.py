import json
from typing import Any, Dict, List, Optional

import pytest

from crash_observer.config import Settings
from crash_observer.context import ObserverContext
from crash_observer.history import HistoryStore
from crash_observer.rounds import RoundStateMachine


def push(data: Dict[str, Any], channel: str = "csgorun:crash") -> Dict[str, Any]:
    return {"push": {"channel": channel, "pub": {"data": data}}}


def update(status: Optional[int] = None, round_id: Any = None, delta: Optional[float] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"type": "update"}
    if round_id is not None:
        data["id"] = round_id
    if status is not None:
        data["status"] = status
    if delta is not None:
        data["delta"] = delta
    return push(data)


def bet(user_id: Any, amount: Any, name: str = "player", auto: Any = None, **extra: Any) -> Dict[str, Any]:
    wager = {"user": {"id": user_id, "name": name}, "deposit": {"amount": amount}, "coefficientAuto": auto}
    return push({"type": "betCreated", "bet": wager, **extra})


def crash(value: Any, round_id: Any = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"type": "crash", "crash": value}
    if round_id is not None:
        data["id"] = round_id
    return push(data)


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, messages: List[Any] = ()):
        self.messages = list(messages)
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code = 1000
        self.close_reason = "bye"

    async def send(self, text: str):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for m in self.messages:
            if self.closed:
                return
            yield m


@pytest.fixture
def settings() -> Settings:
    return Settings(history_size=5, log_retention=50, subscribe_delay_seconds=0.01, token_retry_seconds=0.01)


@pytest.fixture
def ctx(settings) -> ObserverContext:
    return ObserverContext(settings)


@pytest.fixture
def machine() -> RoundStateMachine:
    return RoundStateMachine(HistoryStore(5))
