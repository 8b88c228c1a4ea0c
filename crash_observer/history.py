from collections import deque
from typing import Deque, Optional, Tuple

from .models import FinalizedRound


class HistoryStore:
    """Most-recent-first buffer of finalized rounds with a fixed capacity."""

    def __init__(self, capacity: int = 50):
        if capacity < 1:
            raise ValueError("history capacity must be positive")
        self.capacity = capacity
        self._items: Deque[FinalizedRound] = deque(maxlen=capacity)

    def push(self, record: FinalizedRound):
        # appendleft on a full deque drops the rightmost (oldest) entry
        self._items.appendleft(record)

    def snapshot(self, limit: Optional[int] = None) -> Tuple[FinalizedRound, ...]:
        if limit is None:
            limit = self.capacity
        limit = max(0, min(limit, len(self._items)))
        return tuple(self._items[i].model_copy(deep=True) for i in range(limit))

    def __len__(self) -> int:
        return len(self._items)
