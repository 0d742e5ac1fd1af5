"""
Bounded window of the most recent conversation turns.
"""

from collections import deque
from typing import Iterable, Iterator

from ..models import Turn


class HistoryWindow:
    """Ordered, size-bounded sequence of turns.

    Capacity is counted in raw turns. Appending past capacity evicts from the
    front, so the window always holds the most recently appended turns in
    their original order.
    """

    def __init__(self, capacity: int, turns: Iterable[Turn] = ()):
        if capacity < 1:
            raise ValueError("Window capacity must be at least 1")
        self.capacity = capacity
        self._turns: deque[Turn] = deque(maxlen=capacity)
        self._turns.extend(turns)

    def append(self, turn: Turn) -> Turn | None:
        """Add a turn at the end. Returns the evicted turn, if any."""
        evicted = self._turns[0] if len(self._turns) == self.capacity else None
        self._turns.append(turn)
        return evicted

    def snapshot(self) -> tuple[Turn, ...]:
        """Immutable copy for handing to background consumers."""
        return tuple(self._turns)

    def clear(self) -> None:
        self._turns.clear()

    def is_full(self) -> bool:
        return len(self._turns) == self.capacity

    @property
    def remaining(self) -> int:
        """Free slots before the next append evicts."""
        return self.capacity - len(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"HistoryWindow(capacity={self.capacity}, turns={len(self._turns)})"
