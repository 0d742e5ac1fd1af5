"""
Generation-stamped store for the rolling conversation summary.
"""

import threading
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class SummarySnapshot:
    """Summary value as read at one point in time."""

    value: str
    generation: int


class SummaryStore:
    """Single mutable summary cell with compare-and-set commits.

    Every successful write bumps the generation, so a writer holding a stale
    snapshot can tell that someone else got there first. Writes after
    ``dispose()`` are refused.
    """

    def __init__(self, value: str = ""):
        self._value = value
        self._generation = 0
        self._disposed = False
        self._lock = threading.Lock()

    def read(self) -> SummarySnapshot:
        with self._lock:
            return SummarySnapshot(self._value, self._generation)

    def compare_and_set(self, expected_generation: int, new_value: str) -> bool:
        """Commit ``new_value`` only if nothing was written since ``expected_generation``."""
        with self._lock:
            if self._disposed or self._generation != expected_generation:
                return False
            self._value = new_value
            self._generation += 1
            return True

    def set(self, new_value: str) -> bool:
        """Unconditional write. Returns False only when the store is disposed."""
        with self._lock:
            if self._disposed:
                return False
            self._value = new_value
            self._generation += 1
            return True

    def reset(self) -> None:
        self.set("")

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
        logger.debug("Summary store disposed", generation=self._generation)

    @property
    def value(self) -> str:
        return self.read().value

    @property
    def generation(self) -> int:
        return self.read().generation

    @property
    def disposed(self) -> bool:
        return self._disposed
