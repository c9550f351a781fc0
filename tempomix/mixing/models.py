"""
mixing/models.py

WindowEntry: one pending window in the registry.
"""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass


@dataclass(frozen=True)
class WindowEntry:
    """
    A grouping key together with the moment its window may close.

    Entries are immutable; WindowRegistry.refresh() replaces an entry
    rather than editing it.
    """

    key: Hashable

    deadline: float
    """time.monotonic() value after which the window is eligible to close."""

    def remaining(self, now: float) -> float:
        """Seconds until the deadline, never negative."""
        return max(0.0, self.deadline - now)

    def __repr__(self) -> str:
        return f"WindowEntry(key={self.key!r} deadline={self.deadline:.3f})"
