"""
mixing/registry.py

WindowRegistry - the FIFO of pending grouping keys and their deadlines.

Design:
  - Backed by an OrderedDict keyed on value_identity(key), the same canonical
    form the packet stores file packets under. Keys the stores treat as one
    (1 and 1.0) therefore share one window, and keys they keep apart (1 and
    True) never do.
  - Each entry keeps the first key value seen for its window; flushes pass
    that value back to the store.
  - Insertion order is flush order: the head is always the oldest window
    (by creation or refresh time).
  - Deadlines use time.monotonic() (no wall-clock drift).

Thread safety: NOT thread-safe. Mutated only by TemporalMixingQueue while it
holds its lock.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Hashable

from ..models import WindowRegistryError, value_identity
from .models import WindowEntry

logger = logging.getLogger(__name__)


class WindowRegistry:
    """Ordered set of open windows, oldest first."""

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, WindowEntry]" = OrderedDict()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_known(self, key: Hashable) -> bool:
        return value_identity(key) in self._entries

    def add(self, key: Hashable, delay_ms: float) -> WindowEntry:
        """
        Append a new window for *key* closing *delay_ms* from now.

        Raises WindowRegistryError if *key* already has a window; callers
        must check is_known() first.
        """
        ident = value_identity(key)
        if ident in self._entries:
            raise WindowRegistryError(f"window for key {key!r} already open")
        entry = WindowEntry(key=key, deadline=self._deadline(delay_ms))
        self._entries[ident] = entry
        logger.debug("Window opened: %r (pending: %d)", entry, len(self._entries))
        return entry

    def refresh(self, key: Hashable, delay_ms: float) -> WindowEntry:
        """Move *key* to the back of the registry with a fresh deadline."""
        ident = value_identity(key)
        previous = self._entries.pop(ident, None)
        entry = WindowEntry(
            key=previous.key if previous else key,
            deadline=self._deadline(delay_ms),
        )
        self._entries[ident] = entry
        logger.debug("Window refreshed: %r", entry)
        return entry

    def peek_head(self) -> WindowEntry | None:
        if not self._entries:
            return None
        return next(iter(self._entries.values()))

    def pop_head(self) -> WindowEntry | None:
        if not self._entries:
            return None
        _, entry = self._entries.popitem(last=False)
        return entry

    def discard(self, key: Hashable) -> WindowEntry | None:
        """Remove *key* wherever it sits; no-op when absent."""
        return self._entries.pop(value_identity(key), None)

    def deadline_for(self, key: Hashable) -> float | None:
        entry = self._entries.get(value_identity(key))
        return entry.deadline if entry else None

    def keys(self) -> list[Hashable]:
        """Pending keys in flush order."""
        return [entry.key for entry in self._entries.values()]

    def __contains__(self, key: object) -> bool:
        try:
            return value_identity(key) in self._entries
        except (TypeError, ValueError):
            return False

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _deadline(delay_ms: float) -> float:
        return time.monotonic() + delay_ms / 1000.0
