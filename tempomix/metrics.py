"""
tempomix/metrics.py

Process-wide counters shared by sources, stores and the mixing queue.
They are incremented from the event loop and from the LineReader thread,
hence the lock in Counter.

Usage:
    from tempomix.metrics import METRICS
    METRICS.packets_received.inc()
    print(METRICS.as_dict())

Per-queue figures (windows opened, pushouts, ...) live in
TemporalMixingQueue.stats instead.
"""

import threading


class Counter:
    """Thread-safe monotonically increasing integer; reset() is for tests."""

    __slots__ = ("name", "help", "_value", "_lock")

    def __init__(self, name: str, help: str = "") -> None:
        self.name = name
        self.help = help
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self.name}={self._value})"


class Metrics:
    """Holds every process-wide counter as an attribute."""

    def __init__(self) -> None:
        self.packets_received = Counter(
            "packets_received", "Packets handed to a TemporalMixingQueue by a bound source"
        )
        self.packets_rejected = Counter(
            "packets_rejected", "Packets refused because they had no usable grouping key"
        )
        self.lines_parse_error = Counter(
            "lines_parse_error", "Input lines that were not a JSON object"
        )
        self.storage_errors = Counter(
            "storage_errors", "Packet store operations that raised StorageError"
        )

    def counters(self) -> list[Counter]:
        return [c for c in vars(self).values() if isinstance(c, Counter)]

    def as_dict(self) -> dict[str, int]:
        """Counter values by name, ready for a log line or json.dumps()."""
        return {c.name: c.value for c in self.counters()}

    def reset_all(self) -> None:
        for c in self.counters():
            c.reset()


# Module-level singleton, import from here everywhere
METRICS = Metrics()
