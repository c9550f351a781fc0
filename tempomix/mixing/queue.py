"""
mixing/queue.py

TemporalMixingQueue - groups packets sharing a grouping key into
time-bounded batches and emits one batch per closed window.

Pieces:
  - Ingest:    every packet from a bound source is filed in the PacketStore;
               the first packet of a key opens a window in the WindowRegistry.
               Without allow_duplicates, a second packet from the same origin
               in an open window pushes the window out early (see below).
  - Scheduler: one asyncio task looping forever. Each iteration looks at the
               registry head and either sleeps or flushes it:
                   registry empty            -> sleep idle_poll
                   signature_specific_delay  -> sleep until the head's deadline
                   otherwise (best effort)   -> sleep(0), flush now
               In best-effort mode the configured delay is NOT enforced; the
               effective window is however long the store takes to answer.
  - Emission:  read the window's packets, delete them, drop the registry
               entry, hand the batch to every subscriber.

Pushout (allow_duplicates=False):
    packet (K, O) arrives, K already open, store already holds a packet
    from O under K  ->  emit everything under K now, refresh K's deadline
    (moves to the back of the registry), then file the new packet alone.

Serialisation: ingest and flush both run under one asyncio.Lock (FIFO), so
packets are applied in arrival order and a flush never interleaves with an
ingest of the same key. Subscribers run under that lock too and must not
await ingest() themselves.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Hashable, Mapping
from typing import Any

from ..config import MixingOptions
from ..metrics import METRICS
from ..models import (
    Batch,
    BatchHandler,
    MalformedPacketError,
    Packet,
    PacketSource,
    StorageError,
    WindowRegistryError,
    grouping_key_of,
    origin_of,
    value_identity,
)
from ..storage.base import PacketStore
from ..storage.memory import MemoryPacketStore
from .registry import WindowRegistry

logger = logging.getLogger(__name__)


class TemporalMixingQueue:
    """
    Time-based grouping of packets which share a grouping key.

    Args:
        options: MixingOptions, a mapping of option keys
                 (mixingDelayMilliseconds, signatureSpecificDelay,
                 allowDuplicates, ...) or None for defaults.
        store:   PacketStore used as the buffer. Defaults to a fresh
                 MemoryPacketStore.
    """

    def __init__(
        self,
        options: MixingOptions | Mapping[str, Any] | None = None,
        store: PacketStore | None = None,
    ) -> None:
        self.options = MixingOptions.coerce(options)
        self.store: PacketStore = store or MemoryPacketStore(
            self.options.grouping_key_path, self.options.origin_path
        )
        self.registry = WindowRegistry()

        self._lock = asyncio.Lock()
        self._sources: list[PacketSource] = []
        self._subscribers: list[BatchHandler] = []
        self._loop_task: asyncio.Task | None = None
        self._ingest_tasks: set[asyncio.Task] = set()
        self._flush_failures: dict[str, int] = {}

        self.stats: dict[str, int] = {
            "packets_ingested": 0,
            "packets_dropped": 0,
            "windows_opened": 0,
            "windows_flushed": 0,
            "windows_abandoned": 0,
            "pushouts": 0,
            "flush_failures": 0,
            "batches_emitted": 0,
            "packets_emitted": 0,
        }

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def subscribe(self, handler: BatchHandler) -> None:
        """Register *handler* to receive every emitted batch."""
        self._subscribers.append(handler)

    def unsubscribe(self, handler: BatchHandler) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(handler)

    def bind(self, source: PacketSource) -> None:
        """
        Attach to an upstream source and start the scheduler if needed.

        The scheduler starts on the first bind only; later binds just add
        another source feeding the same loop. Must be called while an event
        loop is running.
        """
        source.subscribe(self._on_packet)
        self._sources.append(source)
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(
                self.run(), name="temporal-mixing-queue"
            )
        logger.debug("Bound source %r (total sources: %d)", source, len(self._sources))

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def pending_keys(self) -> list[Hashable]:
        """Keys with an open window, in flush order."""
        return self.registry.keys()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _on_packet(self, packet: Packet) -> None:
        """
        Handler given to bound sources. Runs synchronously in the emitter.

        Malformed packets are rejected here and the error propagates back to
        whoever emitted them. Valid packets are ingested in a task.
        """
        METRICS.packets_received.inc()
        try:
            grouping_key_of(packet, self.options.grouping_key_path)
        except MalformedPacketError as exc:
            METRICS.packets_rejected.inc()
            logger.warning("Packet rejected: %s", exc)
            raise
        task = asyncio.get_running_loop().create_task(self._ingest_task(packet))
        self._ingest_tasks.add(task)
        task.add_done_callback(self._ingest_tasks.discard)

    async def _ingest_task(self, packet: Packet) -> None:
        try:
            await self.ingest(packet)
        except StorageError:
            pass  # already logged and counted by ingest()
        except WindowRegistryError as exc:
            logger.exception("Window registry inconsistency: %s", exc)
        except Exception as exc:
            logger.exception("Unexpected error ingesting packet: %s", exc)

    async def ingest(self, packet: Packet) -> None:
        """
        File one packet, applying the configured duplicate policy.

        Raises:
            MalformedPacketError: the packet has no usable grouping key.
            StorageError:         the store failed; the packet was dropped.
        """
        key = grouping_key_of(packet, self.options.grouping_key_path)
        async with self._lock:
            try:
                if self.options.allow_duplicates:
                    await self._produce(key, packet)
                else:
                    await self._produce_no_duplicate(key, packet)
            except StorageError as exc:
                METRICS.storage_errors.inc()
                self.stats["packets_dropped"] += 1
                logger.error("Packet for key %r dropped: %s", key, exc)
                raise
        self.stats["packets_ingested"] += 1

    async def _produce(self, key: Hashable, packet: Packet) -> None:
        if not self.registry.is_known(key):
            self._open_window(key)
        await self.store.insert(packet)

    async def _produce_no_duplicate(self, key: Hashable, packet: Packet) -> None:
        if not self.registry.is_known(key):
            self._open_window(key)
            await self.store.insert(packet)
            return

        origin = origin_of(packet, self.options.origin_path)
        count = await self.store.count_by_key_and_origin(key, origin)
        if count > 0:
            packets = await self._collect(key)
            self.stats["pushouts"] += 1
            logger.debug(
                "Pushout for key %r: origin %r repeated, emitting %d packet(s)",
                key,
                origin,
                len(packets),
            )
            await self._dispatch(key, packets)
            self.registry.refresh(key, self.options.mixing_delay_ms)
        await self.store.insert(packet)

    def _open_window(self, key: Hashable) -> None:
        self.registry.add(key, self.options.mixing_delay_ms)
        self.stats["windows_opened"] += 1

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Scheduler loop. Runs until cancelled.

        Started by bind(); call directly only when driving the queue
        without sources.
        """
        logger.info(
            "TemporalMixingQueue started - delay=%dms mode=%s duplicates=%s",
            self.options.mixing_delay_ms,
            "deadline" if self.options.signature_specific_delay else "best-effort",
            "allowed" if self.options.allow_duplicates else "pushout",
        )
        try:
            while True:
                await self._step()
        except asyncio.CancelledError:
            logger.info(
                "TemporalMixingQueue loop cancelled - %d window(s) pending",
                len(self.registry),
            )
            raise

    async def _step(self) -> None:
        """One scheduling decision: sleep, or flush the registry head."""
        try:
            sleep_for = self._time_to_sleep()
            if sleep_for > 0:
                await asyncio.sleep(sleep_for)
                return
            await asyncio.sleep(0)
            if not await self._flush_head() and not self.options.signature_specific_delay:
                # Deadlines are ignored in best-effort mode; space retries by the idle poll.
                await asyncio.sleep(self.options.idle_poll_seconds)
        except Exception as exc:
            logger.exception("Scheduler iteration failed: %s", exc)
            await asyncio.sleep(self.options.idle_poll_seconds)

    def _time_to_sleep(self) -> float:
        head = self.registry.peek_head()
        if head is None:
            return self.options.idle_poll_seconds
        if self.options.signature_specific_delay:
            return head.remaining(time.monotonic())
        return 0.0

    async def _flush_head(self) -> bool:
        """Flush the registry head if it is due. Returns False when the store failed."""
        async with self._lock:
            head = self.registry.peek_head()
            if head is None:
                return True
            # The head may have been refreshed while we waited for the lock.
            if (
                self.options.signature_specific_delay
                and head.deadline > time.monotonic()
            ):
                return True
            try:
                packets = await self._collect(head.key)
            except StorageError as exc:
                await self._flush_failed(head.key, exc)
                return False
            self.registry.pop_head()
            self._flush_failures.pop(value_identity(head.key), None)
            self.stats["windows_flushed"] += 1
            await self._dispatch(head.key, packets)
            return True

    async def _flush_failed(self, key: Hashable, exc: StorageError) -> None:
        METRICS.storage_errors.inc()
        self.stats["flush_failures"] += 1
        ident = value_identity(key)
        failures = self._flush_failures.get(ident, 0) + 1
        max_retries = self.options.flush_max_retries
        if failures <= max_retries:
            self._flush_failures[ident] = failures
            self.registry.refresh(key, self.options.mixing_delay_ms)
            logger.warning(
                "Flush of key %r failed (attempt %d/%d), retrying later: %s",
                key,
                failures,
                max_retries,
                exc,
            )
            return

        self._flush_failures.pop(ident, None)
        self.registry.discard(key)
        self.stats["windows_abandoned"] += 1
        logger.error(
            "Flush of key %r failed %d time(s), abandoning window: %s",
            key,
            failures,
            exc,
        )
        try:
            await self.store.delete_by_key(key)
        except StorageError as cleanup_exc:
            METRICS.storage_errors.inc()
            logger.error("Could not clear buffer for key %r: %s", key, cleanup_exc)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def _collect(self, key: Hashable) -> Batch:
        """Read then delete every buffered packet for *key*."""
        packets = await self.store.find_by_key(key)
        await self.store.delete_by_key(key)
        return packets

    async def _dispatch(self, key: Hashable, packets: Batch) -> None:
        if not packets:
            logger.debug("Window %r closed with no packets, nothing emitted", key)
            return
        self.stats["batches_emitted"] += 1
        self.stats["packets_emitted"] += len(packets)
        logger.debug("Emitting batch key=%r size=%d", key, len(packets))
        for handler in list(self._subscribers):
            try:
                result = handler(packets)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Batch subscriber %r raised: %s", handler, exc)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def flush_all(self) -> int:
        """Emit every pending window immediately, oldest first. Returns windows flushed."""
        flushed = 0
        async with self._lock:
            while self.registry:
                entry = self.registry.pop_head()
                try:
                    packets = await self._collect(entry.key)
                except StorageError as exc:
                    METRICS.storage_errors.inc()
                    logger.error("Drain of key %r failed, window lost: %s", entry.key, exc)
                    continue
                self.stats["windows_flushed"] += 1
                await self._dispatch(entry.key, packets)
                flushed += 1
            self._flush_failures.clear()
        return flushed

    async def close(self, drain: bool = True) -> None:
        """
        Stop the scheduler, let queued ingests finish, and optionally emit
        every window still open.
        """
        if self._loop_task is not None:
            # Under the lock the scheduler is sleeping or waiting for the lock,
            # never halfway through handing a collected batch to subscribers.
            async with self._lock:
                self._loop_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._loop_task
            self._loop_task = None
        if self._ingest_tasks:
            await asyncio.gather(*list(self._ingest_tasks), return_exceptions=True)
        if drain:
            flushed = await self.flush_all()
            if flushed:
                logger.info("Drained %d pending window(s) on shutdown", flushed)
        logger.info("TemporalMixingQueue closed - stats: %s", self.stats)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"TemporalMixingQueue(delay={self.options.mixing_delay_ms}ms "
            f"pending={len(self.registry)} running={self.is_running})"
        )
