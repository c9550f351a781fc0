"""
capture/emitter.py

Packet sources that a TemporalMixingQueue can bind to.

PacketEmitter - in-process source. emit() calls every handler synchronously,
                so a MalformedPacketError raised by the mixing queue reaches
                the code that emitted the packet.
QueueSource   - drains an asyncio.Queue of packets (filled by LineReader or
                any other producer) and dispatches each one. The pump is the
                caller here, so malformed packets are logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging

from ..models import MalformedPacketError, Packet, PacketHandler

logger = logging.getLogger(__name__)


class PacketEmitter:
    """Synchronous fan-out of packets to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: list[PacketHandler] = []

    def subscribe(self, handler: PacketHandler) -> None:
        self._handlers.append(handler)

    def emit(self, packet: Packet) -> None:
        for handler in list(self._handlers):
            handler(packet)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)


class QueueSource:
    """
    Bridges an asyncio.Queue[Packet] to subscribed handlers.

    Args:
        queue: Queue the packets are read from.
    """

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue
        self._handlers: list[PacketHandler] = []
        self.stats: dict[str, int] = {
            "packets_dispatched": 0,
            "packets_skipped": 0,
        }

    def subscribe(self, handler: PacketHandler) -> None:
        self._handlers.append(handler)

    async def run(self, shutdown_event: asyncio.Event | None = None) -> None:
        """
        Dispatch packets until cancelled or *shutdown_event* is set.

        The 0.5 s get() timeout lets the loop notice the shutdown event
        during quiet periods.
        """
        logger.info("QueueSource started")
        while shutdown_event is None or not shutdown_event.is_set():
            try:
                packet = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                self.dispatch(packet)
            finally:
                self._queue.task_done()
        logger.info("QueueSource exiting - stats: %s", self.stats)

    def dispatch(self, packet: Packet) -> None:
        for handler in list(self._handlers):
            try:
                handler(packet)
            except MalformedPacketError as exc:
                self.stats["packets_skipped"] += 1
                logger.debug("Skipping malformed packet: %s", exc)
                return
        self.stats["packets_dispatched"] += 1
