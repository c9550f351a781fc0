"""
capture/reader.py

LineReader - reads JSON packets, one object per line, from a text stream in a
background thread and bridges them into the asyncio event loop.

Key design decisions:
  - Blocking reads (stdin, pipes, files) happen in a daemon thread so the
    event loop never blocks.
  - The thread never touches the asyncio.Queue directly; each packet is
    handed over with run_coroutine_threadsafe(queue.put(...)) and the thread
    waits for it, so a full queue slows reading down instead of losing input.
    The wait polls the stop flag every PUT_POLL_SECONDS.
  - Blank lines are ignored. Lines that are not a JSON object are counted in
    METRICS.lines_parse_error and skipped.
  - At end of input the optional on_eof callback is scheduled on the loop,
    after the last packet has been enqueued.

Lifecycle:
    reader = LineReader(sys.stdin, queue, loop, on_eof=shutdown_event.set)
    reader.start()
    # ... asyncio event loop runs ...
    reader.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import concurrent.futures
from typing import Callable, TextIO

from ..metrics import METRICS

logger = logging.getLogger(__name__)

PUT_POLL_SECONDS = 0.5


class LineReader:
    """
    Args:
        stream: Text stream to read from (sys.stdin, an open file, ...).
        queue:  asyncio.Queue receiving the decoded packets.
        loop:   The running asyncio event loop.
        on_eof: Called on the loop thread once the stream is exhausted.
    """

    def __init__(
        self,
        stream: TextIO,
        queue: asyncio.Queue,
        loop: asyncio.AbstractEventLoop,
        on_eof: Callable[[], None] | None = None,
    ) -> None:
        self._stream = stream
        self._queue = queue
        self._loop = loop
        self._on_eof = on_eof
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.lines_read = 0

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _read_loop(self) -> None:
        for line in self._stream:
            if self._stop.is_set():
                break
            self.lines_read += 1
            packet = self._parse(line)
            if packet is None:
                continue
            if not self._hand_over(packet):
                break

        logger.info("LineReader reached end of input - lines=%d", self.lines_read)
        if self._on_eof is not None and not self._stop.is_set():
            self._loop.call_soon_threadsafe(self._on_eof)

    def _hand_over(self, packet: dict) -> bool:
        """Block until *packet* is on the queue. False if stopped or the loop is gone."""
        try:
            future = asyncio.run_coroutine_threadsafe(self._queue.put(packet), self._loop)
        except RuntimeError as exc:
            logger.warning("Event loop unavailable, reader stopping: %s", exc)
            return False
        while True:
            try:
                future.result(timeout=PUT_POLL_SECONDS)
                return True
            except concurrent.futures.TimeoutError:
                if self._stop.is_set():
                    future.cancel()
                    return False
            except concurrent.futures.CancelledError:
                return False

    def _parse(self, line: str) -> dict | None:
        line = line.strip()
        if not line:
            return None
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            METRICS.lines_parse_error.inc()
            logger.debug("Line %d is not valid JSON: %s", self.lines_read, exc)
            return None
        if not isinstance(obj, dict):
            METRICS.lines_parse_error.inc()
            logger.debug("Line %d is not a JSON object", self.lines_read)
            return None
        return obj

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start reading in a background thread."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                logger.warning("LineReader.start() called but already running")
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._read_loop, name="line-reader", daemon=True
            )
            self._thread.start()
            logger.info("LineReader started")

    def stop(self, timeout: float = 1.0) -> None:
        """
        Ask the reader to stop and wait briefly for its thread.

        A read blocked on an interactive stdin cannot be interrupted; the
        daemon thread is then abandoned at interpreter exit.
        """
        with self._lock:
            if self._thread is None:
                return
            self._stop.set()
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("LineReader stopped - metrics: %s", METRICS.as_dict())

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
