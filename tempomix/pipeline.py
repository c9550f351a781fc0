"""
tempomix/pipeline.py

The two bounded asyncio.Queue instances used by the CLI, and QueueSink, the
subscriber that moves emitted batches onto a queue.

  input_queue   packets read by LineReader, drained by QueueSource
  output_queue  batches emitted by the mixing queue, drained by the writer

Input is finite (a file or stdin), so nothing is ever dropped: a full queue
blocks its producer until the consumer catches up. LineReader waits in its own
thread; QueueSink waits inside the mixing queue's dispatch, which in turn holds
back further flushes and ingests.
"""

from __future__ import annotations

import asyncio
import logging

from .models import Batch

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queue definitions
# ---------------------------------------------------------------------------

# Lazily initialised so tests can create fresh queues without import side effects.
# Call init_queues() once at startup (done inside main.py).

input_queue: asyncio.Queue | None = None
output_queue: asyncio.Queue | None = None


def init_queues(input_size: int = 10_000, output_size: int = 1_000) -> None:
    """
    Initialise the pipeline queues.
    Must be called from within a running asyncio event loop.
    """
    global input_queue, output_queue
    input_queue = asyncio.Queue(maxsize=input_size)
    output_queue = asyncio.Queue(maxsize=output_size)
    logger.info(
        "Pipeline queues initialised - sizes: input=%d output=%d",
        input_size,
        output_size,
    )


# ---------------------------------------------------------------------------
# Batch sink
# ---------------------------------------------------------------------------

class QueueSink:
    """
    Batch subscriber that forwards every emitted batch onto an asyncio.Queue,
    waiting for room when the queue is full.

        sink = QueueSink(output_queue)
        mixing_queue.subscribe(sink)
    """

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue
        self.batches_forwarded = 0

    async def __call__(self, batch: Batch) -> None:
        if self._queue.full():
            logger.debug("Output queue full (%d), waiting for the writer", self._queue.maxsize)
        await self._queue.put(batch)
        self.batches_forwarded += 1

    def __repr__(self) -> str:  # pragma: no cover
        return f"QueueSink(forwarded={self.batches_forwarded})"
