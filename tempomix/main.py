"""
tempomix/main.py

Command-line entry point: JSON packets in (one per line), JSON batches out.

    cat packets.jsonl | tempomix --delay-ms 50 --signature-specific-delay

Tasks:
  - LineReader thread     input stream  -> input_queue
  - QueueSource           input_queue   -> TemporalMixingQueue
  - TemporalMixingQueue   windows       -> QueueSink -> output_queue
  - batch_writer          output_queue  -> stdout
  - stats_reporter        periodic METRICS / stats log line
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import NoReturn, TextIO

from . import pipeline
from .capture import LineReader, QueueSource
from .config import MixingOptions, Settings, settings
from .metrics import METRICS
from .mixing import TemporalMixingQueue
from .pipeline import QueueSink, init_queues
from .storage import build_store

logger = logging.getLogger("tempomix.main")


# ---------------------------------------------------------------------------
# Consumers
# ---------------------------------------------------------------------------

async def batch_writer(out: TextIO, stop_event: asyncio.Event) -> None:
    """Write each batch from output_queue as one JSON line until *stop_event* is set."""
    logger.info("Batch writer started")
    while not stop_event.is_set():
        try:
            batch = await asyncio.wait_for(pipeline.output_queue.get(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        _write_batch(out, batch)
        pipeline.output_queue.task_done()
    logger.info("Batch writer exiting")


def _write_batch(out: TextIO, batch: list) -> None:
    out.write(json.dumps(batch, default=str) + "\n")
    out.flush()


async def stats_reporter(
    mixer: TemporalMixingQueue,
    shutdown_event: asyncio.Event,
    interval: float,
) -> None:
    while not shutdown_event.is_set():
        await asyncio.sleep(interval)
        logger.info(
            "METRICS process=%s mixer=%s pending=%d",
            METRICS.as_dict(), mixer.stats, len(mixer.registry),
        )


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def run(cfg: Settings, stream: TextIO, out: TextIO) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    init_queues(input_size=cfg.INPUT_QUEUE_SIZE, output_size=cfg.OUTPUT_QUEUE_SIZE)

    def _signal_handler(_signum, _frame) -> None:
        logger.info("Shutdown signal received")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    store = build_store(cfg)
    mixer = TemporalMixingQueue(MixingOptions.from_settings(cfg), store=store)
    mixer.subscribe(QueueSink(pipeline.output_queue))

    source = QueueSource(pipeline.input_queue)
    mixer.bind(source)

    reader = LineReader(stream, pipeline.input_queue, loop, on_eof=shutdown_event.set)
    reader.start()

    writer_stop = asyncio.Event()
    source_task = asyncio.create_task(source.run(shutdown_event), name="source")
    writer_task = asyncio.create_task(batch_writer(out, writer_stop), name="writer")
    stats_task = asyncio.create_task(
        stats_reporter(mixer, shutdown_event, cfg.STATS_INTERVAL_SECONDS),
        name="stats",
    )

    logger.info(
        "tempomix running - store=%s delay=%dms signature_specific_delay=%s allow_duplicates=%s",
        cfg.STORE_BACKEND,
        cfg.MIXING_DELAY_MILLISECONDS,
        cfg.SIGNATURE_SPECIFIC_DELAY,
        cfg.ALLOW_DUPLICATES,
    )

    await shutdown_event.wait()

    reader.stop()
    # The source exits on its own within one 0.5 s poll, so no dequeued
    # packet is dropped.
    await asyncio.gather(source_task, return_exceptions=True)
    stats_task.cancel()
    await asyncio.gather(stats_task, return_exceptions=True)

    # Hand every packet already read to the mixer before draining windows.
    while not pipeline.input_queue.empty():
        source.dispatch(pipeline.input_queue.get_nowait())
        pipeline.input_queue.task_done()

    # The writer keeps consuming while the mixer drains; QueueSink blocks on a
    # full output queue.
    await mixer.close(drain=True)
    writer_stop.set()
    await asyncio.gather(writer_task, return_exceptions=True)
    while not pipeline.output_queue.empty():
        _write_batch(out, pipeline.output_queue.get_nowait())
    await store.close()
    logger.info("Final stats - process=%s mixer=%s", METRICS.as_dict(), mixer.stats)
    logger.info("tempomix stopped cleanly")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Group JSON packets sharing a key into time-bounded batches"
    )
    parser.add_argument("--input", default="-", help="JSON-lines file ('-' = stdin)")
    parser.add_argument("--delay-ms", type=int, default=settings.MIXING_DELAY_MILLISECONDS)
    parser.add_argument(
        "--signature-specific-delay",
        action=argparse.BooleanOptionalAction,
        default=settings.SIGNATURE_SPECIFIC_DELAY,
    )
    parser.add_argument(
        "--allow-duplicates",
        action=argparse.BooleanOptionalAction,
        default=settings.ALLOW_DUPLICATES,
    )
    parser.add_argument("--store", default=settings.STORE_BACKEND, choices=["memory", "sqlite"])
    parser.add_argument("--db-path", default=settings.DB_PATH)
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """Overlay command-line flags on the environment-derived settings."""
    return settings.model_copy(update={
        "MIXING_DELAY_MILLISECONDS": args.delay_ms,
        "SIGNATURE_SPECIFIC_DELAY": args.signature_specific_delay,
        "ALLOW_DUPLICATES": args.allow_duplicates,
        "STORE_BACKEND": args.store,
        "DB_PATH": args.db_path,
        "LOG_LEVEL": args.log_level,
    })


def main() -> NoReturn:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    if args.delay_ms <= 0:
        print("ERROR: --delay-ms must be positive", file=sys.stderr)
        sys.exit(1)

    cfg = build_settings(args)
    if args.input == "-":
        asyncio.run(run(cfg, sys.stdin, sys.stdout))
    else:
        try:
            stream = open(args.input, encoding="utf-8")
        except OSError as e:
            print(f"ERROR: cannot open --input: {e}", file=sys.stderr)
            sys.exit(1)
        with stream:
            asyncio.run(run(cfg, stream, sys.stdout))
    sys.exit(0)


if __name__ == "__main__":
    main()
