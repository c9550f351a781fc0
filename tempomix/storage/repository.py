"""
storage/repository.py

SqlitePacketStore: PacketStore backed by the `packets` table.

Keys and origins are stored as value_identity() text, the canonical form the
window registry and the memory store compare by; packet bodies are stored as
JSON. The SQL
row id is the storage-internal identifier and never leaves this module.

sqlite3 is blocking, so every statement runs on a single-worker
ThreadPoolExecutor. One worker means statements execute strictly in
submission order and never concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Hashable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from ..models import Packet, StorageError, grouping_key_of, origin_of, value_identity
from .base import PacketStore, strip_storage_fields
from .database import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlitePacketStore(PacketStore):
    """
    Args:
        db:          An initialised Database (init_schema() already called).
        key_path:    Dotted path to the grouping key inside a packet.
        origin_path: Dotted path to the origin inside a packet.
    """

    def __init__(self, db: Database, key_path: str, origin_path: str) -> None:
        super().__init__(key_path, origin_path)
        self._db = db
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="packet-store"
        )

    # ==================================================================
    # PacketStore API
    # ==================================================================

    async def insert(self, packet: Packet) -> None:
        key = grouping_key_of(packet, self.key_path)
        try:
            row = (
                value_identity(key),
                value_identity(origin_of(packet, self.origin_path)),
                json.dumps(packet),
                time.time(),
            )
        except (TypeError, ValueError) as exc:
            raise StorageError(f"packet is not JSON-serializable: {exc}") from exc

        def _insert() -> None:
            self._db.execute(
                """
                INSERT INTO packets (grouping_key, origin, body, inserted_at)
                VALUES (?, ?, ?, ?)
                """,
                row,
            )
            self._db.commit()

        await self._run("insert", _insert)

    async def find_by_key(self, key: Hashable) -> list[Packet]:
        encoded = self._encode_key(key)

        def _find() -> list[str]:
            rows = self._db.execute(
                "SELECT body FROM packets WHERE grouping_key = ?", (encoded,)
            ).fetchall()
            return [r["body"] for r in rows]

        bodies = await self._run("find_by_key", _find)
        packets: list[Packet] = []
        for body in bodies:
            try:
                packets.append(strip_storage_fields(json.loads(body)))
            except json.JSONDecodeError as exc:
                raise StorageError(f"corrupt packet body for key {key!r}") from exc
        return packets

    async def delete_by_key(self, key: Hashable) -> int:
        encoded = self._encode_key(key)

        def _delete() -> int:
            cur = self._db.execute(
                "DELETE FROM packets WHERE grouping_key = ?", (encoded,)
            )
            self._db.commit()
            return cur.rowcount

        return await self._run("delete_by_key", _delete)

    async def count_by_key_and_origin(self, key: Hashable, origin: Any) -> int:
        encoded_key = self._encode_key(key)
        try:
            encoded_origin = value_identity(origin)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"origin is not JSON-serializable: {exc}") from exc

        def _count() -> int:
            row = self._db.execute(
                "SELECT COUNT(*) FROM packets WHERE grouping_key = ? AND origin = ?",
                (encoded_key, encoded_origin),
            ).fetchone()
            return row[0] if row else 0

        return await self._run("count_by_key_and_origin", _count)

    async def close(self) -> None:
        await self._run("close", self._db.close)
        self._executor.shutdown(wait=True)

    # ==================================================================
    # Introspection
    # ==================================================================

    async def count_all(self) -> int:
        def _count() -> int:
            return self._db.execute("SELECT COUNT(*) FROM packets").fetchone()[0]

        return await self._run("count_all", _count)

    # ==================================================================
    # Internal helpers
    # ==================================================================

    @staticmethod
    def _encode_key(key: Hashable) -> str:
        try:
            return value_identity(key)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"grouping key is not JSON-serializable: {exc}") from exc

    async def _run(self, op: str, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn)
        except sqlite3.Error as exc:
            logger.error("SqlitePacketStore.%s failed: %s", op, exc)
            raise StorageError(f"{op} failed: {exc}") from exc
