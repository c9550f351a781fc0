"""
storage/database.py

SQLite connection and schema for the packet buffer.

  - WAL journal so an external reader can inspect the buffer while the mixing
    queue writes.
  - check_same_thread=False: the connection is opened on the event loop
    thread, then used only from SqlitePacketStore's single worker thread.
  - The window registry lives in memory, so packets left in the table by a
    previous process have no window to close them. discard_orphans() removes
    them at startup; otherwise they would leak into the next batch of their key.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS packets (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    grouping_key  TEXT NOT NULL,   -- canonical JSON
    origin        TEXT NOT NULL,   -- canonical JSON, 'null' when absent
    body          TEXT NOT NULL,
    inserted_at   REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_packets_key_origin
    ON packets(grouping_key, origin);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at REAL NOT NULL
);
"""


class Database:
    """
    Owns the sqlite3 connection used by SqlitePacketStore.

        db = Database("data/packets.db")
        db.init_schema()
        db.discard_orphans()
        store = SqlitePacketStore(db, "identifier.value", "origin")
    """

    def __init__(self, db_path: str = "data/packets.db") -> None:
        self.db_path = db_path
        if not self.in_memory:
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        for pragma in _PRAGMAS:
            self.conn.execute(pragma)
        logger.info("Packet buffer database opened - path=%r", db_path)

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    def init_schema(self) -> None:
        """Create the packets table if needed and record the schema version."""
        self.conn.executescript(_SCHEMA)
        self.conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, time.time()),
        )
        self.conn.commit()
        logger.debug("Packet buffer schema ready (version=%d)", SCHEMA_VERSION)

    def discard_orphans(self) -> int:
        """Delete packets buffered by an earlier process. Returns rows removed."""
        removed = self.conn.execute("DELETE FROM packets").rowcount
        self.conn.commit()
        if removed:
            logger.warning(
                "Discarded %d packet(s) left in %r by a previous run",
                removed,
                self.db_path,
            )
        return removed

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def commit(self) -> None:
        self.conn.commit()

    def close(self) -> None:
        try:
            self.conn.commit()
            self.conn.close()
        except sqlite3.Error as exc:
            logger.warning("Error closing packet buffer database: %s", exc)
            return
        logger.info("Packet buffer database closed - path=%r", self.db_path)
