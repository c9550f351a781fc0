"""storage/__init__.py"""
from __future__ import annotations

from ..config import Settings
from .base import STORAGE_ID_FIELD, PacketStore, strip_storage_fields
from .database import Database
from .memory import MemoryPacketStore
from .repository import SqlitePacketStore

__all__ = [
    "Database",
    "MemoryPacketStore",
    "PacketStore",
    "SqlitePacketStore",
    "STORAGE_ID_FIELD",
    "build_store",
    "strip_storage_fields",
]


def build_store(s: Settings) -> PacketStore:
    """Create the packet store selected by STORE_BACKEND."""
    if s.STORE_BACKEND == "sqlite":
        db = Database(s.DB_PATH)
        db.init_schema()
        db.discard_orphans()
        return SqlitePacketStore(db, s.GROUPING_KEY_PATH, s.ORIGIN_PATH)
    return MemoryPacketStore(s.GROUPING_KEY_PATH, s.ORIGIN_PATH)
