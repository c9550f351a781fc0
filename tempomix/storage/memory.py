"""
storage/memory.py

MemoryPacketStore: the default in-process buffer.

Each stored packet is a deep copy tagged with a random "_id", so neither the
producer nor a subscriber can mutate what is buffered. Reads return fresh
copies with "_id" stripped.

Keys and origins are compared by value_identity(), exactly as the SQLite
store compares them, so both backends group and count the same way.

Thread safety: NOT thread-safe. Called exclusively from the event loop.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Hashable
from typing import Any

from ..models import Packet, StorageError, grouping_key_of, origin_of, value_identity
from .base import STORAGE_ID_FIELD, PacketStore, strip_storage_fields

logger = logging.getLogger(__name__)


class MemoryPacketStore(PacketStore):
    """dict-of-dicts multimap: key identity -> {_id: (origin identity, packet)}."""

    def __init__(self, key_path: str, origin_path: str) -> None:
        super().__init__(key_path, origin_path)
        self._packets: dict[str, dict[str, tuple[str, Packet]]] = {}
        self._keys: dict[str, Hashable] = {}

    async def insert(self, packet: Packet) -> None:
        key = grouping_key_of(packet, self.key_path)
        origin = self._origin_identity(origin_of(packet, self.origin_path))
        ident = value_identity(key)
        doc = copy.deepcopy(packet)
        doc[STORAGE_ID_FIELD] = uuid.uuid4().hex
        self._keys.setdefault(ident, key)
        self._packets.setdefault(ident, {})[doc[STORAGE_ID_FIELD]] = (origin, doc)

    async def find_by_key(self, key: Hashable) -> list[Packet]:
        docs = self._packets.get(value_identity(key), {})
        return [strip_storage_fields(copy.deepcopy(d)) for _, d in docs.values()]

    async def delete_by_key(self, key: Hashable) -> int:
        ident = value_identity(key)
        self._keys.pop(ident, None)
        removed = self._packets.pop(ident, None)
        return len(removed) if removed else 0

    async def count_by_key_and_origin(self, key: Hashable, origin: Any) -> int:
        docs = self._packets.get(value_identity(key), {})
        wanted = self._origin_identity(origin)
        return sum(1 for o, _ in docs.values() if o == wanted)

    @staticmethod
    def _origin_identity(origin: Any) -> str:
        try:
            return value_identity(origin)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"origin is not JSON-serializable: {exc}") from exc

    # ------------------------------------------------------------------
    # Introspection (tests / stats)
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return sum(len(docs) for docs in self._packets.values())

    def keys(self) -> list[Hashable]:
        return list(self._keys.values())
