"""
storage/base.py

PacketStore, the keyed multimap that buffers packets while their window is
open. The mixing queue only talks to this interface, never to a concrete
backend.

Every operation is a coroutine and is atomic with respect to the key it
touches. Backends report failures by raising StorageError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Hashable
from typing import Any

from ..models import Packet

STORAGE_ID_FIELD = "_id"
"""Identifier a backend may attach to stored packets. Never emitted."""


def strip_storage_fields(packet: Packet) -> Packet:
    """Remove the storage-internal identifier in place and return the packet."""
    packet.pop(STORAGE_ID_FIELD, None)
    return packet


class PacketStore(ABC):
    """
    Abstract keyed multimap: grouping key -> packets.

    Args:
        key_path:    Dotted path to the grouping key inside a packet.
        origin_path: Dotted path to the origin inside a packet.
    """

    def __init__(self, key_path: str, origin_path: str) -> None:
        self.key_path = key_path
        self.origin_path = origin_path

    @abstractmethod
    async def insert(self, packet: Packet) -> None:
        """File *packet* under its grouping key. Duplicates are allowed."""

    @abstractmethod
    async def find_by_key(self, key: Hashable) -> list[Packet]:
        """
        Return every packet filed under *key*, storage fields stripped.

        Order is unspecified and must not be relied upon.
        """

    @abstractmethod
    async def delete_by_key(self, key: Hashable) -> int:
        """Remove every packet filed under *key*; returns how many were removed."""

    @abstractmethod
    async def count_by_key_and_origin(self, key: Hashable, origin: Any) -> int:
        """Number of packets under *key* whose origin equals *origin*."""

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
