"""
tempomix/models.py

Shared types and exceptions for every stage of the pipeline.

A packet is an opaque JSON-like mapping. The core only ever looks at two
fields, located by dotted paths:
    grouping key  -> "identifier.value"  (which window the packet belongs to)
    origin        -> "origin"            (who sent it, used for dedup counting)
Every other field is passed through untouched.
"""

from __future__ import annotations

import json
from collections.abc import Hashable, Mapping
from typing import Any, Callable, Dict, List, Protocol

Packet = Dict[str, Any]
"""A single packet. Treated as opaque apart from its key and origin fields."""

Batch = List[Packet]
"""All packets of one closed window. Order is unspecified."""

PacketHandler = Callable[[Packet], Any]
BatchHandler = Callable[[Batch], Any]

_MISSING = object()


class PacketSource(Protocol):
    """Anything that delivers packets one at a time to subscribed handlers."""

    def subscribe(self, handler: PacketHandler) -> None: ...


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TempomixError(Exception):
    """Base class for every error raised by tempomix."""


class MalformedPacketError(TempomixError, ValueError):
    """The packet cannot be grouped (not a mapping, or no usable grouping key)."""


class StorageError(TempomixError):
    """A packet store operation failed."""


class WindowRegistryError(TempomixError):
    """Internal-consistency fault in the window registry (e.g. duplicate key)."""


# ---------------------------------------------------------------------------
# Field resolution
# ---------------------------------------------------------------------------

def resolve_path(packet: Mapping[str, Any], path: str, default: Any = _MISSING) -> Any:
    """
    Walk a dotted path ("identifier.value") through nested mappings.

    Returns *default* when any segment is missing; raises KeyError if no
    default was given.
    """
    node: Any = packet
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            if default is _MISSING:
                raise KeyError(path)
            return default
        node = node[part]
    return node


def _normalise(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _normalise(v) for k, v in value.items()}
    return value


def value_identity(value: Any) -> str:
    """
    Canonical JSON text used to compare keys and origins.

    Every layer (registry, memory store, SQLite store) compares by this text,
    so they agree on equality: 1 and 1.0 are the same value, True and 1 are
    not, and mappings compare by content.

    Raises TypeError or ValueError for values JSON cannot represent.
    """
    return json.dumps(
        _normalise(value), sort_keys=True, separators=(",", ":"), allow_nan=False
    )


def grouping_key_of(packet: Any, path: str) -> Hashable:
    """Return the grouping key of *packet* or raise MalformedPacketError."""
    if not isinstance(packet, Mapping):
        raise MalformedPacketError(
            f"packet must be a mapping, got {type(packet).__name__}"
        )
    key = resolve_path(packet, path, default=None)
    if key is None:
        raise MalformedPacketError(f"packet has no grouping key at {path!r}")
    try:
        hash(key)
        value_identity(key)
    except (TypeError, ValueError):
        raise MalformedPacketError(
            f"grouping key at {path!r} is not a hashable JSON value ({type(key).__name__})"
        ) from None
    return key


def origin_of(packet: Mapping[str, Any], path: str) -> Any:
    """Origin of a packet, or None when the packet does not carry one."""
    return resolve_path(packet, path, default=None)
