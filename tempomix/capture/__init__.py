"""
capture/__init__.py

Public API for the capture sub-package.
"""

from .emitter import PacketEmitter, QueueSource
from .reader import LineReader

__all__ = ["LineReader", "PacketEmitter", "QueueSource"]
