"""
mixing/__init__.py

Public API for the mixing sub-package.
"""

from .models import WindowEntry
from .queue import TemporalMixingQueue
from .registry import WindowRegistry

__all__ = [
    "TemporalMixingQueue",
    "WindowEntry",
    "WindowRegistry",
]
