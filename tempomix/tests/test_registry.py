"""
tests/test_registry.py

Tests for mixing/registry.py.
Uses unittest.mock.patch to control time.monotonic() so deadlines are
deterministic.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from tempomix.mixing.models import WindowEntry
from tempomix.mixing.registry import WindowRegistry
from tempomix.models import WindowRegistryError

MONO = "tempomix.mixing.registry.time.monotonic"


class TestWindowRegistryAdd:

    def test_empty_registry(self):
        reg = WindowRegistry()
        assert len(reg) == 0
        assert not reg
        assert reg.peek_head() is None
        assert reg.pop_head() is None

    def test_add_sets_deadline(self):
        reg = WindowRegistry()
        with patch(MONO, return_value=1000.0):
            entry = reg.add("a", 25)
        assert entry.key == "a"
        assert entry.deadline == pytest.approx(1000.025)
        assert reg.is_known("a")
        assert "a" in reg
        assert reg.deadline_for("a") == pytest.approx(1000.025)

    def test_add_known_key_raises(self):
        reg = WindowRegistry()
        reg.add("a", 25)
        with pytest.raises(WindowRegistryError):
            reg.add("a", 25)
        assert len(reg) == 1

    def test_fifo_order(self):
        reg = WindowRegistry()
        for key in ("a", "b", "c"):
            reg.add(key, 25)
        assert reg.keys() == ["a", "b", "c"]
        assert reg.peek_head().key == "a"


class TestWindowRegistryRefresh:

    def test_refresh_moves_to_back_with_new_deadline(self):
        reg = WindowRegistry()
        with patch(MONO, return_value=1000.0):
            reg.add("a", 25)
            reg.add("b", 25)
        with patch(MONO, return_value=1000.010):
            reg.refresh("a", 25)
        assert reg.keys() == ["b", "a"]
        assert reg.deadline_for("a") == pytest.approx(1000.035)
        assert reg.deadline_for("b") == pytest.approx(1000.025)

    def test_refresh_unknown_key_appends(self):
        reg = WindowRegistry()
        reg.add("a", 25)
        reg.refresh("z", 25)
        assert reg.keys() == ["a", "z"]

    def test_refresh_never_duplicates(self):
        reg = WindowRegistry()
        reg.add("a", 25)
        reg.refresh("a", 25)
        reg.refresh("a", 25)
        assert reg.keys() == ["a"]


class TestWindowRegistryRemoval:

    def test_pop_head_removes_oldest(self):
        reg = WindowRegistry()
        reg.add("a", 25)
        reg.add("b", 25)
        assert reg.pop_head().key == "a"
        assert reg.keys() == ["b"]
        assert not reg.is_known("a")

    def test_peek_does_not_remove(self):
        reg = WindowRegistry()
        reg.add("a", 25)
        reg.peek_head()
        assert len(reg) == 1

    def test_discard(self):
        reg = WindowRegistry()
        reg.add("a", 25)
        reg.add("b", 25)
        assert reg.discard("b").key == "b"
        assert reg.discard("missing") is None
        assert reg.keys() == ["a"]


class TestWindowEntry:

    def test_remaining_never_negative(self):
        entry = WindowEntry(key=1, deadline=10.0)
        assert entry.remaining(9.5) == pytest.approx(0.5)
        assert entry.remaining(11.0) == 0.0


class TestWindowRegistryKeyIdentity:

    def test_int_and_float_share_a_window(self):
        reg = WindowRegistry()
        reg.add(1, 25)
        assert reg.is_known(1.0)
        assert 1.0 in reg
        with pytest.raises(WindowRegistryError):
            reg.add(1.0, 25)
        assert len(reg) == 1

    def test_bool_is_not_an_int(self):
        reg = WindowRegistry()
        reg.add(1, 25)
        assert not reg.is_known(True)
        reg.add(True, 25)
        assert reg.keys() == [1, True]

    def test_first_seen_key_survives_refresh(self):
        reg = WindowRegistry()
        reg.add(2, 25)
        reg.refresh(2.0, 25)
        assert reg.keys() == [2]
        assert isinstance(reg.pop_head().key, int)

    def test_unencodable_key_not_contained(self):
        assert object() not in WindowRegistry()
