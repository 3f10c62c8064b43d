"""Tests for the Memory KV store."""

import threading

import pytest

from strata.kv.memory import Memory


class TestMemoryBasic:
    def test_set_get(self):
        m = Memory()
        m.set("k", b"v")
        assert m.get("k") == b"v"

    def test_get_missing(self):
        assert Memory().get("nope") is None

    def test_set_many_get_many(self):
        m = Memory()
        m.set_many(a=b"1", b=b"2", c=b"3")
        assert m.get_many("a", "c", "missing") == {"a": b"1", "c": b"3"}

    def test_items_and_keys(self):
        m = Memory()
        m.set("a", b"1")
        m.set("b", b"2")
        assert set(m.keys()) == {"a", "b"}
        assert dict(m.items()) == {"a": b"1", "b": b"2"}

    def test_rejects_non_bytes(self):
        with pytest.raises(TypeError, match="Expected bytes"):
            Memory().set("k", "text")  # type: ignore[arg-type]

    def test_remove_many_ignores_missing(self):
        m = Memory()
        m.set_many(a=b"1", b=b"2")
        m.remove_many("a", "missing")
        assert list(m.keys()) == ["b"]

    def test_keys_with_prefix(self):
        m = Memory()
        m.set_many(**{"ref/main": b"1", "ref/dev": b"2", "commit/x": b"3"})
        assert sorted(m.keys_with_prefix("ref/")) == ["ref/dev", "ref/main"]


class TestMemoryCAS:
    def test_cas_absent_key(self):
        m = Memory()
        assert m.cas("k", b"v", None)
        assert not m.cas("k", b"w", None)
        assert m.get("k") == b"v"

    def test_cas_expected_mismatch(self):
        m = Memory()
        m.set("k", b"old")
        assert not m.cas("k", b"new", expected=b"other")
        assert m.get("k") == b"old"

    def test_concurrent_cas_single_winner(self):
        m = Memory()
        m.set("head", b"base")
        wins = []

        def worker(i):
            if m.cas("head", f"w{i}".encode(), b"base"):
                wins.append(i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1
        assert m.get("head") == f"w{wins[0]}".encode()
