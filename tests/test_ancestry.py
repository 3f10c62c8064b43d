"""Tests for commit graph traversal."""

import logging

import pytest

from strata import ancestry
from strata.ancestry import (
    can_fast_forward,
    count_commits_between,
    distance,
    find_common_ancestor,
    is_ancestor,
    walk_history,
)
from strata.graph import KVCommitStore
from strata.kv import Memory
from strata.model import Commit


@pytest.fixture
def store():
    return KVCommitStore(Memory())


def make(store, message, parent=None, merge_parent=None, ts=0):
    commit = Commit.create(message, {"f": message}, parent, merge_parent, timestamp=ts)
    store.put(commit)
    return commit.id


@pytest.fixture
def diamond(store):
    """root -> a -> (b1 | c1) -> m, where m merges c1 into b1."""
    root = make(store, "root", ts=1)
    a = make(store, "a", root, ts=2)
    b1 = make(store, "b1", a, ts=3)
    c1 = make(store, "c1", a, ts=4)
    m = make(store, "m", b1, c1, ts=5)
    return dict(root=root, a=a, b1=b1, c1=c1, m=m)


class TestCommonAncestor:
    def test_divergent_branches(self, store, diamond):
        assert find_common_ancestor(store, diamond["b1"], diamond["c1"]) == diamond["a"]

    def test_same_commit(self, store, diamond):
        assert find_common_ancestor(store, diamond["a"], diamond["a"]) == diamond["a"]

    def test_linear(self, store, diamond):
        assert find_common_ancestor(store, diamond["root"], diamond["b1"]) == diamond["root"]

    def test_follows_merge_parent(self, store, diamond):
        assert find_common_ancestor(store, diamond["m"], diamond["c1"]) == diamond["c1"]
        assert is_ancestor(store, diamond["c1"], diamond["m"])

    def test_disjoint(self, store, diamond):
        other = make(store, "island", ts=9)
        assert find_common_ancestor(store, diamond["m"], other) is None

    def test_none_side(self, store, diamond):
        assert find_common_ancestor(store, None, diamond["a"]) is None


class TestFastForward:
    def test_rules(self, store, diamond):
        assert can_fast_forward(store, diamond["a"], diamond["b1"])
        assert not can_fast_forward(store, diamond["b1"], diamond["c1"])
        assert can_fast_forward(store, diamond["c1"], diamond["m"])
        assert can_fast_forward(store, None, diamond["a"])
        assert not can_fast_forward(store, diamond["a"], None)


class TestDistance:
    def test_count_between(self, store, diamond):
        assert count_commits_between(store, diamond["root"], diamond["b1"]) == 2
        assert count_commits_between(store, diamond["b1"], diamond["b1"]) == 0
        assert count_commits_between(store, diamond["a"], diamond["m"]) == 3

    def test_distance(self, store, diamond):
        d = distance(store, diamond["b1"], diamond["c1"])
        assert (d.ahead, d.behind, d.merge_base) == (1, 1, diamond["a"])


class TestWalkHistory:
    def test_limit_and_has_more(self, store, diamond):
        commits, has_more = walk_history(store, diamond["b1"], limit=2)
        assert [c.message for c in commits] == ["b1", "a"]
        assert has_more
        commits, has_more = walk_history(store, diamond["b1"], limit=3)
        assert len(commits) == 3
        assert not has_more

    def test_first_parent(self, store, diamond):
        commits, _ = walk_history(store, diamond["m"], first_parent=True)
        assert [c.message for c in commits] == ["m", "b1", "a", "root"]
        commits, _ = walk_history(store, diamond["m"])
        assert {c.message for c in commits} == {"m", "b1", "c1", "a", "root"}

    def test_empty(self, store):
        assert walk_history(store, None) == ([], False)


def test_traversal_bound(store, monkeypatch, caplog):
    monkeypatch.setattr(ancestry, "MAX_TRAVERSAL", 3)
    head = None
    for i in range(6):
        head = make(store, f"c{i}", head, ts=i)
    with caplog.at_level(logging.WARNING, logger="strata.ancestry"):
        reached = ancestry.ancestors(store, head)
    assert len(reached) == 3
    assert "Stopped walking" in caplog.text
