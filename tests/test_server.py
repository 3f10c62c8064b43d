"""Tests for the repository server."""

import base64

import pytest

from strata.errors import (
    AlreadyExistsError,
    ConflictError,
    CorruptError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    UnauthorizedError,
)
from strata.hashing import hash_bytes
from strata.kv import Memory
from strata.model import Commit
from strata.protocol import encode_blobs
from strata.server import AuthRequest, Permissions, RepositoryServer, StaticAuthenticator

ALICE = AuthRequest("alice-token")
BOB = AuthRequest("bob-token", "bob@example.com")


@pytest.fixture
def kv():
    return Memory()


@pytest.fixture
def server(kv):
    auth = StaticAuthenticator()
    auth.add_user("u-alice", "alice@example.com", "alice-token")
    auth.add_user("u-bob", "bob@example.com", "bob-token", Permissions.read_only())
    server = RepositoryServer(kv, auth)
    server.create_repository(ALICE, "proj")
    return server


def make_commit(files, parent=None, merge_parent=None, message="c", ts=1):
    """Commit over ``files`` (path -> bytes) plus its encoded blobs."""
    snapshot = {path: hash_bytes(data) for path, data in files.items()}
    blobs = encode_blobs({hash_bytes(data): data for data in files.values()})
    return Commit.create(message, snapshot, parent, merge_parent, timestamp=ts), blobs


def push(server, commit, blobs, base=None, branch="main"):
    return server.push(ALICE, "proj", branch, base, commit, blobs)


class TestRepositories:
    def test_create_twice(self, server):
        with pytest.raises(AlreadyExistsError):
            server.create_repository(ALICE, "proj")

    def test_invalid_key(self, server):
        with pytest.raises(InvalidArgumentError):
            server.create_repository(ALICE, "../evil")

    def test_handshake(self, server):
        info = server.handshake(BOB, "proj")
        assert info["user"]["email"] == "bob@example.com"
        assert info["repository"]["defaultBranch"] == "main"
        assert info["permissions"]["canRead"]
        assert not info["permissions"]["canPush"]

    def test_unknown_repository(self, server):
        with pytest.raises(NotFoundError):
            server.get_refs(ALICE, "nope")

    def test_bad_token(self, server):
        with pytest.raises(UnauthorizedError):
            server.get_refs(AuthRequest("wrong"), "proj")
        with pytest.raises(UnauthorizedError):
            server.get_refs(AuthRequest("bob-token", "alice@example.com"), "proj")

    def test_repositories_are_isolated(self, server, kv):
        server.create_repository(ALICE, "other")
        commit, blobs = make_commit({"a": b"1"})
        push(server, commit, blobs)
        assert server.get_refs(ALICE, "other")["branches"] == {}
        assert kv.get("r-proj/ref/main") == commit.id.encode()


class TestPush:
    def test_first_push(self, server):
        commit, blobs = make_commit({"a.txt": b"hello"})
        result = push(server, commit, blobs)
        assert result.fast_forward
        assert result.new_head_commit_id == commit.id
        assert server.get_refs(ALICE, "proj")["branches"] == {"main": commit.id}
        assert server.get_commit(ALICE, "proj", commit.id) == commit

    def test_fast_forward_and_non_fast_forward(self, server):
        c1, b1 = make_commit({"a": b"1"}, ts=1)
        push(server, c1, b1)
        c2, b2 = make_commit({"a": b"2"}, c1.id, ts=2)
        assert push(server, c2, b2, base=c1.id).fast_forward

        stale, b3 = make_commit({"a": b"3"}, c1.id, ts=3)
        result = push(server, stale, b3, base=c1.id)
        assert not result.fast_forward
        assert result.new_head_commit_id == c2.id
        assert server.get_refs(ALICE, "proj")["branches"]["main"] == c2.id
        assert server.get_commit(ALICE, "proj", stale.id) == stale

    def test_repush_is_idempotent(self, server):
        commit, blobs = make_commit({"a": b"1"})
        first = push(server, commit, blobs)
        again = push(server, commit, blobs)
        assert again == first
        assert push(server, commit, {}, base=commit.id).new_head_commit_id == commit.id
        assert server.get_commit_history(ALICE, "proj")[0] == [commit]

    def test_reuses_stored_blobs(self, server):
        c1, b1 = make_commit({"a": b"1"}, ts=1)
        push(server, c1, b1)
        c2, _ = make_commit({"a": b"1", "b": b"x"}, c1.id, ts=2)
        _, only_b = make_commit({"b": b"x"})
        assert push(server, c2, only_b, base=c1.id).fast_forward

    def test_blob_hash_mismatch(self, server):
        commit, _ = make_commit({"a": b"real"})
        forged = {hash_bytes(b"real"): base64.b64encode(b"fake").decode()}
        with pytest.raises(CorruptError):
            push(server, commit, forged)

    def test_missing_blob(self, server):
        commit, _ = make_commit({"a": b"never sent"})
        with pytest.raises(InvalidArgumentError):
            push(server, commit, {})

    def test_unknown_parent(self, server):
        commit, blobs = make_commit({"a": b"1"}, parent="f" * 64)
        with pytest.raises(InvalidArgumentError):
            push(server, commit, blobs)

    def test_tampered_commit(self, server):
        commit, blobs = make_commit({"a": b"1"})
        forged = Commit(commit.id, None, None, "other message", commit.timestamp, dict(commit.files))
        with pytest.raises(CorruptError):
            push(server, forged, blobs)

    def test_read_only_user(self, server):
        commit, blobs = make_commit({"a": b"1"})
        with pytest.raises(PermissionDeniedError):
            server.push(BOB, "proj", "main", None, commit, blobs)


class TestReads:
    def test_batch_objects_omits_unknown(self, server):
        commit, blobs = make_commit({"a": b"one", "b": b"two"})
        push(server, commit, blobs)
        wanted = [hash_bytes(b"one"), "deadbeef", "0" * 64]
        assert server.get_batch_objects(BOB, "proj", wanted) == {hash_bytes(b"one"): b"one"}

    def test_batch_limit(self, server):
        with pytest.raises(InvalidArgumentError):
            server.get_batch_objects(ALICE, "proj", ["0" * 64] * 501)

    def test_history_paging(self, server):
        parent = None
        ids = []
        for i in range(5):
            commit, blobs = make_commit({"a": str(i).encode()}, parent, ts=i)
            push(server, commit, blobs, base=parent)
            parent = commit.id
            ids.append(commit.id)
        page, has_more = server.get_commit_history(ALICE, "proj", limit=3)
        assert [c.id for c in page] == ids[:1:-1]
        assert has_more
        rest, has_more = server.get_commit_history(ALICE, "proj", from_commit=ids[1], limit=3)
        assert [c.id for c in rest] == [ids[1], ids[0]]
        assert not has_more

    def test_history_errors(self, server):
        assert server.get_commit_history(ALICE, "proj") == ([], False)
        with pytest.raises(NotFoundError):
            server.get_commit_history(ALICE, "proj", branch="missing")
        with pytest.raises(NotFoundError):
            server.get_commit_history(ALICE, "proj", from_commit="0" * 64)
        with pytest.raises(InvalidArgumentError):
            server.get_commit_history(ALICE, "proj", limit=0)


class TestBranchesAndMerges:
    @pytest.fixture
    def diverged(self, server):
        base, b0 = make_commit({"f": b"a\nb\nc\nd\n"}, ts=1)
        push(server, base, b0)
        server.create_branch(ALICE, "proj", "feature")
        main, b1 = make_commit({"f": b"A\nb\nc\nd\n"}, base.id, ts=2)
        push(server, main, b1, base=base.id)
        feature, b2 = make_commit({"f": b"a\nb\nc\nD\n"}, base.id, ts=3)
        push(server, feature, b2, base=base.id, branch="feature")
        return base, main, feature

    def test_create_and_delete(self, server):
        commit, blobs = make_commit({"a": b"1"})
        push(server, commit, blobs)
        assert server.create_branch(ALICE, "proj", "dev") == commit.id
        with pytest.raises(AlreadyExistsError):
            server.create_branch(ALICE, "proj", "dev")
        server.delete_branch(ALICE, "proj", "dev")
        with pytest.raises(NotFoundError):
            server.delete_branch(ALICE, "proj", "dev")
        with pytest.raises(ConflictError):
            server.delete_branch(ALICE, "proj", "main")

    def test_analysis(self, server, diverged):
        base, main, feature = diverged
        analysis = server.analyze_merge(BOB, "proj", "main", "feature")
        assert analysis.merge_base == base.id
        assert analysis.can_auto_merge
        assert not analysis.can_fast_forward
        assert server.get_refs(ALICE, "proj")["branches"]["main"] == main.id

    def test_three_way_merge(self, server, diverged):
        base, main, feature = diverged
        outcome = server.merge_branches(ALICE, "proj", "feature", "main")
        assert outcome["strategy"] == "three-way"
        merged = server.get_commit(ALICE, "proj", outcome["newHeadCommitId"])
        assert merged.parents == (main.id, feature.id)
        data = server.get_batch_objects(ALICE, "proj", [merged.files["f"]])
        assert data[merged.files["f"]] == b"A\nb\nc\nD\n"

    def test_fast_forward_only(self, server, diverged):
        with pytest.raises(ConflictError):
            server.merge_branches(ALICE, "proj", "feature", "main", strategy="fast-forward")

    def test_conflict_refused(self, server):
        base, b0 = make_commit({"f": b"x\n"}, ts=1)
        push(server, base, b0)
        server.create_branch(ALICE, "proj", "feature")
        main, b1 = make_commit({"f": b"L\n"}, base.id, ts=2)
        push(server, main, b1, base=base.id)
        feature, b2 = make_commit({"f": b"R\n"}, base.id, ts=3)
        push(server, feature, b2, base=base.id, branch="feature")
        with pytest.raises(ConflictError):
            server.merge_branches(ALICE, "proj", "feature", "main")
        assert server.get_refs(ALICE, "proj")["branches"]["main"] == main.id

    def test_merge_needs_permission(self, server, diverged):
        with pytest.raises(PermissionDeniedError):
            server.merge_branches(BOB, "proj", "feature", "main")


class TestFileBlobs:
    def test_blob_dir(self, kv, tmp_path):
        auth = StaticAuthenticator()
        auth.add_user("u", "u@example.com", "t")
        server = RepositoryServer(kv, auth, blob_dir=tmp_path)
        caller = AuthRequest("t")
        server.create_repository(caller, "files")
        commit, blobs = make_commit({"a": b"on disk"})
        server.push(caller, "files", "main", None, commit, blobs)
        blob_hash = hash_bytes(b"on disk")
        assert server.get_batch_objects(caller, "files", [blob_hash]) == {blob_hash: b"on disk"}
        assert any((tmp_path / "files").rglob("*"))
