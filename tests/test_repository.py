"""Tests for the local repository workflow."""

import pytest

from conftest import commit_files, write
from strata.errors import (
    AlreadyExistsError,
    ConflictError,
    ConflictsRemainError,
    CorruptError,
    EmptyCommitError,
    InvalidArgumentError,
    NoCommitsYetError,
    NotFoundError,
    RepositoryNotFoundError,
)
from strata.merge import MergeStrategy
from strata.model import ConflictType, DetachedHead, SymbolicHead
from strata.repository import Repository, check_snapshot_path, find_repository_root


class TestInit:
    def test_layout(self, repo):
        assert (repo.meta / "HEAD").read_text().strip() == "ref: refs/heads/main"
        assert repo.head() == SymbolicHead("main")
        assert repo.current_head() is None
        assert repo.default_branch == "main"

    def test_twice(self, repo):
        with pytest.raises(AlreadyExistsError):
            Repository.init(repo.root)

    def test_custom_default_branch(self, tmp_path):
        repo = Repository.init(tmp_path / "r", default_branch="trunk")
        assert repo.current_branch() == "trunk"

    def test_not_a_repository(self, tmp_path):
        with pytest.raises(RepositoryNotFoundError):
            Repository(tmp_path)

    def test_discover_from_subdirectory(self, repo):
        nested = repo.root / "a" / "b"
        nested.mkdir(parents=True)
        assert find_repository_root(nested) == repo.root
        assert Repository.discover(nested).root == repo.root


class TestCommit:
    def test_first_commit(self, repo):
        commit = commit_files(repo, {"a.txt": "hello"}, "first", timestamp=1000)
        assert commit.parent_id is None
        assert commit.timestamp == 1000
        assert repo.refs.get("main") == commit.id
        assert repo.objects.read(commit.files["a.txt"]) == b"hello"
        assert repo.status().is_clean

    def test_parent_chain(self, repo):
        first = commit_files(repo, {"a.txt": "1"}, "one")
        second = commit_files(repo, {"a.txt": "2"}, "two")
        assert second.parent_id == first.id
        assert repo.head_commit() == second

    def test_empty_index(self, repo):
        with pytest.raises(EmptyCommitError):
            repo.commit("nothing")

    def test_index_kept_after_commit(self, repo):
        first = commit_files(repo, {"a.txt": "1"})
        second = repo.commit("again")
        assert second.files == first.files
        assert second.parent_id == first.id

    def test_add_removes_deleted_files(self, repo):
        commit_files(repo, {"a.txt": "1", "b.txt": "2"})
        commit = commit_files(repo, {"b.txt": None}, "drop b")
        assert set(commit.files) == {"a.txt"}

    def test_add_directory(self, repo):
        write(repo.root, "src/one.py", "1")
        write(repo.root, "src/pkg/two.py", "2")
        write(repo.root, "other.txt", "x")
        assert repo.add(["src"]) == ["src/one.py", "src/pkg/two.py"]
        assert repo.status().untracked == ["other.txt"]

    def test_add_unknown_path(self, repo):
        with pytest.raises(NotFoundError):
            repo.add(["missing.txt"])

    def test_add_skips_ignored(self, repo):
        write(repo.root, ".strataignore", "*.log\n")
        write(repo.root, "debug.log", "noise")
        write(repo.root, "keep.txt", "k")
        repo.add(["."])
        assert set(repo.index.entries()) == {".strataignore", "keep.txt"}


class TestStatus:
    def test_untracked_modified_deleted(self, repo):
        commit_files(repo, {"a.txt": "1", "b.txt": "2"})
        write(repo.root, "a.txt", "changed")
        (repo.root / "b.txt").unlink()
        write(repo.root, "c.txt", "new")
        status = repo.status()
        assert status.modified == ["a.txt"]
        assert status.deleted == ["b.txt"]
        assert status.untracked == ["c.txt"]
        assert repo.is_dirty()


class TestBranches:
    def test_create_list_delete(self, repo):
        first = commit_files(repo, {"a.txt": "1"})
        repo.create_branch("feature")
        names = [(b.name, b.current) for b in repo.list_branches()]
        assert names == [("main", True), ("feature", False)]
        assert repo.delete_branch("feature") == first.id
        assert repo.refs.get("feature") is None

    def test_create_before_first_commit(self, repo):
        with pytest.raises(NoCommitsYetError):
            repo.create_branch("feature")

    def test_duplicate_and_invalid(self, repo):
        commit_files(repo, {"a.txt": "1"})
        repo.create_branch("feature")
        with pytest.raises(AlreadyExistsError):
            repo.create_branch("feature")
        with pytest.raises(InvalidArgumentError):
            repo.create_branch("bad name")

    def test_delete_current(self, repo):
        commit_files(repo, {"a.txt": "1"})
        with pytest.raises(ConflictError):
            repo.delete_branch("main")

    def test_delete_unmerged_needs_force(self, repo):
        commit_files(repo, {"a.txt": "1"})
        repo.switch("feature", create=True)
        commit_files(repo, {"a.txt": "2"})
        repo.checkout_branch("main")
        with pytest.raises(ConflictError):
            repo.delete_branch("feature")
        repo.delete_branch("feature", force=True)

    def test_rename_current(self, repo):
        commit = commit_files(repo, {"a.txt": "1"})
        repo.rename_branch("main", "trunk")
        assert repo.current_branch() == "trunk"
        assert repo.refs.get("trunk") == commit.id


class TestCheckout:
    def test_round_trip(self, repo):
        commit_files(repo, {"a.txt": "main", "shared.txt": "s"})
        repo.switch("feature", create=True)
        commit_files(repo, {"a.txt": "feature", "extra/new.txt": "n"})
        repo.checkout_branch("main")
        assert (repo.root / "a.txt").read_text() == "main"
        assert not (repo.root / "extra").exists()
        repo.checkout_branch("feature")
        assert (repo.root / "extra/new.txt").read_text() == "n"
        assert repo.status().is_clean

    def test_refuses_dirty_tree(self, repo):
        commit_files(repo, {"a.txt": "1"})
        repo.create_branch("other")
        write(repo.root, "a.txt", "local edit")
        with pytest.raises(ConflictError):
            repo.checkout_branch("other")
        write(repo.root, "a.txt", "1")
        write(repo.root, "untracked.txt", "u")
        with pytest.raises(ConflictError):
            repo.checkout_branch("other")
        repo.checkout_branch("other", force=True)
        assert not (repo.root / "untracked.txt").exists()

    def test_keeps_ignored_files(self, repo):
        commit_files(repo, {".strataignore": "*.log\n", "a.txt": "1"})
        repo.create_branch("other")
        write(repo.root, "run.log", "log")
        repo.checkout_branch("other")
        assert (repo.root / "run.log").exists()

    def test_detached(self, repo):
        first = commit_files(repo, {"a.txt": "1"})
        commit_files(repo, {"a.txt": "2"})
        repo.checkout_commit(first.id[:8])
        assert repo.head() == DetachedHead(first.id)
        assert repo.current_branch() is None
        assert (repo.root / "a.txt").read_text() == "1"

    def test_unknown_branch(self, repo):
        commit_files(repo, {"a.txt": "1"})
        with pytest.raises(NotFoundError):
            repo.checkout_branch("nope")

    def test_directory_and_file_swap_places(self, repo):
        commit_files(repo, {"a/b.txt": "nested", "keep.txt": "k"})
        repo.switch("flat", create=True)
        (repo.root / "a/b.txt").unlink()
        (repo.root / "a").rmdir()
        commit_files(repo, {"a": "now a file"})
        assert set(repo.head_commit().files) == {"a", "keep.txt"}

        repo.checkout_branch("main")
        assert (repo.root / "a/b.txt").read_text() == "nested"
        repo.checkout_branch("flat")
        assert (repo.root / "a").read_text() == "now a file"
        assert repo.status().is_clean

    def test_refuses_when_ignored_file_is_in_the_way(self, repo):
        commit_files(repo, {".strataignore": "*.log\n", "a/b.txt": "nested"})
        repo.switch("flat", create=True)
        (repo.root / "a/b.txt").unlink()
        (repo.root / "a").rmdir()
        commit_files(repo, {"a": "now a file"})
        repo.checkout_branch("main")
        write(repo.root, "a/run.log", "log")

        with pytest.raises(ConflictError, match="would be lost"):
            repo.checkout_branch("flat")
        assert repo.current_branch() == "main"
        assert (repo.root / "a/b.txt").read_text() == "nested"
        assert (repo.root / "a/run.log").exists()


class TestRestoreAndReset:
    def test_restore(self, repo):
        commit_files(repo, {"a.txt": "original"})
        write(repo.root, "a.txt", "scribble")
        repo.restore_file("a.txt")
        assert (repo.root / "a.txt").read_text() == "original"

    def test_restore_unknown_path(self, repo):
        commit_files(repo, {"a.txt": "original"})
        with pytest.raises(NotFoundError, match="not found in HEAD commit"):
            repo.restore_file("b.txt")

    def test_restore_without_commits(self, repo):
        with pytest.raises(NoCommitsYetError):
            repo.restore_file("a.txt")

    def test_hard_reset(self, repo):
        first = commit_files(repo, {"a.txt": "1"})
        commit_files(repo, {"a.txt": "2", "b.txt": "b"})
        repo.reset(first.id, hard=True)
        assert repo.current_head() == first.id
        assert (repo.root / "a.txt").read_text() == "1"
        assert not (repo.root / "b.txt").exists()

    def test_soft_reset_keeps_tree(self, repo):
        first = commit_files(repo, {"a.txt": "1"})
        commit_files(repo, {"a.txt": "2"})
        repo.reset(first.id)
        assert repo.index.entries() == first.files
        assert (repo.root / "a.txt").read_text() == "2"


class TestLog:
    def test_newest_first_with_decorations(self, repo):
        first = commit_files(repo, {"a.txt": "1"}, "one", timestamp=1)
        second = commit_files(repo, {"b.txt": "2"}, "two", timestamp=2)
        entries = repo.log()
        assert [e.commit.id for e in entries] == [second.id, first.id]
        assert entries[0].decorations == ("HEAD", "main")
        assert repo.log(limit=1)[0].commit == second

    def test_path_filter(self, repo):
        first = commit_files(repo, {"a.txt": "1"}, "one")
        commit_files(repo, {"b.txt": "2"}, "two")
        assert [e.commit.id for e in repo.log(path="a.txt")] == [first.id]

    def test_empty(self, repo):
        assert repo.log() == []


class TestDiff:
    def test_staged_and_working(self, repo):
        commit_files(repo, {"a.txt": "one\n"})
        write(repo.root, "a.txt", "two\n")
        working = repo.diff_working()
        assert working[0].patch.lines == ("-one", "+two")
        repo.add(["a.txt"])
        assert repo.diff_working() == []
        staged = repo.diff_staged()
        assert [c.path for c in staged] == ["a.txt"]

    def test_between_commits(self, repo):
        first = commit_files(repo, {"a.txt": "1\n"})
        second = commit_files(repo, {"a.txt": "2\n", "b.txt": "b\n"})
        changes = repo.diff_commits(first.id, second.id)
        assert [c.path for c in changes] == ["a.txt", "b.txt"]


def _diverge(repo, main_content, feature_content):
    commit_files(repo, {"f.txt": "a\nb\nc\nd\n", "other.txt": "o\n"}, "base", timestamp=1)
    repo.switch("feature", create=True)
    commit_files(repo, {"f.txt": feature_content}, "feature edit", timestamp=2)
    repo.checkout_branch("main")
    commit_files(repo, {"f.txt": main_content}, "main edit", timestamp=3)


class TestMerge:
    def test_fast_forward(self, repo):
        commit_files(repo, {"a.txt": "1"})
        repo.switch("feature", create=True)
        tip = commit_files(repo, {"a.txt": "2"})
        repo.checkout_branch("main")
        result = repo.merge_branch("feature")
        assert result.strategy is MergeStrategy.FAST_FORWARD
        assert repo.current_head() == tip.id
        assert (repo.root / "a.txt").read_text() == "2"

    def test_up_to_date(self, repo):
        commit_files(repo, {"a.txt": "1"})
        repo.create_branch("feature")
        assert repo.merge_branch("feature").strategy is MergeStrategy.UP_TO_DATE

    def test_three_way(self, repo):
        _diverge(repo, "A\nb\nc\nd\n", "a\nb\nc\nD\n")
        local = repo.current_head()
        result = repo.merge_branch("feature")
        assert result.strategy is MergeStrategy.THREE_WAY
        merge = repo.head_commit()
        assert merge.parents == (local, repo.refs.get("feature"))
        assert merge.message == "Merge branch 'feature'"
        assert (repo.root / "f.txt").read_text() == "A\nb\nc\nD\n"
        assert repo.status().is_clean

    def test_conflict_continue(self, repo):
        _diverge(repo, "a\nMAIN\nc\nd\n", "a\nFEATURE\nc\nd\n")
        local = repo.current_head()
        result = repo.merge_branch("feature")
        assert result.strategy is MergeStrategy.CONFLICT
        assert [c.path for c in result.conflicts] == ["f.txt"]
        assert result.conflicts[0].conflict_type is ConflictType.MODIFY_MODIFY
        assert repo.is_merge_in_progress()
        assert repo.current_head() == local
        text = (repo.root / "f.txt").read_text()
        assert "<<<<<<< HEAD\nMAIN\n=======\nFEATURE\n>>>>>>> feature\n" in text

        with pytest.raises(ConflictsRemainError) as info:
            repo.continue_merge()
        assert info.value.paths == ["f.txt"]
        with pytest.raises(ConflictError):
            repo.commit("sneaky")

        write(repo.root, "f.txt", "a\nBOTH\nc\nd\n")
        done = repo.continue_merge()
        merge = repo.head_commit()
        assert done.merge_commit_id == merge.id
        assert merge.parents == (local, repo.refs.get("feature"))
        assert repo.objects.read(merge.files["f.txt"]) == b"a\nBOTH\nc\nd\n"
        assert not repo.is_merge_in_progress()

    def test_conflict_abort(self, repo):
        _diverge(repo, "a\nMAIN\nc\nd\n", "a\nFEATURE\nc\nd\n")
        local = repo.current_head()
        repo.merge_branch("feature")
        repo.abort_merge()
        assert not repo.is_merge_in_progress()
        assert repo.current_head() == local
        assert (repo.root / "f.txt").read_text() == "a\nMAIN\nc\nd\n"
        assert repo.status().is_clean

    def test_second_merge_refused(self, repo):
        _diverge(repo, "a\nMAIN\nc\nd\n", "a\nFEATURE\nc\nd\n")
        repo.merge_branch("feature")
        with pytest.raises(ConflictError):
            repo.merge_branch("feature")
        with pytest.raises(ConflictError):
            repo.checkout_branch("feature")

    def test_refused_with_local_changes(self, repo):
        _diverge(repo, "A\nb\nc\nd\n", "a\nb\nc\nD\n")
        write(repo.root, "other.txt", "dirty\n")
        with pytest.raises(ConflictError):
            repo.merge_branch("feature")

    def test_refuses_to_overwrite_untracked_file(self, repo):
        commit_files(repo, {"a.txt": "1"})
        repo.switch("feature", create=True)
        commit_files(repo, {"new.txt": "theirs"})
        repo.checkout_branch("main")
        before = repo.current_head()
        write(repo.root, "new.txt", "mine")

        with pytest.raises(ConflictError, match="new.txt"):
            repo.merge_branch("feature")
        assert repo.current_head() == before
        assert (repo.root / "new.txt").read_text() == "mine"

    def test_unrelated_untracked_files_survive(self, repo):
        _diverge(repo, "A\nb\nc\nd\n", "a\nb\nc\nD\n")
        write(repo.root, "notes.txt", "scratch")
        assert repo.merge_branch("feature").strategy is MergeStrategy.THREE_WAY
        assert (repo.root / "notes.txt").read_text() == "scratch"

    def test_ignored_file_in_the_way_leaves_head_alone(self, repo):
        commit_files(repo, {".strataignore": "*.log\n", "a/b.txt": "nested"})
        repo.switch("flat", create=True)
        (repo.root / "a/b.txt").unlink()
        (repo.root / "a").rmdir()
        commit_files(repo, {"a": "now a file"})
        repo.checkout_branch("main")
        before = repo.current_head()
        write(repo.root, "a/run.log", "log")

        with pytest.raises(ConflictError):
            repo.merge_branch("flat")
        assert repo.current_head() == before
        assert (repo.root / "a/b.txt").read_text() == "nested"

    def test_no_merge_in_progress(self, repo):
        with pytest.raises(InvalidArgumentError):
            repo.continue_merge()
        with pytest.raises(InvalidArgumentError):
            repo.abort_merge()


class TestSnapshotPaths:
    @pytest.mark.parametrize("path", ["../escape", "/abs", ".strata/HEAD", "a\\b", ""])
    def test_unsafe(self, path):
        with pytest.raises(CorruptError):
            check_snapshot_path(path)

    def test_safe(self):
        assert check_snapshot_path("dir/file.txt") == "dir/file.txt"
