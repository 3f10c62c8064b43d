"""Shared fixtures."""

import pytest

from strata.repository import Repository


def write(root, path, content):
    """Write a working-tree file, creating parent directories."""
    target = root / path
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    target.write_bytes(content)
    return target


def commit_files(repo, files, message="update", timestamp=None):
    """Write ``files`` (path -> content or None to delete), stage them and commit."""
    for path, content in files.items():
        if content is None:
            (repo.root / path).unlink()
        else:
            write(repo.root, path, content)
    repo.add(list(files))
    return repo.commit(message, timestamp=timestamp)


@pytest.fixture
def repo(tmp_path):
    return Repository.init(tmp_path / "work")
