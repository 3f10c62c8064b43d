"""Ignore rules from the working tree's ``.strataignore`` file."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import pathspec

logger = logging.getLogger(__name__)

META_DIR = ".strata"
IGNORE_FILE = ".strataignore"


def relative_path(root: str | os.PathLike, path: str | os.PathLike) -> str:
    """Repository-relative, forward-slash form of ``path``.

    Relative inputs are taken to be relative to ``root`` already.
    """
    p = Path(path)
    if p.is_absolute():
        p = p.resolve().relative_to(Path(root).resolve())
    rel = p.as_posix()
    while rel.startswith("./"):
        rel = rel[2:]
    return rel


def in_meta_dir(rel: str) -> bool:
    return rel == META_DIR or rel.startswith(META_DIR + "/")


class IgnoreMatcher:
    """Gitignore-style matcher.

    Patterns are read once when the matcher is built. The metadata
    directory is always ignored whatever the patterns say.
    """

    def __init__(self, root: str | os.PathLike, patterns: list[str] | None = None) -> None:
        self.root = Path(root)
        if patterns is None:
            patterns = self._read_patterns()
        self.patterns = patterns
        self.spec = pathspec.PathSpec.from_lines("gitwildmatch", patterns)

    def _read_patterns(self) -> list[str]:
        ignore_file = self.root / IGNORE_FILE
        if not ignore_file.is_file():
            return []
        lines = ignore_file.read_text(encoding="utf-8").splitlines()
        patterns = [ln.strip() for ln in lines if ln.strip() and not ln.strip().startswith("#")]
        logger.debug("Loaded %d ignore patterns from %s", len(patterns), ignore_file)
        return patterns

    def is_ignored(self, path: str | os.PathLike, is_dir: bool = False) -> bool:
        rel = relative_path(self.root, path)
        if in_meta_dir(rel):
            return True
        if not rel or not self.patterns:
            return False
        if self.spec.match_file(rel + "/" if is_dir else rel):
            return True
        # Directory rules ("build/") exclude every descendant.
        parts = rel.split("/")
        for i in range(1, len(parts)):
            if self.spec.match_file("/".join(parts[:i]) + "/"):
                return True
        return False


def is_ignored(root: str | os.PathLike, path: str | os.PathLike) -> bool:
    """One-off check; the ignore file is read on every call."""
    return IgnoreMatcher(root).is_ignored(path)
