"""SHA-256 content hashing."""

import hashlib
import json
import os
import re
from typing import Any

CHUNK_SIZE = 8192

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_bytes(data: bytes) -> str:
    """Lower-case hex SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


def hash_string(text: str) -> str:
    """Hash the UTF-8 encoding of ``text``."""
    return hash_bytes(text.encode("utf-8"))


def hash_file(path: str | os.PathLike) -> str:
    """Hash a file's contents, streamed in fixed-size chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            h.update(chunk)
    return h.hexdigest()


def is_valid_hash(value: object) -> bool:
    return isinstance(value, str) and bool(_HASH_RE.match(value))


def canonical_json(obj: Any) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
