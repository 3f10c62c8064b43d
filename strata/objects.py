"""Content-addressed blob storage.

Blobs are keyed by the SHA-256 of their bytes. The bytes live in a
:class:`BlobStorageClient` (local files or a KV store) chosen through a
small registry; the server additionally keeps a metadata record per
blob in a :class:`BlobIndex`.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Iterable, Protocol, runtime_checkable

from .errors import CorruptError, InvalidArgumentError, IOFailureError, NotFoundError
from .hashing import hash_bytes, is_valid_hash
from .ignore import IgnoreMatcher, in_meta_dir, relative_path
from .kv.base import KVStore

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"
BINARY_CONTENT_TYPE = "application/octet-stream"


def is_text(data: bytes) -> bool:
    """UTF-8 decodable and free of NUL bytes."""
    if b"\x00" in data:
        return False
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def content_type_of(data: bytes) -> str:
    return TEXT_CONTENT_TYPE if is_text(data) else BINARY_CONTENT_TYPE


def atomic_write(path: Path, data: bytes) -> None:
    """Write via a temp file in the same directory, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


class StorageType(str, enum.Enum):
    LOCAL = "local"
    KV = "kv"


@runtime_checkable
class BlobStorageClient(Protocol):
    """Where blob bytes physically live."""

    type: StorageType

    def save(self, blob_hash: str, content: bytes) -> str:
        """Store ``content``; return the backend's storage path."""
        ...

    def load(self, storage_path: str) -> bytes: ...

    def exists(self, blob_hash: str) -> bool: ...

    def path_for(self, blob_hash: str) -> str: ...


class FileSystemStorage:
    """Blobs as files under ``<base>/<first two hex>/<remaining hex>``."""

    type = StorageType.LOCAL

    def __init__(self, base_dir: str | os.PathLike) -> None:
        self.base_dir = Path(base_dir)

    def path_for(self, blob_hash: str) -> str:
        return f"{blob_hash[:2]}/{blob_hash[2:]}"

    def _file(self, storage_path: str) -> Path:
        return self.base_dir / storage_path

    def save(self, blob_hash: str, content: bytes) -> str:
        storage_path = self.path_for(blob_hash)
        target = self._file(storage_path)
        if target.exists():
            return storage_path
        try:
            atomic_write(target, content)
        except OSError as e:
            raise IOFailureError(f"Could not write blob {blob_hash}: {e}") from e
        return storage_path

    def load(self, storage_path: str) -> bytes:
        try:
            return self._file(storage_path).read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Blob not found: {storage_path}") from None
        except OSError as e:
            raise IOFailureError(f"Could not read blob {storage_path}: {e}") from e

    def exists(self, blob_hash: str) -> bool:
        return self._file(self.path_for(blob_hash)).is_file()


class KVStorage:
    """Blobs as ``blob/<hash>`` entries in a KVStore."""

    type = StorageType.KV

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def path_for(self, blob_hash: str) -> str:
        return f"blob/{blob_hash}"

    def save(self, blob_hash: str, content: bytes) -> str:
        key = self.path_for(blob_hash)
        # Identical content under the same key, so losing the race is fine.
        self.kv.cas(key, content, None)
        return key

    def load(self, storage_path: str) -> bytes:
        data = self.kv.get(storage_path)
        if data is None:
            raise NotFoundError(f"Blob not found: {storage_path}")
        return data

    def exists(self, blob_hash: str) -> bool:
        return self.path_for(blob_hash) in self.kv


# -- Registry --

_registry: dict[StorageType, Callable[..., BlobStorageClient]] = {
    StorageType.LOCAL: FileSystemStorage,
    StorageType.KV: KVStorage,
}


def register_storage(storage_type: StorageType, factory: Callable[..., BlobStorageClient]) -> None:
    _registry[storage_type] = factory


def create_storage(storage_type: StorageType | str, *args, **kwargs) -> BlobStorageClient:
    """Build a storage client by type.

    Raises:
        InvalidArgumentError: No backend is registered for the type.
    """
    try:
        factory = _registry[StorageType(storage_type)]
    except (KeyError, ValueError):
        raise InvalidArgumentError(f"Unknown storage type: {storage_type!r}") from None
    return factory(*args, **kwargs)


class ObjectStore:
    """Read and write blobs by content hash.

    Args:
        storage: The backend holding the bytes.
        root: Working-tree root, needed by :meth:`write_file`.
        ignore: Matcher consulted by :meth:`write_file`.
    """

    def __init__(
        self,
        storage: BlobStorageClient,
        root: str | os.PathLike | None = None,
        ignore: IgnoreMatcher | None = None,
    ) -> None:
        self.storage = storage
        self.root = Path(root) if root is not None else None
        self.ignore = ignore

    def write_bytes(self, data: bytes) -> str:
        blob_hash = hash_bytes(data)
        if not self.storage.exists(blob_hash):
            self.storage.save(blob_hash, data)
        return blob_hash

    def write_file(self, path: str | os.PathLike) -> str | None:
        """Store a working-tree file.

        Returns None for files inside the metadata directory or matched
        by the ignore rules.
        """
        if self.root is None:
            raise InvalidArgumentError("ObjectStore has no working-tree root")
        rel = relative_path(self.root, path)
        if in_meta_dir(rel):
            return None
        if self.ignore is not None and self.ignore.is_ignored(rel):
            logger.debug("Skipping ignored file %s", rel)
            return None
        try:
            data = (self.root / rel).read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"File not found: {rel}") from None
        except OSError as e:
            raise IOFailureError(f"Could not read {rel}: {e}") from e
        return self.write_bytes(data)

    def read(self, blob_hash: str) -> bytes:
        if not is_valid_hash(blob_hash):
            raise NotFoundError(f"Blob not found: {blob_hash}")
        data = self.storage.load(self.storage.path_for(blob_hash))
        if hash_bytes(data) != blob_hash:
            raise CorruptError(f"Blob {blob_hash} does not match its content")
        return data

    def exists(self, blob_hash: str) -> bool:
        return is_valid_hash(blob_hash) and self.storage.exists(blob_hash)

    def missing(self, hashes: Iterable[str]) -> set[str]:
        return {h for h in set(hashes) if not self.exists(h)}


# -- Server-side metadata --


@dataclass(frozen=True)
class BlobRecord:
    """Metadata kept beside each stored blob."""

    hash: str
    size: int
    content_type: str
    storage_type: StorageType
    storage_path: str
    created_at: float

    def to_json(self) -> bytes:
        data = asdict(self)
        data["storage_type"] = self.storage_type.value
        return json.dumps(data, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> BlobRecord:
        data = json.loads(raw)
        data["storage_type"] = StorageType(data["storage_type"])
        return cls(**data)


class BlobIndex:
    """``blobmeta/<hash>`` records in a KVStore."""

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def get(self, blob_hash: str) -> BlobRecord | None:
        raw = self.kv.get(f"blobmeta/{blob_hash}")
        return BlobRecord.from_json(raw) if raw is not None else None

    def put(self, record: BlobRecord) -> None:
        self.kv.cas(f"blobmeta/{record.hash}", record.to_json(), None)

    def __contains__(self, blob_hash: str) -> bool:
        return f"blobmeta/{blob_hash}" in self.kv


class BlobService:
    """Blob bytes in a chosen backend plus a metadata record.

    ``load`` resolves the backend from the record, so blobs written
    through different backends stay readable.
    """

    def __init__(
        self,
        index: BlobIndex,
        clients: Iterable[BlobStorageClient],
        default: StorageType = StorageType.KV,
    ) -> None:
        self.index = index
        self.clients = {c.type: c for c in clients}
        if default not in self.clients:
            raise InvalidArgumentError(f"No client for default storage {default.value}")
        self.default = default

    def save(self, data: bytes, storage_type: StorageType | None = None) -> BlobRecord:
        blob_hash = hash_bytes(data)
        existing = self.index.get(blob_hash)
        if existing is not None:
            return existing
        client = self.clients.get(storage_type or self.default)
        if client is None:
            raise InvalidArgumentError(f"Unsupported storage type: {storage_type}")
        storage_path = client.save(blob_hash, data)
        record = BlobRecord(
            hash=blob_hash,
            size=len(data),
            content_type=content_type_of(data),
            storage_type=client.type,
            storage_path=storage_path,
            created_at=time.time(),
        )
        self.index.put(record)
        return record

    def load(self, blob_hash: str) -> bytes:
        record = self.index.get(blob_hash)
        if record is None:
            raise NotFoundError(f"Blob not found: {blob_hash}")
        data = self.clients[record.storage_type].load(record.storage_path)
        if hash_bytes(data) != blob_hash:
            raise CorruptError(f"Blob {blob_hash} does not match its content")
        return data

    def exists(self, blob_hash: str) -> bool:
        return blob_hash in self.index

    def record(self, blob_hash: str) -> BlobRecord:
        record = self.index.get(blob_hash)
        if record is None:
            raise NotFoundError(f"Blob not found: {blob_hash}")
        return record

    # Same surface as ObjectStore so the merge core can run server-side.

    def read(self, blob_hash: str) -> bytes:
        return self.load(blob_hash)

    def write_bytes(self, data: bytes) -> str:
        return self.save(data).hash
