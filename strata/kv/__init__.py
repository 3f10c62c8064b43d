"""Byte-oriented key/value backends."""

from .base import KVStore
from .memory import Memory
from .prefixed import Prefixed

__all__ = ["KVStore", "Memory", "Prefixed", "kv_store"]


def kv_store(storage: str = "memory", *, path: str | None = None) -> KVStore:
    """Create a KV backend.

    Args:
        storage: ``"memory"`` (default) or ``"disk"``.
        path: Required when ``storage="disk"``. Directory for the
            diskcache database.
    """
    if storage == "memory":
        return Memory()
    if storage == "disk":
        if path is None:
            raise ValueError("path is required when storage='disk'")
        from .disk import Disk

        return Disk(path)
    raise ValueError(f"Unknown storage: {storage!r}")
