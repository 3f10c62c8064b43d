"""Disk-backed KV store using diskcache."""

from typing import Iterable, Mapping, cast

from .base import KVStore

ONE_GB = 1024 * 1024 * 1024


class Disk(KVStore):
    """KV store backed by diskcache (SQLite + files).

    Multi-key writes and compare-and-swap run inside a diskcache
    transaction, which also serialises them across processes.
    """

    def __init__(self, directory: str, size_limit: int = ONE_GB) -> None:
        from diskcache import Cache

        self.directory = directory
        self.cache = Cache(directory, size_limit=size_limit, eviction_policy="none")

    def get(self, key: str) -> bytes | None:
        return cast(bytes | None, self.cache.get(key))

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, bytes):
            raise TypeError(f"Expected bytes, got {type(value).__name__}")
        self.cache[key] = value

    def get_many(self, *args: str) -> Mapping[str, bytes]:
        return {k: v for k in args if (v := self.get(k)) is not None}

    def set_many(self, **kwargs: bytes) -> None:
        for key, value in kwargs.items():
            if not isinstance(value, bytes):
                raise TypeError(f"Expected bytes for {key}, got {type(value).__name__}")
        with self.cache.transact():
            for key, value in kwargs.items():
                self.cache[key] = value

    def items(self) -> Iterable[tuple[str, bytes]]:
        for key in self.cache.iterkeys():
            value = self.cache.get(key)
            if value is not None:
                yield str(key), cast(bytes, value)

    def keys(self) -> Iterable[str]:
        for key in self.cache.iterkeys():
            yield str(key)

    def __contains__(self, key: str) -> bool:
        return key in self.cache

    def remove(self, key: str) -> None:
        self.cache.delete(key)

    def remove_many(self, *keys: str) -> None:
        with self.cache.transact():
            for key in keys:
                self.cache.delete(key, retry=False)

    def cas(self, key: str, value: bytes, expected: bytes | None) -> bool:
        if not isinstance(value, bytes):
            raise TypeError(f"Expected bytes, got {type(value).__name__}")
        with self.cache.transact():
            current = cast(bytes | None, self.cache.get(key))
            if current != expected:
                return False
            self.cache[key] = value
            return True

    def clear(self) -> None:
        self.cache.clear()

    def close(self) -> None:
        self.cache.close()
