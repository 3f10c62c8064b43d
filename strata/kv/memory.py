"""In-memory KV store."""

import threading
from typing import Iterable, Mapping

from .base import KVStore


def _check(key: str, value: object) -> None:
    if not isinstance(value, bytes):
        raise TypeError(f"Expected bytes for {key}, got {type(value).__name__}")


class Memory(KVStore):
    """A dict-backed KV store, safe to share between threads."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        _check(key, value)
        with self._lock:
            self.data[key] = value

    def get_many(self, *args: str) -> Mapping[str, bytes]:
        return {key: val for key in args if (val := self.data.get(key)) is not None}

    def set_many(self, **kwargs: bytes) -> None:
        for key, value in kwargs.items():
            _check(key, value)
        with self._lock:
            self.data.update(kwargs)

    def items(self) -> Iterable[tuple[str, bytes]]:
        with self._lock:
            return list(self.data.items())

    def keys(self) -> Iterable[str]:
        with self._lock:
            return list(self.data)

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def remove(self, key: str) -> None:
        with self._lock:
            self.data.pop(key, None)

    def remove_many(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self.data.pop(key, None)

    def cas(self, key: str, value: bytes, expected: bytes | None) -> bool:
        _check(key, value)
        with self._lock:
            if self.data.get(key) != expected:
                return False
            self.data[key] = value
            return True

    def clear(self) -> None:
        with self._lock:
            self.data.clear()
