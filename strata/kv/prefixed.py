"""Prefixed: key-prefixed view over another KV store."""

from __future__ import annotations

from typing import Iterable, Mapping

from .base import KVStore


class Prefixed(KVStore):
    """A namespaced view over a KVStore.

    Keys are stored as ``prefix/key`` in the wrapped store. Nesting
    another Prefixed view joins the prefixes, so one shared backend can
    host many repositories without their keys colliding.

    Args:
        store: The KVStore to wrap.
        prefix: Namespace name (must be non-empty and contain no ``/``).
    """

    def __init__(self, store: KVStore, prefix: str) -> None:
        if not prefix or "/" in prefix:
            raise ValueError(f"Invalid prefix: {prefix!r}")
        if isinstance(store, Prefixed):
            self.prefix = f"{store.prefix}/{prefix}"
            self._store = store.base_store
        else:
            self.prefix = prefix
            self._store = store

    @property
    def base_store(self) -> KVStore:
        return self._store

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}"

    def _strip(self, key: str) -> str | None:
        head = f"{self.prefix}/"
        if key.startswith(head):
            return key[len(head):]
        return None

    # -- Read operations --

    def get(self, key: str) -> bytes | None:
        return self._store.get(self._key(key))

    def get_many(self, *args: str) -> Mapping[str, bytes]:
        mapping = {self._key(k): k for k in args}
        found = self._store.get_many(*mapping)
        return {mapping[pk]: v for pk, v in found.items()}

    def items(self) -> Iterable[tuple[str, bytes]]:
        for key, value in self._store.items():
            if (local := self._strip(key)) is not None:
                yield local, value

    def keys(self) -> Iterable[str]:
        for key in self._store.keys():
            if (local := self._strip(key)) is not None:
                yield local

    def __contains__(self, key: str) -> bool:
        return self._key(key) in self._store

    # -- Write operations --

    def set(self, key: str, value: bytes) -> None:
        self._store.set(self._key(key), value)

    def set_many(self, **kwargs: bytes) -> None:
        self._store.set_many(**{self._key(k): v for k, v in kwargs.items()})

    def remove(self, key: str) -> None:
        self._store.remove(self._key(key))

    def remove_many(self, *keys: str) -> None:
        self._store.remove_many(*(self._key(k) for k in keys))

    def cas(self, key: str, value: bytes, expected: bytes | None) -> bool:
        return self._store.cas(self._key(key), value, expected)

    def clear(self) -> None:
        self._store.remove_many(*list(self.keys_as_stored()))

    def keys_as_stored(self) -> Iterable[str]:
        """Full keys in the wrapped store that belong to this view."""
        head = f"{self.prefix}/"
        return [k for k in self._store.keys() if k.startswith(head)]
