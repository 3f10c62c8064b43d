"""Abstract KV store interface."""

from abc import ABC, abstractmethod
from typing import Iterable, Mapping


class KVStore(ABC):
    """Key-value store operating on bytes only.

    The server keeps blobs, commits and branch heads in one of these.
    Encoding to bytes happens in the adapters that sit on top.
    """

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Bytes stored under ``key``, or None."""

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        ...

    @abstractmethod
    def get_many(self, *args: str) -> Mapping[str, bytes]:
        """Get multiple keys, returning only keys that exist."""

    @abstractmethod
    def set_many(self, **kwargs: bytes) -> None:
        ...

    @abstractmethod
    def items(self) -> Iterable[tuple[str, bytes]]:
        ...

    @abstractmethod
    def keys(self) -> Iterable[str]:
        ...

    @abstractmethod
    def __contains__(self, key: str) -> bool:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key if present."""

    @abstractmethod
    def remove_many(self, *keys: str) -> None:
        ...

    @abstractmethod
    def cas(self, key: str, value: bytes, expected: bytes | None) -> bool:
        """Atomic compare-and-swap.

        Store ``value`` only if the current value equals ``expected``;
        ``expected=None`` means the key must be absent. Returns whether
        the swap happened. Branch heads advance only through this.
        """

    @abstractmethod
    def clear(self) -> None:
        ...

    def keys_with_prefix(self, prefix: str) -> Iterable[str]:
        """Keys starting with ``prefix``."""
        return [k for k in self.keys() if k.startswith(prefix)]
