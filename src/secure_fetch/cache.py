"""
Session-scoped store for the validated public key PEM.

The lifecycle manager reads one named entry at startup, writes it after a
successful remote fetch, and removes it when the cached PEM fails
validation. Any store with get/set/remove for strings fits the KeyCache
protocol (e.g. a dict in process memory, a per-user session backend).
"""

from typing import Protocol, runtime_checkable

from secure_fetch._logging import get_logger

__all__ = [
    "FailSoftCache",
    "KeyCache",
    "MemoryKeyCache",
]

_logger = get_logger(__name__)


@runtime_checkable
class KeyCache(Protocol):
    """String key-value store with session lifetime."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryKeyCache:
    """In-process store. Lives as long as the object (one process/session)."""

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def set(self, key: str, value: str) -> None:
        self._entries[key] = value

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class FailSoftCache:
    """Wrap a KeyCache so storage failures degrade to 'no cache'.

    Any exception raised by the backing store is logged at warning level
    and swallowed; reads then behave as a miss.
    """

    __slots__ = ("_store", "_storage_key")

    def __init__(self, store: KeyCache | None, storage_key: str) -> None:
        self._store = store
        self._storage_key = storage_key

    def read(self) -> str | None:
        if self._store is None:
            return None
        try:
            return self._store.get(self._storage_key) or None
        except Exception as e:  # noqa: BLE001 - any backend failure is a miss
            _logger.warning("Cache read failed: %s", e)
            return None

    def write(self, pem: str) -> None:
        if self._store is None:
            return
        try:
            self._store.set(self._storage_key, pem)
            _logger.debug("Public key cached: key=%s", self._storage_key)
        except Exception as e:  # noqa: BLE001
            _logger.warning("Cache write failed: %s", e)

    def clear(self) -> None:
        if self._store is None:
            return
        try:
            self._store.remove(self._storage_key)
            _logger.debug("Cache cleared: key=%s", self._storage_key)
        except Exception as e:  # noqa: BLE001
            _logger.warning("Cache clear failed: %s", e)
