"""
Short-lived key/value storage for verification codes and rate-limit counters.

Handlers depend on the EphemeralStore interface only, so the in-process
implementation can be swapped for a shared backend (one per deployment with
several instances) without touching call sites.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class EphemeralStore(ABC):
    """get/set/delete/sweep over values that carry their own expiry (epoch seconds)."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the live value for `key`, or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, expires_at: float) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove `key`; True if something was removed."""

    @abstractmethod
    def sweep(self) -> int:
        """Purge expired entries; returns how many were removed."""

    @abstractmethod
    def lock(self, key: str):
        """Context manager serialising read-modify-write sequences on one key."""


class InMemoryStore(EphemeralStore):
    """
    Process-local store. Best effort: not durable, not shared between workers.
    Expiry is re-checked on every read, so sweep() only bounds memory.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}
        self._data_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[Any]:
        with self._data_lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, expires_at: float) -> None:
        with self._data_lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._data_lock:
            return self._data.pop(key, None) is not None

    def sweep(self) -> int:
        now = self._clock()
        with self._data_lock:
            expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        with self._key_locks_guard:
            for key in [k for k, lock in self._key_locks.items() if k not in self._data and not lock.locked()]:
                del self._key_locks[key]
        return len(expired)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._key_locks_guard:
            key_lock = self._key_locks.setdefault(key, threading.Lock())
        with key_lock:
            yield

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._data)
