"""
Per-key mutual exclusion for in-process serialization.

The subscription synchronizer holds one lock per user (and per provider
subscription id) so events for the same user apply one at a time while
different users proceed in parallel. Locks are reference counted and
dropped from the registry once nobody holds or waits on them.
"""

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, Optional


class LockTimeout(Exception):
    """A keyed lock could not be acquired in time."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Timed out acquiring lock {key!r}")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = Lock()
        self.refs = 0


class KeyedLockRegistry:
    """
    Registry of per-key locks.

    Usage:
        locks = KeyedLockRegistry()
        with locks.hold("user:123"):
            ...
    """

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = Lock()

    def _checkout(self, key: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._registry_lock:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for key for the duration of the block."""
        entry = self._checkout(key)
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise LockTimeout(key)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)
