"""Per-key locks: one thread lock per key plus an advisory file lock per key."""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator
import threading

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows has no fcntl
    fcntl = None


class KeyedLocks:
    """Hands out one :class:`threading.Lock` per key while any thread holds or awaits it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``path`` for the duration of the block.

    Without ``fcntl`` the lock only exists in-process through :class:`KeyedLocks`.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+b") as handle:
        if fcntl is not None:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class StoreLocks:
    """Serializes work on one key across threads and across processes.

    Thread locks come first so only one thread per process contends for the
    file lock.
    """

    def __init__(self, lock_dir: Path) -> None:
        self._lock_dir = lock_dir
        self._threads = KeyedLocks()

    def lock_path(self, key: str) -> Path:
        safe = key.replace("/", "__")
        return self._lock_dir / f"{safe}.lock"

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._threads.hold(key):
            with file_lock(self.lock_path(key)):
                yield


__all__ = ["KeyedLocks", "StoreLocks", "file_lock"]
