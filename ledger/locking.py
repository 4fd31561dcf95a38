"""
Cross-process advisory locks for session buffers.

BufferLock serializes the short critical sections of the buffer (append,
clear, and the check-then-rename that starts a flush) across every process
touching the same session. It is never held during database inserts.

While a flush inserts, it holds ``lock_fd`` on the snapshot file itself, so
orphan recovery can tell a live flush (lock busy) from a crashed one (lock
free, the OS dropped it with the process).
"""

import os
import threading
from pathlib import Path

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows
    fcntl = None  # type: ignore[assignment]


def lock_fd(fd: int, blocking: bool = True) -> bool:
    """Exclusive flock on an open fd. Returns False only when non-blocking and busy."""
    if fcntl is None:
        return True
    flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
    try:
        fcntl.flock(fd, flags)
    except BlockingIOError:
        return False
    return True


def unlock_fd(fd: int) -> None:
    if fcntl is not None:
        fcntl.flock(fd, fcntl.LOCK_UN)


# In-process guard per lock path. Threads queue here, so each process holds
# at most one flock per lock file at a time.
_THREAD_LOCKS: dict[str, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path)
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


class BufferLock:
    """
    Exclusive flock on a lock file, usable as a context manager.

    Not reentrant: a thread holding the lock must not acquire it again.

    Example:
        with BufferLock(paths.lock_path(session_id)):
            ...
    """

    def __init__(self, lock_path: Path):
        self._path = lock_path
        self._thread_lock = _thread_lock_for(lock_path)
        self._fd: int | None = None

    def acquire(self, blocking: bool = True) -> bool:
        """Acquire the lock. Returns False only when non-blocking and busy."""
        if not self._thread_lock.acquire(blocking):
            return False
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self._path), os.O_CREAT | os.O_RDWR, 0o600)
        except BaseException:
            self._thread_lock.release()
            raise
        try:
            acquired = lock_fd(fd, blocking)
        except BaseException:
            os.close(fd)
            self._thread_lock.release()
            raise
        if not acquired:
            os.close(fd)
            self._thread_lock.release()
            return False
        self._fd = fd
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            unlock_fd(self._fd)
        finally:
            os.close(self._fd)
            self._fd = None
            self._thread_lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
