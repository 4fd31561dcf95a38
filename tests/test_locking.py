"""Tests for the buffer advisory lock."""

import multiprocessing
from pathlib import Path

import pytest

from ledger.locking import BufferLock, fcntl


def _try_lock(lock_path: str, queue):
    from ledger.locking import BufferLock
    lock = BufferLock(Path(lock_path))
    acquired = lock.acquire(blocking=False)
    if acquired:
        lock.release()
    queue.put(acquired)


class TestBufferLock:

    def test_creates_lock_file(self, tmp_path):
        path = tmp_path / "sub" / "ledger_buffer.lock"
        with BufferLock(path):
            assert path.exists()

    def test_second_holder_blocked_in_process(self, tmp_path):
        path = tmp_path / "ledger_buffer.lock"
        with BufferLock(path):
            assert BufferLock(path).acquire(blocking=False) is False
        other = BufferLock(path)
        assert other.acquire(blocking=False) is True
        other.release()

    def test_release_is_idempotent(self, tmp_path):
        lock = BufferLock(tmp_path / "ledger_buffer.lock")
        lock.acquire()
        lock.release()
        lock.release()

    @pytest.mark.skipif(fcntl is None, reason="flock not available")
    def test_excludes_other_processes(self, tmp_path):
        path = tmp_path / "ledger_buffer.lock"
        ctx = multiprocessing.get_context("spawn")
        queue = ctx.Queue()

        with BufferLock(path):
            p = ctx.Process(target=_try_lock, args=(str(path), queue))
            p.start()
            p.join(timeout=30)
            assert queue.get(timeout=5) is False

        p = ctx.Process(target=_try_lock, args=(str(path), queue))
        p.start()
        p.join(timeout=30)
        assert queue.get(timeout=5) is True
