"""
Per-session append log with rename-then-process flushing.

Records are appended as JSON lines to ``ledger_buffer.jsonl``. A flush
atomically renames that file to ``ledger_buffer.flushing.jsonl`` (the
snapshot), then inserts the snapshot into the LedgerStore and deletes it.
Appends that happen during the insert phase land in a fresh buffer file, so
writers never wait on the database.

The snapshot's existence is the flush-in-progress signal. If a process dies
mid-flush the snapshot stays behind; process_orphaned_flushing_file() picks
it up at the next session start. Store dedup makes re-inserting a partially
processed snapshot safe.
"""

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterable, Optional

from .ledger_store import LedgerStore
from .locking import BufferLock, lock_fd, unlock_fd
from .paths import FLUSHING_FILENAME, LedgerPaths
from .types import Record

logger = logging.getLogger(__name__)


@dataclass
class FlushResult:
    """Outcome of a flush attempt."""
    success: bool
    entries_flushed: int
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "entries_flushed": self.entries_flushed,
            "reason": self.reason,
        }


def _parse_lines(lines: Iterable[str]) -> list[Record]:
    """Parse buffer lines, skipping blank and malformed ones."""
    records = []
    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue
        try:
            records.append(Record.from_json(line))
        except ValueError as e:
            logger.debug("Skipping malformed buffer line %d: %s", lineno, e)
    return records


class SessionBuffer:
    """
    Buffered record log for sessions under one ledger home.

    Validation and precondition failures are reported through return values.
    Only unexpected storage errors during orphan recovery propagate.
    """

    def __init__(self, paths: LedgerPaths, store: LedgerStore):
        """
        Args:
            paths: Resolved ledger paths
            store: Durable store that flushes insert into
        """
        self._paths = paths
        self._store = store

    @property
    def paths(self) -> LedgerPaths:
        return self._paths

    @property
    def store(self) -> LedgerStore:
        return self._store

    def _lock(self, session_id: str) -> BufferLock:
        return BufferLock(self._paths.lock_path(session_id))

    # -------------------------------------------------------------------------
    # Append / Read
    # -------------------------------------------------------------------------

    def _write(self, session_id: str, records: list[Record]) -> None:
        """Append serialized records under the buffer lock, fsynced."""
        self._paths.session_dir(session_id).mkdir(parents=True, exist_ok=True)
        data = "".join(r.to_json() + "\n" for r in records)
        with self._lock(session_id):
            with open(self._paths.buffer_path(session_id), "a", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

    def append(self, session_id: str, record: Record) -> bool:
        """
        Append one record to the session buffer.

        Returns:
            False (with no side effect) for an empty session id, an invalid
            record, or a filesystem error; True once the line is on disk.
        """
        return self.append_many(session_id, [record]) == 1

    def append_many(self, session_id: str, records: Iterable[Record]) -> int:
        """
        Append the valid records in one lock acquisition.

        Returns:
            Number of records appended (invalid ones are skipped)
        """
        if not session_id:
            return 0
        valid = [r for r in records if isinstance(r, Record) and r.is_valid()]
        if not valid:
            return 0
        try:
            self._write(session_id, valid)
        except ValueError as e:
            logger.warning("Rejected append for session %r: %s", session_id, e)
            return 0
        except OSError as e:
            logger.warning("Failed to append to buffer for %s: %s", session_id, e)
            return 0
        return len(valid)

    def _existing(self, session_id: str, path_for) -> Optional[Path]:
        if not session_id:
            return None
        try:
            path = path_for(session_id)
        except ValueError:
            return None
        return path if path.exists() else None

    def read(self, session_id: str) -> list[Record]:
        """Buffered records in append order. Malformed lines are skipped."""
        path = self._existing(session_id, self._paths.buffer_path)
        if path is None:
            return []
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return _parse_lines(f)
        except FileNotFoundError:
            # Renamed away by a concurrent flush
            return []

    def count(self, session_id: str) -> int:
        """Number of non-blank lines in the buffer (not parsed)."""
        path = self._existing(session_id, self._paths.buffer_path)
        if path is None:
            return 0
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return sum(1 for line in f if line.strip())
        except FileNotFoundError:
            return 0

    def exists(self, session_id: str) -> bool:
        return self._existing(session_id, self._paths.buffer_path) is not None

    def clear(self, session_id: str) -> bool:
        """
        Delete the buffer file. Idempotent.

        Returns:
            True, even when there was nothing to delete; False only for an
            empty or unusable session id.
        """
        if not session_id:
            return False
        try:
            buffer_path = self._paths.buffer_path(session_id)
        except ValueError:
            return False
        if not buffer_path.parent.exists():
            return True
        with self._lock(session_id):
            buffer_path.unlink(missing_ok=True)
        return True

    def flush_in_progress(self, session_id: str) -> bool:
        """True iff a snapshot file exists for the session."""
        return self._existing(session_id, self._paths.flushing_path) is not None

    # -------------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------------

    def _claim_snapshot(self, session_id: str) -> tuple[Optional[IO[str]], Optional[FlushResult]]:
        """
        Check-then-rename under the buffer lock.

        Returns (open snapshot, None) with the snapshot flocked, or
        (None, result) when the flush should stop here.
        """
        buffer_path = self._paths.buffer_path(session_id)
        flushing_path = self._paths.flushing_path(session_id)

        with self._lock(session_id):
            if flushing_path.exists():
                return None, FlushResult(False, 0, "another flush in progress")
            try:
                size = buffer_path.stat().st_size
            except FileNotFoundError:
                return None, FlushResult(True, 0, "nothing to flush")
            if size == 0:
                buffer_path.unlink(missing_ok=True)
                return None, FlushResult(True, 0, "nothing to flush")

            os.replace(buffer_path, flushing_path)
            try:
                snapshot = open(flushing_path, encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning(
                    "Flush of %s could not open snapshot after rename, kept for recovery: %s",
                    session_id, e,
                )
                return None, FlushResult(False, 0, f"flush error: {e}")
            # Fresh file: nobody else can hold it yet
            lock_fd(snapshot.fileno())
            return snapshot, None

    def flush_sync(self, session_id: str) -> FlushResult:
        """
        Move the buffer into the store.

        The buffer lock is held only for the check-then-rename; the insert
        runs against the snapshot while new appends go to a fresh buffer.
        On any failure after the rename the snapshot is kept for recovery.

        Returns:
            FlushResult with entries_flushed = records newly inserted
        """
        if not session_id:
            return FlushResult(False, 0, "empty session_id")
        try:
            session_dir = self._paths.session_dir(session_id)
        except ValueError as e:
            return FlushResult(False, 0, f"flush error: {e}")
        if not session_dir.is_dir():
            return FlushResult(False, 0, "session directory does not exist")

        try:
            snapshot, early = self._claim_snapshot(session_id)
        except OSError as e:
            logger.warning("Flush of %s failed before rename: %s", session_id, e)
            return FlushResult(False, 0, f"flush error: {e}")
        if early is not None:
            return early

        try:
            records = _parse_lines(snapshot)
            inserted = self._store.insert_many(session_id, records)
            self._paths.flushing_path(session_id).unlink(missing_ok=True)
        except Exception as e:
            logger.warning(
                "Flush of %s failed, snapshot kept for recovery: %s", session_id, e
            )
            return FlushResult(False, 0, f"flush error: {e}")
        finally:
            unlock_fd(snapshot.fileno())
            snapshot.close()

        if inserted:
            logger.info("Flushed %d entries for session %s", inserted, session_id)
        return FlushResult(True, inserted)

    def flush_async(self, session_id: str) -> FlushResult:
        """
        Run flush_sync in a detached process and return immediately.

        The child is ``python -m ledger.cli buffer flush <session_id>``
        pointed at the same home and database.
        """
        if not session_id:
            return FlushResult(False, 0, "empty session_id")

        cmd = [
            sys.executable, "-m", "ledger.cli",
            "--home", str(self._paths.home),
            "--database", str(self._store.path),
            "buffer", "flush", session_id,
        ]

        # Redirect child stderr to ops log for crash diagnostics
        log_fd = None
        try:
            self._paths.home.mkdir(parents=True, exist_ok=True)
            try:
                log_fd = open(self._paths.ops_log_path, "a")
            except OSError:
                log_fd = None
            kwargs: dict = {
                "stdout": subprocess.DEVNULL,
                "stderr": log_fd if log_fd else subprocess.DEVNULL,
                "stdin": subprocess.DEVNULL,
            }
            if sys.platform != "win32":
                # Unix: start new session to fully detach
                kwargs["start_new_session"] = True
            else:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

            process = subprocess.Popen(cmd, **kwargs)
        except Exception as e:
            logger.warning("Failed to spawn background flush for %s: %s", session_id, e)
            return FlushResult(False, 0, f"spawn failed: {e}")
        finally:
            # Close parent's copy of the log fd (child inherited it)
            if log_fd:
                log_fd.close()

        logger.info("Spawned background flush for %s (pid %d)", session_id, process.pid)
        return FlushResult(True, 0, f"async flush started (pid: {process.pid})")

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def process_orphaned_flushing_file(self, session_id: str) -> int:
        """
        Recover a snapshot left behind by a crashed flush.

        A snapshot whose flock is held belongs to a live flush and is left
        alone. Otherwise its records are inserted (dedup makes a repeat
        harmless) and the snapshot is deleted.

        Returns:
            Number of valid records from the snapshot now in the store
            (newly inserted or already present), 0 if none

        Raises:
            sqlite3.Error: If the store fails; the snapshot is kept
        """
        if self._existing(session_id, self._paths.flushing_path) is None:
            return 0
        flushing_path = self._paths.flushing_path(session_id)

        with self._lock(session_id):
            try:
                snapshot = open(flushing_path, encoding="utf-8", errors="replace")
            except FileNotFoundError:
                return 0
            if not lock_fd(snapshot.fileno(), blocking=False):
                snapshot.close()
                logger.debug("Snapshot for %s is owned by a running flush", session_id)
                return 0

        try:
            if os.fstat(snapshot.fileno()).st_nlink == 0:
                # Finished and deleted by its flush while we waited
                return 0
            records = [r for r in _parse_lines(snapshot) if r.is_valid()]
            self._store.insert_many(session_id, records)
            flushing_path.unlink(missing_ok=True)
        finally:
            unlock_fd(snapshot.fileno())
            snapshot.close()

        logger.info("Recovered %d orphaned entries from %s", len(records), session_id)
        return len(records)

    def recover_all(self) -> dict[str, int]:
        """
        Recover orphaned snapshots in every session.

        Returns:
            {session_id: records recovered} for sessions that had a snapshot
        """
        recovered: dict[str, int] = {}
        sessions_dir = self._paths.sessions_dir
        if not sessions_dir.is_dir():
            return recovered
        for session_dir in sorted(sessions_dir.iterdir()):
            if not (session_dir / FLUSHING_FILENAME).exists():
                continue
            recovered[session_dir.name] = self.process_orphaned_flushing_file(
                session_dir.name
            )
        return recovered
