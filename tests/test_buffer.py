"""Tests for the session buffer and its flush/recovery protocol."""

import sqlite3
import subprocess
import sys
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from ledger.buffer import FlushResult
from ledger.locking import fcntl, lock_fd, unlock_fd
from ledger.types import Record


def _write_snapshot(paths, session_id, lines):
    path = paths.flushing_path(session_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in lines))
    return path


class TestAppendAndRead:

    def test_round_trip(self, buffer, make_record):
        record = make_record(metadata={"k": "v"}, keywords=("a",))
        assert buffer.append("s1", record) is True
        assert buffer.read("s1") == [record]

    def test_creates_session_dir_lazily(self, buffer, paths, make_record):
        assert not paths.session_dir("s1").exists()
        buffer.append("s1", make_record())
        assert paths.buffer_path("s1").exists()

    def test_invalid_record_has_no_effect(self, buffer, paths, make_record):
        buffer.append("s1", make_record("kept"))
        assert buffer.append("s1", Record("bogus", "x")) is False
        assert buffer.append("s1", Record("learning", "")) is False
        assert [r.content for r in buffer.read("s1")] == ["kept"]

    def test_unserializable_metadata_is_rejected(self, buffer, make_record):
        assert buffer.append("s1", make_record(metadata={"when": datetime.now()})) is False
        assert buffer.append_many("s1", [make_record("ok"), make_record(metadata={1, 2})]) == 1
        assert [r.content for r in buffer.read("s1")] == ["ok"]

    def test_invalid_record_does_not_create_dir(self, buffer, paths):
        assert buffer.append("s1", Record("bogus", "x")) is False
        assert not paths.session_dir("s1").exists()

    def test_empty_session_id(self, buffer, make_record):
        assert buffer.append("", make_record()) is False
        assert buffer.append_many("", [make_record()]) == 0
        assert buffer.read("") == []
        assert buffer.count("") == 0
        assert buffer.exists("") is False

    def test_path_like_session_id_rejected(self, buffer, make_record):
        assert buffer.append("../escape", make_record()) is False
        assert buffer.read("../escape") == []

    def test_append_many_skips_invalid(self, buffer, make_record):
        records = [make_record("a"), Record("bogus", "b"), make_record("c")]
        assert buffer.append_many("s1", records) == 2
        assert [r.content for r in buffer.read("s1")] == ["a", "c"]

    def test_read_preserves_order(self, buffer, make_record):
        for i in range(5):
            buffer.append("s1", make_record(f"r{i}"))
        assert [r.content for r in buffer.read("s1")] == [f"r{i}" for i in range(5)]

    def test_malformed_and_blank_lines_skipped(self, buffer, paths, make_record):
        buffer.append("s1", make_record("good"))
        with open(paths.buffer_path("s1"), "a") as f:
            f.write("\n{not json\n   \n[1,2]\n")
        buffer.append("s1", make_record("also good"))
        assert [r.content for r in buffer.read("s1")] == ["good", "also good"]

    def test_count_counts_non_blank_lines(self, buffer, paths, make_record):
        buffer.append("s1", make_record("a"))
        with open(paths.buffer_path("s1"), "a") as f:
            f.write("\n{garbage\n")
        assert buffer.count("s1") == 2

    def test_missing_buffer(self, buffer):
        assert buffer.read("nobody") == []
        assert buffer.count("nobody") == 0
        assert buffer.exists("nobody") is False

    def test_append_os_error_returns_false(self, buffer, make_record):
        with patch("ledger.buffer.open", create=True, side_effect=OSError("disk full")):
            assert buffer.append("s1", make_record()) is False


class TestClear:

    def test_clear_is_idempotent(self, buffer, make_record):
        buffer.append("s1", make_record())
        assert buffer.clear("s1") is True
        assert buffer.clear("s1") is True
        assert buffer.exists("s1") is False

    def test_clear_unknown_session(self, buffer):
        assert buffer.clear("never-seen") is True

    def test_clear_empty_session_id(self, buffer):
        assert buffer.clear("") is False


class TestFlushSync:
    """The rename-then-process flush."""

    def test_empty_session_id(self, buffer):
        assert buffer.flush_sync("") == FlushResult(False, 0, "empty session_id")

    def test_missing_session_dir(self, buffer):
        assert buffer.flush_sync("nope") == FlushResult(
            False, 0, "session directory does not exist"
        )

    def test_nothing_to_flush(self, buffer, paths):
        paths.session_dir("s1").mkdir(parents=True)
        result = buffer.flush_sync("s1")
        assert result == FlushResult(True, 0, "nothing to flush")
        assert not paths.flushing_path("s1").exists()

    def test_empty_buffer_file_is_nothing_to_flush(self, buffer, paths):
        paths.session_dir("s1").mkdir(parents=True)
        paths.buffer_path("s1").touch()
        result = buffer.flush_sync("s1")
        assert result.reason == "nothing to flush"
        assert not paths.flushing_path("s1").exists()
        assert not paths.buffer_path("s1").exists()

    def test_flush_moves_records_to_store(self, buffer, store, paths, make_record):
        buffer.append_many("s1", [make_record("a"), make_record("b")])
        result = buffer.flush_sync("s1")
        assert result == FlushResult(True, 2)
        assert store.count_by_session("s1") == 2
        assert not paths.buffer_path("s1").exists()
        assert not paths.flushing_path("s1").exists()

    def test_entries_flushed_counts_new_inserts(self, buffer, store, make_record):
        store.insert("s1", make_record("already stored"))
        buffer.append_many("s1", [make_record("already stored"), make_record("fresh")])
        assert buffer.flush_sync("s1").entries_flushed == 1

    def test_flush_isolation(self, buffer, make_record):
        """A record appended after a flush is the only one left buffered."""
        buffer.append("s1", make_record("first"))
        assert buffer.flush_sync("s1").entries_flushed == 1
        buffer.append("s1", make_record("second"))
        assert buffer.count("s1") == 1
        assert [r.content for r in buffer.read("s1")] == ["second"]

    def test_append_during_insert_goes_to_fresh_buffer(self, buffer, store, make_record):
        buffer.append("s1", make_record("before"))
        original = store.insert_many

        def insert_and_append(session_id, records):
            # Runs after the rename: the buffer lock is free again
            assert buffer.append("s1", make_record("during")) is True
            return original(session_id, records)

        with patch.object(store, "insert_many", side_effect=insert_and_append):
            result = buffer.flush_sync("s1")

        assert result.entries_flushed == 1
        assert [r.content for r in buffer.read("s1")] == ["during"]
        assert [r.content for r in store.query_by_session("s1")] == ["before"]

    def test_mutual_exclusion(self, buffer, paths, make_record):
        buffer.append("s1", make_record("pending"))
        snapshot = _write_snapshot(paths, "s1", [make_record("in flight").to_json()])
        before = snapshot.read_text()

        result = buffer.flush_sync("s1")
        assert result == FlushResult(False, 0, "another flush in progress")
        assert snapshot.read_text() == before
        assert buffer.count("s1") == 1

    def test_flush_in_progress(self, buffer, paths):
        assert buffer.flush_in_progress("s1") is False
        _write_snapshot(paths, "s1", [])
        assert buffer.flush_in_progress("s1") is True

    def test_store_failure_keeps_snapshot(self, buffer, store, paths, make_record):
        buffer.append("s1", make_record("precious"))
        with patch.object(store, "insert_many", side_effect=sqlite3.OperationalError("disk full")):
            result = buffer.flush_sync("s1")

        assert result.success is False
        assert result.reason == "flush error: disk full"
        assert paths.flushing_path("s1").exists()
        assert buffer.flush_in_progress("s1")

        # Recovery completes the interrupted flush
        assert buffer.process_orphaned_flushing_file("s1") == 1
        assert store.count_by_session("s1") == 1
        assert not paths.flushing_path("s1").exists()

    def test_open_failure_after_rename_keeps_snapshot(self, buffer, store, paths, make_record, caplog):
        buffer.append("s1", make_record("renamed"))
        with patch("ledger.buffer.open", create=True, side_effect=OSError("denied")):
            result = buffer.flush_sync("s1")

        assert result == FlushResult(False, 0, "flush error: denied")
        assert "after rename" in caplog.text
        assert "before rename" not in caplog.text
        assert paths.flushing_path("s1").exists()
        assert not paths.buffer_path("s1").exists()
        assert buffer.process_orphaned_flushing_file("s1") == 1

    def test_malformed_snapshot_lines_skipped(self, buffer, store, paths, make_record):
        buffer.append("s1", make_record("good"))
        with open(paths.buffer_path("s1"), "a") as f:
            f.write("not json\n")
        assert buffer.flush_sync("s1").entries_flushed == 1


class TestOrphanRecovery:

    def test_recovers_orphaned_snapshot(self, buffer, store, paths):
        records = [Record("learning", f"orphan {i}") for i in range(3)]
        _write_snapshot(paths, "s1", [r.to_json() for r in records])

        assert buffer.process_orphaned_flushing_file("s1") == 3
        assert not paths.flushing_path("s1").exists()
        assert {r.content for r in store.query_by_session("s1")} == {
            "orphan 0", "orphan 1", "orphan 2"
        }

    def test_recovery_is_idempotent_with_store(self, buffer, store, paths):
        record = Record("learning", "already inserted")
        store.insert("s1", record)
        _write_snapshot(paths, "s1", [record.to_json()])
        assert buffer.process_orphaned_flushing_file("s1") == 1
        assert store.count_by_session("s1") == 1

    def test_invalid_records_are_not_counted(self, buffer, store, paths):
        _write_snapshot(paths, "s1", [
            Record("bogus", "never stored").to_json(),
            Record("learning", "stored").to_json(),
        ])
        assert buffer.process_orphaned_flushing_file("s1") == 1
        assert [r.content for r in store.query_by_session("s1")] == ["stored"]
        assert not paths.flushing_path("s1").exists()

    def test_no_snapshot(self, buffer):
        assert buffer.process_orphaned_flushing_file("s1") == 0
        assert buffer.process_orphaned_flushing_file("") == 0

    def test_skips_malformed_lines(self, buffer, paths):
        _write_snapshot(paths, "s1", [Record("learning", "ok").to_json(), "garbage", ""])
        assert buffer.process_orphaned_flushing_file("s1") == 1

    @pytest.mark.skipif(fcntl is None, reason="flock not available")
    def test_snapshot_owned_by_live_flush_is_left_alone(self, buffer, store, paths):
        snapshot = _write_snapshot(paths, "s1", [Record("learning", "busy").to_json()])
        with open(snapshot) as held:
            assert lock_fd(held.fileno())
            try:
                assert buffer.process_orphaned_flushing_file("s1") == 0
                assert snapshot.exists()
            finally:
                unlock_fd(held.fileno())
        assert store.count() == 0

    def test_store_failure_propagates_and_keeps_snapshot(self, buffer, store, paths):
        _write_snapshot(paths, "s1", [Record("learning", "x").to_json()])
        with patch.object(store, "insert_many", side_effect=sqlite3.DatabaseError("corrupt")):
            with pytest.raises(sqlite3.DatabaseError):
                buffer.process_orphaned_flushing_file("s1")
        assert paths.flushing_path("s1").exists()

    def test_recover_all(self, buffer, store, paths, make_record):
        _write_snapshot(paths, "a", [Record("learning", "from a").to_json()])
        _write_snapshot(paths, "b", [Record("learning", "from b").to_json(),
                                     Record("decision", "b2").to_json()])
        buffer.append("c", make_record())
        assert buffer.recover_all() == {"a": 1, "b": 2}
        assert store.count() == 3

    def test_recover_all_without_sessions(self, buffer):
        assert buffer.recover_all() == {}


class TestFlushAsync:

    def test_empty_session_id(self, buffer):
        assert buffer.flush_async("") == FlushResult(False, 0, "empty session_id")

    def test_spawns_detached_flush(self, buffer, paths, store):
        fake = MagicMock(pid=4242)
        with patch("ledger.buffer.subprocess.Popen", return_value=fake) as popen:
            result = buffer.flush_async("s1")

        assert result == FlushResult(True, 0, "async flush started (pid: 4242)")
        cmd = popen.call_args.args[0]
        assert cmd[:3] == [sys.executable, "-m", "ledger.cli"]
        assert cmd[cmd.index("--home") + 1] == str(paths.home)
        assert cmd[cmd.index("--database") + 1] == str(store.path)
        assert cmd[-3:] == ["buffer", "flush", "s1"]
        kwargs = popen.call_args.kwargs
        assert kwargs["stdin"] is subprocess.DEVNULL
        if sys.platform != "win32":
            assert kwargs["start_new_session"] is True

    def test_spawn_failure(self, buffer):
        with patch("ledger.buffer.subprocess.Popen", side_effect=OSError("no exec")):
            result = buffer.flush_async("s1")
        assert result == FlushResult(False, 0, "spawn failed: no exec")

    def test_background_flush_runs(self, buffer, store, paths, make_record):
        """End to end: the detached process flushes the buffer."""
        import time
        buffer.append("s1", make_record("async"))
        result = buffer.flush_async("s1")
        assert result.success

        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            if store.count_by_session("s1") == 1 and not buffer.flush_in_progress("s1"):
                break
            time.sleep(0.1)
        assert store.count_by_session("s1") == 1
        assert buffer.count("s1") == 0
