"""Tests for session listing and removal."""

import os
import time

import pytest

from ledger.session import list_sessions, remove_session, show_session
from ledger.types import Record


class TestListAndShow:

    def test_no_sessions(self, paths):
        assert list_sessions(paths) == []

    def test_newest_first(self, paths, buffer, make_record):
        buffer.append("older", make_record())
        buffer.append("newer", make_record())
        past = time.time() - 3600
        os.utime(paths.session_dir("older"), (past, past))
        assert [s.session_id for s in list_sessions(paths)] == ["newer", "older"]

    def test_show_session(self, paths, buffer, make_record):
        buffer.append_many("s1", [make_record("a"), make_record("b")])
        info = show_session(paths, "s1")
        assert info.session_id == "s1"
        assert info.has_buffer is True
        assert info.buffer_count == 2
        assert info.flush_in_progress is False
        assert "ledger_buffer.jsonl" in info.files
        assert info.total_size > 0
        assert info.to_dict()["last_modified"].endswith("Z")

    def test_show_reports_snapshot(self, paths, buffer, make_record):
        buffer.append("s1", make_record())
        paths.buffer_path("s1").rename(paths.flushing_path("s1"))
        info = show_session(paths, "s1")
        assert info.flush_in_progress is True
        assert info.has_buffer is False

    def test_show_missing(self, paths):
        assert show_session(paths, "nope") is None
        assert show_session(paths, "") is None


class TestRemove:

    def test_removes_folder_and_entries(self, paths, store, buffer, make_record):
        buffer.append("s1", make_record("buffered"))
        store.insert("s1", Record("learning", "stored"))
        store.insert("s2", Record("learning", "kept"))

        result = remove_session(paths, store, "s1")
        assert result.folder_removed is True
        assert result.entries_deleted == 1
        assert result.store_purged is True
        assert not paths.session_dir("s1").exists()
        assert store.count_by_session("s1") == 0
        assert store.count_by_session("s2") == 1

    def test_remove_nothing(self, paths, store):
        result = remove_session(paths, store, "ghost")
        assert result.anything_removed is False
        assert result.store_purged is False

    def test_remove_store_only(self, paths, store):
        store.insert("s1", Record("learning", "stored"))
        result = remove_session(paths, store, "s1")
        assert result.folder_removed is False
        assert result.entries_deleted == 1

    def test_rejects_path_like_id(self, paths, store):
        with pytest.raises(ValueError):
            remove_session(paths, store, "..")
