"""
Shared pytest fixtures for ledger tests.

Every fixture builds on its own tmp_path home, so tests never touch
~/.ledger or each other.
"""

import logging

import pytest

from ledger.buffer import SessionBuffer
from ledger.ledger_store import LedgerStore
from ledger.paths import LedgerPaths
from ledger.types import Record


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep environment overrides from leaking into tests."""
    monkeypatch.delenv("LEDGER_HOME", raising=False)
    monkeypatch.delenv("LEDGER_DATABASE_PATH", raising=False)
    monkeypatch.delenv("LEDGER_VERBOSE", raising=False)


@pytest.fixture(autouse=True)
def _reset_ledger_logger():
    """Drop handlers (ops logs) that a test left attached to the ledger logger."""
    yield
    ledger_logger = logging.getLogger("ledger")
    for handler in list(ledger_logger.handlers):
        ledger_logger.removeHandler(handler)
        handler.close()
    ledger_logger.setLevel(logging.NOTSET)


@pytest.fixture
def paths(tmp_path):
    return LedgerPaths(home=tmp_path / "home")


@pytest.fixture
def store(paths):
    s = LedgerStore(paths.database_path)
    yield s
    s.close()


@pytest.fixture
def buffer(paths, store):
    return SessionBuffer(paths, store)


@pytest.fixture
def make_record():
    """Factory for valid records with overridable fields."""
    def _make(content="Use WAL mode for SQLite", entry_type="decision", **kwargs):
        return Record(entry_type=entry_type, content=content, **kwargs)
    return _make
