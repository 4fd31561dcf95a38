"""
Session ledger: buffered, deduplicated, full-text-searchable record log.

Quick start:
    from ledger import Ledger, Record

    with Ledger() as ledger:
        ledger.append("session-1", Record("decision", "Use WAL mode", "high"))
        ledger.flush("session-1")
        results = ledger.store.search("WAL")
"""

from .api import Ledger
from .buffer import FlushResult, SessionBuffer
from .config import ConfigError, LedgerConfig
from .ledger_store import LedgerStore, RestorationResult, StoredRecord
from .paths import LedgerPaths
from .types import ENTRY_TYPES, IMPORTANCE_LEVELS, Record

__version__ = "0.1.0"

__all__ = [
    "Ledger",
    "Record",
    "StoredRecord",
    "SessionBuffer",
    "FlushResult",
    "LedgerStore",
    "RestorationResult",
    "LedgerConfig",
    "ConfigError",
    "LedgerPaths",
    "ENTRY_TYPES",
    "IMPORTANCE_LEVELS",
]
