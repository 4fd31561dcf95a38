"""
Core API for the session ledger.

Ledger wires paths, configuration, the session buffer and the durable store
together for one ledger home. Lifecycle hooks call it at fixed moments:
``start_session`` (orphan recovery), ``append`` while working, ``maybe_flush``
or ``flush`` at checkpoints, ``restoration_context`` after compaction.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .buffer import FlushResult, SessionBuffer
from .config import LedgerConfig, load_or_create_config, resolve_database_path
from .ledger_store import LedgerStore, RestorationResult
from .paths import LedgerPaths
from .types import Record, parse_utc_timestamp

logger = logging.getLogger(__name__)


class Ledger:
    """
    Buffered, deduplicated, searchable record log for work sessions.

    Example:
        with Ledger() as ledger:
            ledger.start_session("abc")
            ledger.append("abc", Record("decision", "Use WAL mode", "high"))
            ledger.flush("abc")
            context = ledger.restoration_context("abc")
    """

    def __init__(
        self,
        home: Optional[str | Path] = None,
        *,
        paths: Optional[LedgerPaths] = None,
        config: Optional[LedgerConfig] = None,
        store: Optional[LedgerStore] = None,
    ) -> None:
        """
        Open a ledger home, creating it on first use.

        Args:
            home: Ledger home directory. Uses LEDGER_HOME or ~/.ledger if not
                specified. Ignored when ``paths`` is given.
            paths: Pre-resolved paths (skips environment lookup).
            config: Pre-loaded config (skips reading config.json).
            store: Injected store (skips opening the database).
        """
        self._paths = paths if paths is not None else LedgerPaths.from_env(home)

        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(self._paths.config_path)

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._paths.ops_log_path)

        # --- Storage ---
        if store is not None:
            self._store = store
            self._owns_store = False
        else:
            if self._paths.database_override is not None:
                db_path = self._paths.database_path
            else:
                db_path = resolve_database_path(self._config, self._paths.database_path)
            self._store = LedgerStore(db_path)
            self._owns_store = True

        self._buffer = SessionBuffer(self._paths, self._store)

    @property
    def paths(self) -> LedgerPaths:
        return self._paths

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def buffer(self) -> SessionBuffer:
        return self._buffer

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def start_session(self, session_id: str) -> int:
        """
        Prepare a session: recover any snapshot a crashed flush left behind.

        Returns:
            Number of records recovered
        """
        if not session_id:
            return 0
        return self._buffer.process_orphaned_flushing_file(session_id)

    def append(self, session_id: str, record: Record) -> bool:
        return self._buffer.append(session_id, record)

    def append_many(self, session_id: str, records: Iterable[Record]) -> int:
        return self._buffer.append_many(session_id, records)

    def flush(self, session_id: str) -> FlushResult:
        """Flush the session buffer into the store, synchronously."""
        return self._buffer.flush_sync(session_id)

    def flush_async(self, session_id: str) -> FlushResult:
        """Flush in a detached background process."""
        return self._buffer.flush_async(session_id)

    def _buffer_age_seconds(self, session_id: str) -> Optional[float]:
        """Age of the oldest buffered record, None when the buffer is empty."""
        records = self._buffer.read(session_id)
        if not records:
            return None
        try:
            oldest = parse_utc_timestamp(records[0].created_at)
        except ValueError:
            return None
        return (datetime.now(timezone.utc) - oldest).total_seconds()

    def should_flush(self, session_id: str) -> bool:
        """
        True when the buffer has reached ``buffer.flush_threshold`` records,
        or its oldest record is older than ``buffer.flush_interval_seconds``.
        """
        count = self._buffer.count(session_id)
        if count == 0:
            return False
        if count >= self._config.buffer.flush_threshold:
            return True
        age = self._buffer_age_seconds(session_id)
        return age is not None and age >= self._config.buffer.flush_interval_seconds

    def maybe_flush(self, session_id: str, background: bool = True) -> Optional[FlushResult]:
        """
        Flush if should_flush() says so.

        Returns:
            The FlushResult, or None when no flush was needed
        """
        if not session_id or not self.should_flush(session_id):
            return None
        if background:
            return self._buffer.flush_async(session_id)
        return self._buffer.flush_sync(session_id)

    def restoration_context(self, session_id: str) -> RestorationResult:
        """Tiered records for context restoration, sized by configured limits."""
        restoration = self._config.restoration
        return self._store.query_for_restoration(
            session_id,
            tier1_decision_limit=restoration.tier1_limits.high_importance_decisions,
            tier2_learnings_limit=restoration.tier2_limits.learnings,
            tier2_file_edits_limit=restoration.tier2_limits.file_edits,
            tier2_decisions_limit=restoration.tier2_limits.medium_importance_decisions,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the store (if owned) and detach the ops log."""
        if self._owns_store and self._store is not None:
            self._store.close()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
