"""
Filesystem layout for a ledger home.

A LedgerPaths instance is built once per process and passed to every
component, so tests can point each one at its own temporary directory.

Layout::

    <home>/
      config.json
      ledger-ops.log
      data/ledger.db
      sessions/<session_id>/
        ledger_buffer.jsonl            # active append log
        ledger_buffer.flushing.jsonl   # snapshot being flushed (or orphaned)
        ledger_buffer.lock             # advisory lock
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_HOME = Path.home() / ".ledger"

CONFIG_FILENAME = "config.json"
DATABASE_FILENAME = "ledger.db"
BUFFER_FILENAME = "ledger_buffer.jsonl"
FLUSHING_FILENAME = "ledger_buffer.flushing.jsonl"
LOCK_FILENAME = "ledger_buffer.lock"


@dataclass(frozen=True)
class LedgerPaths:
    """Resolved paths for one ledger home."""
    home: Path
    database_override: Optional[Path] = None

    @classmethod
    def from_env(cls, home: Optional[str | Path] = None) -> "LedgerPaths":
        """
        Resolve paths from an explicit home, or the environment.

        Checks:
        1. ``home`` argument
        2. LEDGER_HOME environment variable
        3. ~/.ledger (default location)

        LEDGER_DATABASE_PATH, if set, overrides only the database location.
        """
        if home is None:
            env_home = os.environ.get("LEDGER_HOME")
            home = Path(env_home) if env_home else DEFAULT_HOME
        db_env = os.environ.get("LEDGER_DATABASE_PATH")
        return cls(
            home=Path(home).expanduser(),
            database_override=Path(db_env).expanduser() if db_env else None,
        )

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def database_path(self) -> Path:
        if self.database_override is not None:
            return self.database_override
        return self.data_dir / DATABASE_FILENAME

    @property
    def config_dir(self) -> Path:
        return self.home

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def ops_log_path(self) -> Path:
        return self.home / "ledger-ops.log"

    @property
    def error_log_path(self) -> Path:
        return self.home / "ledger-errors.log"

    def session_dir(self, session_id: str) -> Path:
        """Directory holding one session's buffer files.

        Session ids are opaque, but must not escape the sessions directory.
        """
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / session_id

    def buffer_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / BUFFER_FILENAME

    def flushing_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / FLUSHING_FILENAME

    def lock_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / LOCK_FILENAME
