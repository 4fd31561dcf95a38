"""
Session directory management: listing, inspection and removal.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .ledger_store import LedgerStore
from .paths import BUFFER_FILENAME, FLUSHING_FILENAME, LedgerPaths

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    """On-disk state of one session directory."""
    session_id: str
    path: Path
    files: list[str] = field(default_factory=list)
    total_size: int = 0
    last_modified: Optional[datetime] = None
    has_buffer: bool = False
    buffer_count: int = 0
    flush_in_progress: bool = False

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "path": str(self.path),
            "files": list(self.files),
            "total_size": self.total_size,
            "last_modified": (
                self.last_modified.strftime("%Y-%m-%dT%H:%M:%SZ")
                if self.last_modified else None
            ),
            "has_buffer": self.has_buffer,
            "buffer_count": self.buffer_count,
            "flush_in_progress": self.flush_in_progress,
        }


@dataclass
class RemoveResult:
    session_id: str
    folder_removed: bool
    store_purged: bool
    entries_deleted: int = 0

    @property
    def anything_removed(self) -> bool:
        return self.folder_removed or self.entries_deleted > 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "folder_removed": self.folder_removed,
            "store_purged": self.store_purged,
            "entries_deleted": self.entries_deleted,
        }


def _session_info(session_id: str, session_path: Path) -> SessionInfo:
    files = []
    total_size = 0
    buffer_count = 0
    for child in sorted(session_path.iterdir()):
        if not child.is_file():
            continue
        files.append(child.name)
        total_size += child.stat().st_size
        if child.name == BUFFER_FILENAME:
            with open(child, encoding="utf-8", errors="replace") as f:
                buffer_count = sum(1 for line in f if line.strip())

    last_modified = datetime.fromtimestamp(session_path.stat().st_mtime, tz=timezone.utc)
    return SessionInfo(
        session_id=session_id,
        path=session_path,
        files=files,
        total_size=total_size,
        last_modified=last_modified,
        has_buffer=BUFFER_FILENAME in files,
        buffer_count=buffer_count,
        flush_in_progress=FLUSHING_FILENAME in files,
    )


def list_sessions(paths: LedgerPaths) -> list[SessionInfo]:
    """Session directories, most recently modified first."""
    sessions_dir = paths.sessions_dir
    if not sessions_dir.is_dir():
        return []
    sessions = [
        _session_info(child.name, child)
        for child in sessions_dir.iterdir()
        if child.is_dir()
    ]
    sessions.sort(key=lambda s: s.last_modified, reverse=True)
    return sessions


def show_session(paths: LedgerPaths, session_id: str) -> Optional[SessionInfo]:
    """Info for one session, or None if it has no directory."""
    try:
        session_path = paths.session_dir(session_id)
    except ValueError:
        return None
    if not session_path.is_dir():
        return None
    return _session_info(session_id, session_path)


def remove_session(paths: LedgerPaths, store: LedgerStore, session_id: str) -> RemoveResult:
    """
    Delete a session's directory and its stored records.

    Raises:
        ValueError: If session_id is empty or not a plain name
    """
    session_path = paths.session_dir(session_id)
    folder_existed = session_path.is_dir()
    if folder_existed:
        shutil.rmtree(session_path)

    deleted = store.delete_session(session_id)
    logger.info(
        "Removed session %s (folder: %s, entries: %d)", session_id, folder_existed, deleted
    )
    return RemoveResult(
        session_id=session_id,
        folder_removed=folder_existed,
        store_purged=deleted > 0 or folder_existed,
        entries_deleted=deleted,
    )
