"""
Ledger store using SQLite.

Durable home for records flushed out of session buffers. The store is the
source of truth for:
- Stored records (immutable once inserted)
- Deduplication, keyed by (session_id, content_hash)
- Full-text search over content (FTS5, kept in sync by triggers)
- Tiered queries used to restore context after compaction

Many short-lived processes open the same database, so the connection uses
WAL mode and a busy timeout. The UNIQUE(session_id, content_hash) index is
the final arbiter against double insertion when two flushes race.
"""

import hashlib
import json
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from .types import Record

logger = logging.getLogger(__name__)

# Bump when the schema changes; _migrate() upgrades older databases.
SCHEMA_VERSION = 2

DEFAULT_QUERY_LIMIT = 100
DEFAULT_SEARCH_LIMIT = 50

_COLUMNS = (
    "id, session_id, entry_type, source, content, content_hash, metadata, "
    "importance, created_at, category, keywords, applies_when, source_file"
)

# FTS5 bareword-safe characters. Anything else gets the term quoted.
_FTS_SAFE_TERM = re.compile(r'^[\w*+-]+$', re.UNICODE)
_FTS_OPERATORS = frozenset({"AND", "OR", "NOT", "NEAR"})
_FTS_COLUMNS = frozenset({"content", "entry_type", "keywords"})


def content_hash(entry_type: str, content: str) -> str:
    """SHA256 hex digest of entry_type and content, the dedup key."""
    return hashlib.sha256(f"{entry_type}:{content}".encode("utf-8")).hexdigest()


def _is_column_filter(word: str) -> bool:
    column, sep, _ = word.partition(":")
    return bool(sep) and column in _FTS_COLUMNS


def prepare_fts_query(query: str, prefix_match: bool = True) -> str:
    """
    Rewrite a user query for FTS5 MATCH.

    With prefix_match, each bare term gets a trailing ``*`` so "trail"
    matches "trailing". Terms that already end in ``*``, column filters
    (``entry_type:decision``), ``+``/``-`` prefixed terms and boolean
    operators pass through untouched. Any other word with a colon is quoted,
    since FTS5 would read "http:" as an unknown column.

    Example: "trailing comma" -> "trailing* comma*"
    """
    stripped = query.strip()
    if not prefix_match:
        return stripped

    terms = []
    for word in stripped.split():
        if (
            word.endswith("*")
            or _is_column_filter(word)
            or word.startswith("-")
            or word.startswith("+")
            or word in _FTS_OPERATORS
        ):
            terms.append(word)
        elif _FTS_SAFE_TERM.match(word):
            terms.append(f"{word}*")
        else:
            # Punctuation would be parsed as FTS syntax; quote the term
            escaped = word.replace('"', '""')
            terms.append(f'"{escaped}"*')
    return " ".join(terms)


@dataclass
class StoredRecord:
    """A record as persisted in the ledger store."""
    id: int
    session_id: str
    entry_type: str
    source: Optional[str]
    content: str
    content_hash: str
    metadata: Optional[str]
    importance: str
    created_at: str
    category: Optional[str] = None
    keywords: list[str] = field(default_factory=list)
    applies_when: Optional[str] = None
    source_file: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredRecord":
        keywords: list[str] = []
        if row["keywords"]:
            try:
                parsed = json.loads(row["keywords"])
                if isinstance(parsed, list):
                    keywords = [str(k) for k in parsed]
            except (json.JSONDecodeError, TypeError):
                pass
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            entry_type=row["entry_type"],
            source=row["source"],
            content=row["content"],
            content_hash=row["content_hash"],
            metadata=row["metadata"],
            importance=row["importance"],
            created_at=row["created_at"],
            category=row["category"],
            keywords=keywords,
            applies_when=row["applies_when"],
            source_file=row["source_file"],
        )

    def to_record(self) -> Record:
        """Convert back to a Record (metadata parsed from its JSON text)."""
        metadata: Any = None
        if self.metadata:
            try:
                metadata = json.loads(self.metadata)
            except json.JSONDecodeError:
                metadata = self.metadata
        return Record(
            entry_type=self.entry_type,
            content=self.content,
            importance=self.importance,
            source=self.source,
            created_at=self.created_at,
            metadata=metadata,
            category=self.category,
            keywords=tuple(self.keywords),
            applies_when=self.applies_when,
            source_file=self.source_file,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "entry_type": self.entry_type,
            "source": self.source,
            "content": self.content,
            "content_hash": self.content_hash,
            "metadata": self.metadata,
            "importance": self.importance,
            "created_at": self.created_at,
            "category": self.category,
            "keywords": list(self.keywords),
            "applies_when": self.applies_when,
            "source_file": self.source_file,
        }


@dataclass
class SessionStat:
    """Per-session aggregate."""
    session_id: str
    entry_count: int
    last_entry: str
    high_importance_count: int = 0


@dataclass
class Tier1Result:
    """
    Essential context that should almost always be restored:
    guidelines, implementation plans and high-importance decisions.
    """
    guidelines: list[StoredRecord] = field(default_factory=list)
    implementation_plans: list[StoredRecord] = field(default_factory=list)
    high_importance_decisions: list[StoredRecord] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return (
            len(self.guidelines)
            + len(self.implementation_plans)
            + len(self.high_importance_decisions)
        )

    def to_dict(self) -> dict:
        return {
            "guidelines": [r.to_dict() for r in self.guidelines],
            "implementation_plans": [r.to_dict() for r in self.implementation_plans],
            "high_importance_decisions": [r.to_dict() for r in self.high_importance_decisions],
            "total_count": self.total_count,
        }


@dataclass
class Tier2Result:
    """Supporting, session-local detail: learnings, file edits, medium decisions."""
    learnings: list[StoredRecord] = field(default_factory=list)
    file_edits: list[StoredRecord] = field(default_factory=list)
    medium_decisions: list[StoredRecord] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.learnings) + len(self.file_edits) + len(self.medium_decisions)

    def to_dict(self) -> dict:
        return {
            "learnings": [r.to_dict() for r in self.learnings],
            "file_edits": [r.to_dict() for r in self.file_edits],
            "medium_decisions": [r.to_dict() for r in self.medium_decisions],
            "total_count": self.total_count,
        }


@dataclass
class RestorationResult:
    """Both tiers for one session."""
    tier1: Tier1Result
    tier2: Tier2Result

    @property
    def total_count(self) -> int:
        return self.tier1.total_count + self.tier2.total_count

    def to_dict(self) -> dict:
        return {
            "tier1": self.tier1.to_dict(),
            "tier2": self.tier2.to_dict(),
            "total_count": self.total_count,
        }


class LedgerStore:
    """
    SQLite-backed store for ledger records.

    Invalid and duplicate records are reported through return values, never
    raised. Unexpected sqlite3 errors (disk full, corruption) propagate:
    losing durability silently is worse than failing loudly.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access across processes
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("BEGIN IMMEDIATE")
        try:
            version = self._conn.execute("PRAGMA user_version").fetchone()[0]
            if version == 0 and not self._table_exists("ledger_entries"):
                self._create_schema()
            elif version < SCHEMA_VERSION:
                self._migrate(version)
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self._conn.execute("COMMIT")
        except Exception:
            self._conn.execute("ROLLBACK")
            raise

    def _table_exists(self, name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
            (name,),
        ).fetchone()
        return row is not None

    def _create_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                entry_type TEXT NOT NULL,
                source TEXT,
                content TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                metadata TEXT,
                importance TEXT NOT NULL DEFAULT 'medium',
                created_at TEXT NOT NULL,
                category TEXT,
                keywords TEXT,
                applies_when TEXT,
                source_file TEXT
            )
        """)
        self._create_indexes()
        self._create_fts()

    def _create_indexes(self) -> None:
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_session ON ledger_entries(session_id)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_session_type "
            "ON ledger_entries(session_id, entry_type)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_source ON ledger_entries(source)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_created ON ledger_entries(created_at)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_importance ON ledger_entries(importance)"
        )
        # Storage-level dedup
        self._conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_content_dedup "
            "ON ledger_entries(session_id, content_hash)"
        )

    def _create_fts(self) -> None:
        self._conn.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS ledger_fts USING fts5(
                content,
                entry_type,
                keywords,
                content='ledger_entries',
                content_rowid='id'
            )
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS ledger_ai AFTER INSERT ON ledger_entries BEGIN
                INSERT INTO ledger_fts(rowid, content, entry_type, keywords)
                VALUES (new.id, new.content, new.entry_type, new.keywords);
            END
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS ledger_ad AFTER DELETE ON ledger_entries BEGIN
                INSERT INTO ledger_fts(ledger_fts, rowid, content, entry_type, keywords)
                VALUES ('delete', old.id, old.content, old.entry_type, old.keywords);
            END
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS ledger_au AFTER UPDATE ON ledger_entries BEGIN
                INSERT INTO ledger_fts(ledger_fts, rowid, content, entry_type, keywords)
                VALUES ('delete', old.id, old.content, old.entry_type, old.keywords);
                INSERT INTO ledger_fts(rowid, content, entry_type, keywords)
                VALUES (new.id, new.content, new.entry_type, new.keywords);
            END
        """)

    def _migrate(self, from_version: int) -> None:
        """Migrate existing databases to current schema.

        Version 1 databases lack the enhanced columns, index keywords only
        through content, and dedup on (session_id, entry_type, content_hash).
        """
        cursor = self._conn.execute("PRAGMA table_info(ledger_entries)")
        columns = {row[1] for row in cursor.fetchall()}

        for column in ("category", "keywords", "applies_when", "source_file"):
            if column not in columns:
                self._conn.execute(f"ALTER TABLE ledger_entries ADD COLUMN {column} TEXT")

        # Rebuild FTS with the keywords column
        for trigger in ("ledger_ai", "ledger_ad", "ledger_au"):
            self._conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")
        self._conn.execute("DROP TABLE IF EXISTS ledger_fts")
        self._conn.execute("DROP INDEX IF EXISTS idx_content_dedup")
        self._create_indexes()
        self._create_fts()
        self._conn.execute("INSERT INTO ledger_fts(ledger_fts) VALUES ('rebuild')")
        logger.info(
            "Migrated ledger schema from version %d to %d", from_version, SCHEMA_VERSION
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def _insert_row(self, session_id: str, record: Record) -> bool:
        keywords_json = json.dumps(list(record.keywords), ensure_ascii=False)
        metadata_json = (
            json.dumps(record.metadata, ensure_ascii=False)
            if record.metadata is not None else None
        )
        cursor = self._conn.execute("""
            INSERT INTO ledger_entries
            (session_id, entry_type, source, content, content_hash, metadata,
             importance, created_at, category, keywords, applies_when, source_file)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (session_id, content_hash) DO NOTHING
        """, (
            session_id,
            record.entry_type,
            record.source,
            record.content,
            content_hash(record.entry_type, record.content),
            metadata_json,
            record.importance,
            record.created_at,
            record.category,
            keywords_json,
            record.applies_when,
            record.source_file,
        ))
        return cursor.rowcount > 0

    def insert(self, session_id: str, record: Record) -> bool:
        """
        Insert a record.

        Returns:
            True if newly persisted; False for an empty session id, an
            invalid record, or a duplicate (session_id, content_hash).
        """
        return self.insert_many(session_id, [record]) == 1

    def insert_many(self, session_id: str, records: Iterable[Record]) -> int:
        """
        Insert records in a single transaction.

        Invalid and duplicate records are skipped and not counted. If an
        unexpected storage error occurs the whole batch is rolled back and
        the error propagates, so callers can retry safely (dedup makes a
        retry idempotent).

        Returns:
            Count of records newly persisted
        """
        if not session_id:
            return 0
        valid = [r for r in records if isinstance(r, Record) and r.is_valid()]
        if not valid:
            return 0

        inserted = 0
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for record in valid:
                    if self._insert_row(session_id, record):
                        inserted += 1
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return inserted

    def delete_session(self, session_id: str) -> int:
        """
        Delete all records for a session.

        Returns:
            Number of records deleted
        """
        if not session_id:
            return 0
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM ledger_entries WHERE session_id = ?", (session_id,)
            )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def _fetch(self, sql: str, params: tuple) -> list[StoredRecord]:
        cursor = self._conn.execute(sql, params)
        return [StoredRecord.from_row(row) for row in cursor]

    def count(self) -> int:
        """Count records across all sessions."""
        cursor = self._conn.execute("SELECT COUNT(*) FROM ledger_entries")
        return cursor.fetchone()[0]

    def count_by_session(self, session_id: str) -> int:
        """Count records for one session."""
        if not session_id:
            return 0
        cursor = self._conn.execute(
            "SELECT COUNT(*) FROM ledger_entries WHERE session_id = ?", (session_id,)
        )
        return cursor.fetchone()[0]

    def exists(self, session_id: str, entry_type: str, content: str) -> bool:
        """Check whether a record with this dedup key is stored."""
        cursor = self._conn.execute("""
            SELECT 1 FROM ledger_entries
            WHERE session_id = ? AND content_hash = ?
        """, (session_id, content_hash(entry_type, content)))
        return cursor.fetchone() is not None

    def query_by_session(
        self, session_id: str, limit: int = DEFAULT_QUERY_LIMIT,
    ) -> list[StoredRecord]:
        """Records for a session, most recent first."""
        if not session_id:
            return []
        return self._fetch(f"""
            SELECT {_COLUMNS} FROM ledger_entries
            WHERE session_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """, (session_id, limit))

    def query_by_type(
        self, session_id: str, entry_type: str, limit: int = DEFAULT_QUERY_LIMIT,
    ) -> list[StoredRecord]:
        """Records of one type for a session, most recent first."""
        if not session_id:
            return []
        return self._fetch(f"""
            SELECT {_COLUMNS} FROM ledger_entries
            WHERE session_id = ? AND entry_type = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """, (session_id, entry_type, limit))

    def query_by_importance(
        self, session_id: str, importance: str, limit: int = DEFAULT_QUERY_LIMIT,
    ) -> list[StoredRecord]:
        """Records of one importance level for a session, most recent first."""
        if not session_id:
            return []
        return self._fetch(f"""
            SELECT {_COLUMNS} FROM ledger_entries
            WHERE session_id = ? AND importance = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """, (session_id, importance, limit))

    def query_recent(self, limit: int = DEFAULT_QUERY_LIMIT) -> list[StoredRecord]:
        """Most recent records across all sessions."""
        return self._fetch(f"""
            SELECT {_COLUMNS} FROM ledger_entries
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """, (limit,))

    def query_recent_filtered(
        self,
        limit: int = DEFAULT_QUERY_LIMIT,
        entry_type: Optional[str] = None,
        importance: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> list[StoredRecord]:
        """Most recent records with optional type, importance and session filters."""
        sql = f"SELECT {_COLUMNS} FROM ledger_entries WHERE 1=1"
        params: list[Any] = []
        if session_id:
            sql += " AND session_id = ?"
            params.append(session_id)
        if entry_type:
            sql += " AND entry_type = ?"
            params.append(entry_type)
        if importance:
            sql += " AND importance = ?"
            params.append(importance)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return self._fetch(sql, tuple(params))

    # -------------------------------------------------------------------------
    # Full-text Search
    # -------------------------------------------------------------------------

    def _search(
        self,
        query: str,
        session_id: Optional[str],
        limit: int,
        entry_type: Optional[str],
        importance: Optional[str],
        prefix_match: bool,
    ) -> list[StoredRecord]:
        if not query or not query.strip():
            return []

        fts_query = prepare_fts_query(query, prefix_match)
        sql = f"""
            SELECT {', '.join('e.' + c.strip() for c in _COLUMNS.split(','))}
            FROM ledger_entries e
            JOIN ledger_fts f ON e.id = f.rowid
            WHERE ledger_fts MATCH ?
        """
        params: list[Any] = [fts_query]
        if session_id is not None:
            sql += " AND e.session_id = ?"
            params.append(session_id)
        if entry_type:
            sql += " AND e.entry_type = ?"
            params.append(entry_type)
        if importance:
            sql += " AND e.importance = ?"
            params.append(importance)
        sql += " ORDER BY rank LIMIT ?"
        params.append(limit)

        try:
            return self._fetch(sql, tuple(params))
        except sqlite3.OperationalError as e:
            # Malformed user query, not a storage fault
            message = str(e).lower()
            if "fts5" in message or "syntax" in message or "no such column" in message:
                logger.debug("FTS query %r rejected: %s", fts_query, e)
                return []
            raise

    def search(
        self,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        entry_type: Optional[str] = None,
        importance: Optional[str] = None,
        prefix_match: bool = True,
    ) -> list[StoredRecord]:
        """
        Full-text search across all sessions.

        Args:
            query: Search terms (FTS5 syntax passes through)
            limit: Maximum results
            entry_type: Only records of this type
            importance: Only records of this importance
            prefix_match: Append ``*`` to bare terms

        Returns:
            Matching records, best match first
        """
        return self._search(query, None, limit, entry_type, importance, prefix_match)

    def search_in_session(
        self,
        session_id: str,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        entry_type: Optional[str] = None,
        importance: Optional[str] = None,
        prefix_match: bool = True,
    ) -> list[StoredRecord]:
        """Full-text search within one session."""
        if not session_id:
            return []
        return self._search(query, session_id, limit, entry_type, importance, prefix_match)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def session_stats(self) -> list[SessionStat]:
        """Per-session entry counts, most recently active first."""
        cursor = self._conn.execute("""
            SELECT session_id,
                   COUNT(*) AS entry_count,
                   MAX(created_at) AS last_entry,
                   SUM(CASE WHEN importance = 'high' THEN 1 ELSE 0 END) AS high_count
            FROM ledger_entries
            GROUP BY session_id
            ORDER BY last_entry DESC
        """)
        return [
            SessionStat(
                session_id=row["session_id"],
                entry_count=row["entry_count"],
                last_entry=row["last_entry"],
                high_importance_count=row["high_count"] or 0,
            )
            for row in cursor
        ]

    def list_sessions(self) -> list[str]:
        """Distinct session ids with stored records."""
        cursor = self._conn.execute(
            "SELECT DISTINCT session_id FROM ledger_entries ORDER BY session_id"
        )
        return [row["session_id"] for row in cursor]

    # -------------------------------------------------------------------------
    # Tiered Restoration
    # -------------------------------------------------------------------------

    def query_tier1(self, session_id: str, decision_limit: int = 10) -> Tier1Result:
        """Guidelines, implementation plans (all) and high-importance decisions (bounded)."""
        if not session_id:
            return Tier1Result()
        return Tier1Result(
            guidelines=self._fetch(f"""
                SELECT {_COLUMNS} FROM ledger_entries
                WHERE session_id = ? AND entry_type = 'guideline'
                ORDER BY created_at DESC, id DESC
            """, (session_id,)),
            implementation_plans=self._fetch(f"""
                SELECT {_COLUMNS} FROM ledger_entries
                WHERE session_id = ? AND entry_type = 'implementation_plan'
                ORDER BY created_at DESC, id DESC
            """, (session_id,)),
            high_importance_decisions=self._fetch(f"""
                SELECT {_COLUMNS} FROM ledger_entries
                WHERE session_id = ? AND entry_type = 'decision' AND importance = 'high'
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (session_id, max(decision_limit, 0))),
        )

    def query_tier2(
        self,
        session_id: str,
        learnings_limit: int = 5,
        file_edits_limit: int = 10,
        medium_decisions_limit: int = 5,
    ) -> Tier2Result:
        """Most recent learnings, file edits and medium-importance decisions."""
        if not session_id:
            return Tier2Result()
        return Tier2Result(
            learnings=self._fetch(f"""
                SELECT {_COLUMNS} FROM ledger_entries
                WHERE session_id = ? AND entry_type = 'learning'
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (session_id, max(learnings_limit, 0))),
            file_edits=self._fetch(f"""
                SELECT {_COLUMNS} FROM ledger_entries
                WHERE session_id = ? AND entry_type = 'file_edit'
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (session_id, max(file_edits_limit, 0))),
            medium_decisions=self._fetch(f"""
                SELECT {_COLUMNS} FROM ledger_entries
                WHERE session_id = ? AND entry_type = 'decision' AND importance = 'medium'
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (session_id, max(medium_decisions_limit, 0))),
        )

    def query_for_restoration(
        self,
        session_id: str,
        tier1_decision_limit: int = 10,
        tier2_learnings_limit: int = 5,
        tier2_file_edits_limit: int = 10,
        tier2_decisions_limit: int = 5,
    ) -> RestorationResult:
        """Both restoration tiers for a session."""
        return RestorationResult(
            tier1=self.query_tier1(session_id, tier1_decision_limit),
            tier2=self.query_tier2(
                session_id,
                tier2_learnings_limit,
                tier2_file_edits_limit,
                tier2_decisions_limit,
            ),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
