"""
Data types for the session ledger.

A Record is the unit of knowledge that flows through the system: produced
upstream, appended to a session buffer, then flushed into the ledger store.
Records are immutable once created.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Closed set of record types. Unknown values are invalid.
ENTRY_TYPES = (
    "file_read",
    "file_edit",
    "file_write",
    "search",
    "direction",
    "preference",
    "constraint",
    "learning",
    "decision",
    "discovery",
    "guideline",
    "implementation_plan",
    "reference",
)

IMPORTANCE_LEVELS = ("high", "medium", "low")

SOURCES = ("user", "assistant")

DEFAULT_IMPORTANCE = "medium"


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SSZ.

    All ledger timestamps are UTC. Lexicographic order equals time order,
    which the store relies on for ORDER BY created_at.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime."""
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class Record:
    """
    A single structured fact awaiting storage.

    The enhanced fields (category, keywords, applies_when, source_file) are
    only meaningful for guideline and implementation_plan records, but any
    record may carry them. ``metadata`` is opaque and passed through as-is.
    """
    entry_type: str
    content: str
    importance: str = DEFAULT_IMPORTANCE
    source: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    metadata: Any = None
    category: Optional[str] = None
    keywords: tuple[str, ...] = ()
    applies_when: Optional[str] = None
    source_file: Optional[str] = None

    def __post_init__(self):
        # Accept any sequence of keywords; store as a tuple so the record
        # stays hashable and immutable.
        if self.keywords is None:
            object.__setattr__(self, "keywords", ())
        elif isinstance(self.keywords, list):
            object.__setattr__(self, "keywords", tuple(self.keywords))

    def is_valid(self) -> bool:
        """True iff the record may be persisted."""
        if not isinstance(self.entry_type, str) or self.entry_type not in ENTRY_TYPES:
            return False
        if not isinstance(self.content, str) or not self.content:
            return False
        if self.importance not in IMPORTANCE_LEVELS:
            return False
        if self.source is not None and self.source not in SOURCES:
            return False
        if not isinstance(self.created_at, str) or not self.created_at:
            return False
        if not isinstance(self.keywords, tuple):
            return False
        if not all(isinstance(k, str) for k in self.keywords):
            return False
        for name in ("category", "applies_when", "source_file"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                return False
        if self.metadata is not None:
            try:
                json.dumps(self.metadata)
            except (TypeError, ValueError):
                return False
        return True

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict.

        Optional enhanced fields are omitted when unset; keywords is always
        present (possibly empty) so readers never need a null check.
        """
        d: dict[str, Any] = {
            "entry_type": self.entry_type,
            "content": self.content,
            "importance": self.importance,
            "source": self.source,
            "created_at": self.created_at,
            "metadata": self.metadata,
            "keywords": list(self.keywords),
        }
        for name in ("category", "applies_when", "source_file"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d

    def to_json(self) -> str:
        """One-line JSON form used by the buffer files."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict) -> "Record":
        """
        Build a Record from a parsed dict.

        Raises:
            ValueError: If required fields are missing or have the wrong type.
                Semantic validity (known entry_type etc.) is NOT checked here;
                use is_valid() for that.
        """
        if not isinstance(data, dict):
            raise ValueError("record must be a JSON object")
        entry_type = data.get("entry_type")
        content = data.get("content")
        if not isinstance(entry_type, str):
            raise ValueError("entry_type is required")
        if not isinstance(content, str):
            raise ValueError("content is required")

        importance = data.get("importance") or DEFAULT_IMPORTANCE
        if not isinstance(importance, str):
            raise ValueError("importance must be a string")

        keywords = data.get("keywords") or []
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise ValueError("keywords must be a list of strings")

        created_at = data.get("created_at") or utc_now()
        if not isinstance(created_at, str):
            raise ValueError("created_at must be a string")

        return cls(
            entry_type=entry_type,
            content=content,
            importance=importance,
            source=_optional_str(data, "source"),
            created_at=created_at,
            metadata=data.get("metadata"),
            category=_optional_str(data, "category"),
            keywords=tuple(keywords),
            applies_when=_optional_str(data, "applies_when"),
            source_file=_optional_str(data, "source_file"),
        )

    @classmethod
    def from_json(cls, line: str) -> "Record":
        """Parse one buffer line. Raises ValueError on malformed input."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"malformed record line: {e}") from e
        return cls.from_dict(data)
