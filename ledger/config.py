"""
Configuration management for the session ledger.

The configuration is stored as a JSON file in the ledger home. Every numeric
limit the buffer and store use (flush threshold, restoration tier limits,
token budget) is sourced from here.

Settings are addressed by dotted path, e.g. ``restoration.tier2_limits.learnings``.
``set`` validates and fails loudly; loading a missing file silently yields
defaults.
"""

import json
import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


CONFIG_VERSION = 2


class ConfigError(ValueError):
    """Unknown setting or invalid value."""


@dataclass
class Thresholds:
    """Context-usage percentages at which warnings fire."""
    warning: int = 70
    critical: int = 85


@dataclass
class Warnings:
    at_warning_threshold: bool = True
    at_critical_threshold: bool = True


@dataclass
class Extraction:
    on_stop: bool = True
    on_guideline_read: bool = True


@dataclass
class BufferSettings:
    """When a session buffer should be flushed to the store."""
    flush_threshold: int = 50
    flush_interval_seconds: int = 300


@dataclass
class Storage:
    # Empty means <home>/data/ledger.db
    database_path: str = ""
    embeddings_enabled: bool = False


@dataclass
class Tier1Limits:
    high_importance_decisions: int = 10


@dataclass
class Tier2Limits:
    learnings: int = 5
    file_edits: int = 10
    medium_importance_decisions: int = 5


@dataclass
class Restoration:
    max_essential_tokens: int = 2000
    tier1_limits: Tier1Limits = field(default_factory=Tier1Limits)
    tier2_limits: Tier2Limits = field(default_factory=Tier2Limits)


@dataclass
class LedgerConfig:
    """Complete ledger configuration."""
    schema_version: int = CONFIG_VERSION
    thresholds: Thresholds = field(default_factory=Thresholds)
    warnings: Warnings = field(default_factory=Warnings)
    extraction: Extraction = field(default_factory=Extraction)
    buffer: BufferSettings = field(default_factory=BufferSettings)
    storage: Storage = field(default_factory=Storage)
    restoration: Restoration = field(default_factory=Restoration)

    # -------------------------------------------------------------------------
    # Dotted-path access
    # -------------------------------------------------------------------------

    def _resolve(self, key: str) -> tuple[Any, str]:
        """Return (owning section, leaf name) for a dotted key."""
        if not key:
            raise ConfigError("Missing setting name")
        parts = key.split(".")
        if parts[0] == "schema_version":
            raise ConfigError("schema_version is read-only")
        obj: Any = self
        for part in parts[:-1]:
            if not is_dataclass(obj) or part not in _field_names(obj):
                raise ConfigError(f"Unknown setting: {key}")
            obj = getattr(obj, part)
        leaf = parts[-1]
        if not is_dataclass(obj) or leaf not in _field_names(obj):
            raise ConfigError(f"Unknown setting: {key}")
        if is_dataclass(getattr(obj, leaf)):
            example = next(iter(_leaf_keys(getattr(obj, leaf), key)), key)
            raise ConfigError(f"Missing field for {key} (e.g., {example})")
        return obj, leaf

    def get(self, key: str) -> str:
        """
        String form of a setting.

        Raises:
            ConfigError: If the key does not name a setting
        """
        if key == "schema_version":
            return str(self.schema_version)
        obj, leaf = self._resolve(key)
        return _format_value(getattr(obj, leaf))

    def set(self, key: str, value: str) -> None:
        """
        Parse, validate and assign a setting.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        obj, leaf = self._resolve(key)
        current = getattr(obj, leaf)
        if isinstance(current, bool):
            parsed: Any = parse_bool(value)
        elif isinstance(current, int):
            parsed = _parse_int(key, value)
        else:
            parsed = value
        validator = _VALIDATORS.get(key)
        if validator is not None:
            validator(key, parsed)
        setattr(obj, leaf, parsed)

    def keys(self) -> list[str]:
        """All settable dotted keys."""
        return list(_leaf_keys(self, ""))

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        data = _section_to_dict(self)
        data["_schema_version"] = data.pop("schema_version")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerConfig":
        """Build a config from parsed JSON. Unknown keys are ignored."""
        config = cls()
        _section_from_dict(config, data, "")
        config.schema_version = CONFIG_VERSION
        return config


def _field_names(obj: Any) -> set[str]:
    return {f.name for f in fields(obj)}


def _leaf_keys(obj: Any, prefix: str):
    for f in fields(obj):
        if f.name == "schema_version":
            continue
        key = f"{prefix}.{f.name}" if prefix else f.name
        value = getattr(obj, f.name)
        if is_dataclass(value):
            yield from _leaf_keys(value, key)
        else:
            yield key


def _section_to_dict(obj: Any) -> dict:
    result = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        result[f.name] = _section_to_dict(value) if is_dataclass(value) else value
    return result


def _section_from_dict(obj: Any, data: dict, prefix: str) -> None:
    if not isinstance(data, dict):
        return
    for f in fields(obj):
        if f.name not in data or f.name == "schema_version":
            continue
        key = f"{prefix}.{f.name}" if prefix else f.name
        current = getattr(obj, f.name)
        raw = data[f.name]
        if is_dataclass(current):
            _section_from_dict(current, raw, key)
            continue
        if isinstance(current, bool):
            if not isinstance(raw, bool):
                logger.warning("Ignoring non-boolean value for %s: %r", key, raw)
                continue
        elif isinstance(current, int):
            if isinstance(raw, bool) or not isinstance(raw, int):
                logger.warning("Ignoring non-integer value for %s: %r", key, raw)
                continue
        elif not isinstance(raw, str):
            logger.warning("Ignoring non-string value for %s: %r", key, raw)
            continue
        validator = _VALIDATORS.get(key)
        if validator is not None:
            try:
                validator(key, raw)
            except ConfigError as e:
                logger.warning("Ignoring invalid config value: %s", e)
                continue
        setattr(obj, f.name, raw)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_bool(value: str) -> bool:
    """Parse true/false, 1/0, yes/no (case-insensitive)."""
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ConfigError(f"Invalid boolean value: {value} (use true/false)")


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"Invalid value for {key}: {value} (must be integer)") from None


def _percentage(key: str, value: int) -> None:
    if not 0 <= value <= 100:
        raise ConfigError(f"{key} must be between 0 and 100")


def _positive(key: str, value: int) -> None:
    if value < 1:
        raise ConfigError(f"{key} must be at least 1")


_VALIDATORS: dict[str, Callable[[str, Any], None]] = {
    "thresholds.warning": _percentage,
    "thresholds.critical": _percentage,
    "buffer.flush_threshold": _positive,
    "buffer.flush_interval_seconds": _positive,
    "restoration.max_essential_tokens": _positive,
    "restoration.tier1_limits.high_importance_decisions": _positive,
    "restoration.tier2_limits.learnings": _positive,
    "restoration.tier2_limits.file_edits": _positive,
    "restoration.tier2_limits.medium_importance_decisions": _positive,
}


# -----------------------------------------------------------------------------
# Migrations
# -----------------------------------------------------------------------------

def _migrate_v1(data: dict) -> dict:
    """Version 1 carried postgres settings and no buffer section."""
    storage = data.get("storage")
    if isinstance(storage, dict):
        for key in ("postgres_enabled", "postgres_host_port", "openai_api_key_env_var"):
            storage.pop(key, None)
    data.setdefault("buffer", {})
    data.pop("version", None)
    return data


_MIGRATIONS: dict[int, Callable[[dict], dict]] = {
    1: _migrate_v1,
}


def migrate_config(data: dict) -> tuple[dict, bool]:
    """
    Upgrade raw config data to CONFIG_VERSION.

    Returns:
        (migrated data, whether anything changed)
    """
    raw_version = data.get("_schema_version", 1)
    try:
        version = int(raw_version)
    except (TypeError, ValueError):
        # Early files stored the tool version string here
        version = 1
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION})"
        )
    changed = False
    while version < CONFIG_VERSION:
        data = _MIGRATIONS[version](data)
        version += 1
        changed = True
    data["_schema_version"] = CONFIG_VERSION
    return data, changed


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------

def load_config(config_path: Path) -> LedgerConfig:
    """
    Load configuration from a JSON file.

    A missing file yields defaults. An unreadable or unparsable file is
    logged and also yields defaults.
    """
    if not config_path.exists():
        return LedgerConfig()
    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("config root must be a JSON object")
        data, changed = migrate_config(data)
    except (OSError, ValueError) as e:
        logger.warning("Could not parse config %s, using defaults: %s", config_path, e)
        return LedgerConfig()

    config = LedgerConfig.from_dict(data)
    if changed:
        try:
            save_config(config, config_path)
            logger.info("Migrated config %s to version %d", config_path, CONFIG_VERSION)
        except OSError as e:
            logger.warning("Could not save migrated config: %s", e)
    return config


def save_config(config: LedgerConfig, config_path: Path) -> None:
    """
    Save configuration as pretty JSON.

    Creates the directory if it doesn't exist.
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
        f.write("\n")


def load_or_create_config(config_path: Path) -> LedgerConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if config_path.exists():
        return load_config(config_path)
    config = LedgerConfig()
    save_config(config, config_path)
    return config


def resolve_database_path(config: LedgerConfig, default: Path) -> Path:
    """Database location: the configured override, else ``default``."""
    override: Optional[str] = config.storage.database_path
    if override:
        return Path(override).expanduser()
    return default
