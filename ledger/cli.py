"""
CLI interface for the session ledger.

Usage:
    ledger buffer flush SESSION_ID
    ledger search "trailing comma" --session SESSION_ID
    ledger restore SESSION_ID --json
    ledger config set thresholds.warning 75
"""

import dataclasses
import json
import os
import shutil
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Ledger
from .config import (
    ConfigError,
    LedgerConfig,
    load_or_create_config,
    save_config,
)
from .ledger_store import RestorationResult, StoredRecord
from .logging_config import configure_quiet_mode, enable_debug_mode
from .paths import LedgerPaths
from .session import list_sessions, remove_session, show_session
from .types import ENTRY_TYPES, IMPORTANCE_LEVELS


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_home_override: Optional[Path] = None
_database_override: Optional[Path] = None


def _get_json_output() -> bool:
    return _json_output


app = typer.Typer(
    name="ledger",
    help="Buffered, deduplicated, searchable session ledger.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
    )] = False,
    home: Annotated[Optional[Path], typer.Option(
        "--home",
        envvar="LEDGER_HOME",
        help="Path to the ledger home directory",
    )] = None,
    database: Annotated[Optional[Path], typer.Option(
        "--database",
        envvar="LEDGER_DATABASE_PATH",
        help="Path to the ledger database (overrides config)",
    )] = None,
):
    """Buffered, deduplicated, searchable session ledger."""
    global _json_output, _home_override, _database_override
    _json_output = output_json
    _home_override = home
    _database_override = database


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_paths() -> LedgerPaths:
    paths = LedgerPaths.from_env(_home_override)
    if _database_override is not None:
        paths = dataclasses.replace(paths, database_override=_database_override.expanduser())
    return paths


def _get_ledger() -> Ledger:
    """Open the ledger, handling errors gracefully."""
    try:
        return Ledger(paths=_get_paths())
    except Exception as e:
        typer.echo(f"Error opening ledger: {e}", err=True)
        raise typer.Exit(1)


def _output_width() -> int:
    """Terminal width for content truncation. Use generous default when not a TTY."""
    if not sys.stdout.isatty():
        return 200
    return shutil.get_terminal_size((120, 24)).columns


def _format_record_line(record: StoredRecord, show_session: bool = False) -> str:
    """Single line: id date type[importance] content"""
    prefix = f"{record.id:>5} {record.created_at} {record.entry_type}[{record.importance}]"
    if show_session:
        prefix += f" ({record.session_id})"
    content = record.content.replace("\n", " ")
    max_content = max(_output_width() - len(prefix) - 1, 20)
    if len(content) > max_content:
        content = content[:max_content - 3] + "..."
    return f"{prefix} {content}"


def _echo_records(records: list[StoredRecord], show_session: bool = False) -> None:
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
        return
    if not records:
        typer.echo("No entries found.", err=True)
        return
    for record in records:
        typer.echo(_format_record_line(record, show_session))


def _validate_choice(value: Optional[str], choices: tuple, name: str) -> None:
    if value is not None and value not in choices:
        typer.echo(f"Error: invalid {name} '{value}' (one of: {', '.join(choices)})", err=True)
        raise typer.Exit(1)


SessionArg = Annotated[str, typer.Argument(help="Session ID")]

LimitOption = Annotated[int, typer.Option(
    "--limit", "-n",
    help="Maximum results to return",
    min=1,
)]

TypeOption = Annotated[Optional[str], typer.Option(
    "--type", "-t",
    help="Only entries of this type",
)]

ImportanceOption = Annotated[Optional[str], typer.Option(
    "--importance", "-i",
    help="Only entries of this importance (high, medium, low)",
)]


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

config_app = typer.Typer(
    name="config",
    help="Show and change settings.",
    rich_markup_mode=None,
)
app.add_typer(config_app)


@config_app.command("show")
def config_show():
    """Show the full configuration."""
    paths = _get_paths()
    config = load_or_create_config(paths.config_path)
    if _get_json_output():
        typer.echo(json.dumps(config.to_dict(), indent=2))
        return
    for key in config.keys():
        typer.echo(f"{key} = {config.get(key)}")


@config_app.command("get")
def config_get(
    key: Annotated[str, typer.Argument(help="Dotted setting name, e.g. thresholds.warning")],
):
    """Print one setting."""
    config = load_or_create_config(_get_paths().config_path)
    try:
        typer.echo(config.get(key))
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@config_app.command("set")
def config_set(
    key: Annotated[str, typer.Argument(help="Dotted setting name")],
    value: Annotated[str, typer.Argument(help="New value")],
):
    """Change one setting (validated)."""
    paths = _get_paths()
    config = load_or_create_config(paths.config_path)
    try:
        config.set(key, value)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    save_config(config, paths.config_path)
    typer.echo(f"{key} = {config.get(key)}")


@config_app.command("reset")
def config_reset():
    """Restore default settings."""
    paths = _get_paths()
    save_config(LedgerConfig(), paths.config_path)
    typer.echo(f"Reset configuration at {paths.config_path}", err=True)


@config_app.command("path")
def config_path():
    """Print the configuration file location."""
    typer.echo(str(_get_paths().config_path))


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------

session_app = typer.Typer(
    name="session",
    help="Inspect and remove sessions.",
    rich_markup_mode=None,
)
app.add_typer(session_app)


@session_app.command("list")
def session_list():
    """List sessions, most recently modified first."""
    sessions = list_sessions(_get_paths())
    if _get_json_output():
        typer.echo(json.dumps([s.to_dict() for s in sessions], indent=2))
        return
    if not sessions:
        typer.echo("No sessions.", err=True)
        return
    for info in sessions:
        flag = " (flush in progress)" if info.flush_in_progress else ""
        typer.echo(
            f"{info.session_id}  {info.to_dict()['last_modified']}  "
            f"buffered: {info.buffer_count}{flag}"
        )


@session_app.command("show")
def session_show(session_id: SessionArg):
    """Show one session's files and buffer state."""
    info = show_session(_get_paths(), session_id)
    if info is None:
        typer.echo(f"Session not found: {session_id}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(info.to_dict(), indent=2))
        return
    data = info.to_dict()
    typer.echo(f"session: {info.session_id}")
    typer.echo(f"path: {info.path}")
    typer.echo(f"last_modified: {data['last_modified']}")
    typer.echo(f"total_size: {info.total_size}")
    typer.echo(f"buffered: {info.buffer_count}")
    typer.echo(f"flush_in_progress: {str(info.flush_in_progress).lower()}")
    typer.echo("files:")
    for name in info.files:
        typer.echo(f"  - {name}")


@session_app.command("remove")
def session_remove(session_id: SessionArg):
    """Delete a session's folder and stored entries."""
    with _get_ledger() as ledger:
        try:
            result = remove_session(ledger.paths, ledger.store, session_id)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    if not result.anything_removed:
        typer.echo(f"Nothing to remove for {session_id}", err=True)
        return
    typer.echo(
        f"Removed {session_id} (folder: {'yes' if result.folder_removed else 'no'}, "
        f"entries: {result.entries_deleted})"
    )


# -----------------------------------------------------------------------------
# Buffer
# -----------------------------------------------------------------------------

buffer_app = typer.Typer(
    name="buffer",
    help="Inspect, flush and recover session buffers.",
    rich_markup_mode=None,
)
app.add_typer(buffer_app)


@buffer_app.command("show")
def buffer_show(session_id: SessionArg):
    """Print buffered records."""
    with _get_ledger() as ledger:
        records = ledger.buffer.read(session_id)
        in_progress = ledger.buffer.flush_in_progress(session_id)
    if _get_json_output():
        typer.echo(json.dumps({
            "session_id": session_id,
            "count": len(records),
            "flush_in_progress": in_progress,
            "entries": [r.to_dict() for r in records],
        }, indent=2, ensure_ascii=False))
        return
    if not records:
        typer.echo(f"Buffer empty for {session_id}", err=True)
    for record in records:
        typer.echo(f"{record.created_at} {record.entry_type}[{record.importance}] {record.content}")
    if in_progress:
        typer.echo("(flush in progress)", err=True)


def _echo_flush_result(result) -> None:
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2))
    elif result.success:
        message = f"Flushed {result.entries_flushed} entries"
        if result.reason:
            message += f" ({result.reason})"
        typer.echo(message)
    else:
        typer.echo(f"Flush failed: {result.reason}", err=True)
    if not result.success:
        raise typer.Exit(1)


@buffer_app.command("flush")
def buffer_flush(session_id: SessionArg):
    """Flush the buffer into the store now."""
    with _get_ledger() as ledger:
        result = ledger.flush(session_id)
    _echo_flush_result(result)


@buffer_app.command("flush-async")
def buffer_flush_async(session_id: SessionArg):
    """Flush the buffer in a detached background process."""
    with _get_ledger() as ledger:
        result = ledger.flush_async(session_id)
    _echo_flush_result(result)


@buffer_app.command("clear")
def buffer_clear(session_id: SessionArg):
    """Discard buffered records without storing them."""
    with _get_ledger() as ledger:
        ok = ledger.buffer.clear(session_id)
    if not ok:
        typer.echo(f"Error: invalid session id {session_id!r}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Cleared buffer for {session_id}")


@buffer_app.command("recover")
def buffer_recover(
    session_id: Annotated[Optional[str], typer.Argument(
        help="Session ID (all sessions if omitted)"
    )] = None,
):
    """Recover snapshots left by crashed flushes."""
    with _get_ledger() as ledger:
        if session_id:
            recovered = {session_id: ledger.start_session(session_id)}
        else:
            recovered = ledger.buffer.recover_all()
    if _get_json_output():
        typer.echo(json.dumps(recovered, indent=2))
        return
    if not any(recovered.values()):
        typer.echo("No orphaned entries.", err=True)
        return
    for sid, count in recovered.items():
        typer.echo(f"Recovered {count} entries for {sid}")


# -----------------------------------------------------------------------------
# Queries
# -----------------------------------------------------------------------------

@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search terms (FTS5 syntax allowed)")],
    session: Annotated[Optional[str], typer.Option(
        "--session", "-s",
        help="Only search this session",
    )] = None,
    entry_type: TypeOption = None,
    importance: ImportanceOption = None,
    exact: Annotated[bool, typer.Option(
        "--exact", "-e",
        help="Match whole words only (no prefix matching)",
    )] = False,
    limit: LimitOption = 50,
):
    """Full-text search over stored entries."""
    _validate_choice(entry_type, ENTRY_TYPES, "type")
    _validate_choice(importance, IMPORTANCE_LEVELS, "importance")
    with _get_ledger() as ledger:
        if session:
            results = ledger.store.search_in_session(
                session, query, limit=limit, entry_type=entry_type,
                importance=importance, prefix_match=not exact,
            )
        else:
            results = ledger.store.search(
                query, limit=limit, entry_type=entry_type,
                importance=importance, prefix_match=not exact,
            )
    _echo_records(results, show_session=session is None)


@app.command("list")
def list_cmd(
    session: Annotated[Optional[str], typer.Option(
        "--session", "-s",
        help="Only entries from this session",
    )] = None,
    entry_type: TypeOption = None,
    importance: ImportanceOption = None,
    limit: LimitOption = 20,
):
    """List recent stored entries."""
    _validate_choice(entry_type, ENTRY_TYPES, "type")
    _validate_choice(importance, IMPORTANCE_LEVELS, "importance")
    with _get_ledger() as ledger:
        store = ledger.store
        if session and entry_type and importance:
            results = store.query_recent_filtered(limit, entry_type, importance, session)
        elif session and entry_type:
            results = store.query_by_type(session, entry_type, limit)
        elif session and importance:
            results = store.query_by_importance(session, importance, limit)
        elif session:
            results = store.query_by_session(session, limit)
        else:
            results = store.query_recent_filtered(limit, entry_type, importance)
    _echo_records(results, show_session=session is None)


def _render_restoration(result: RestorationResult) -> str:
    sections = [
        ("Guidelines", result.tier1.guidelines),
        ("Implementation plans", result.tier1.implementation_plans),
        ("Key decisions", result.tier1.high_importance_decisions),
        ("Learnings", result.tier2.learnings),
        ("Recent file edits", result.tier2.file_edits),
        ("Other decisions", result.tier2.medium_decisions),
    ]
    lines = []
    for title, records in sections:
        if not records:
            continue
        lines.append(f"## {title}")
        for record in records:
            lines.append(f"- {record.content}")
        lines.append("")
    lines.append(f"({result.total_count} entries)")
    return "\n".join(lines)


@app.command()
def restore(session_id: SessionArg):
    """Print tiered context for restoring a session."""
    with _get_ledger() as ledger:
        result = ledger.restoration_context(session_id)
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return
    typer.echo(_render_restoration(result))


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    if not os.environ.get("LEDGER_VERBOSE"):
        configure_quiet_mode()
    else:
        enable_debug_mode()
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="ledger CLI", home=_home_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
