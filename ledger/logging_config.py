"""
Logging configuration for the ledger.

Quiet by default for CLI use; --verbose or LEDGER_VERBOSE=1 turns on debug
output to stderr. The ops log records flushes and recoveries regardless.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress noisy output.

    Args:
        quiet: If True, suppress warnings and sub-WARNING library logging.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("ledger").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("ledger").setLevel(logging.DEBUG)


def configure_ops_log(log_path: Path) -> RotatingFileHandler:
    """Configure a persistent operations log.

    Rotating file handler (1MB max, 3 backups) on the ``ledger`` logger.
    Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    ledger_logger = logging.getLogger("ledger")
    ledger_logger.addHandler(handler)
    # Let INFO through even in quiet mode
    if ledger_logger.level == logging.NOTSET or ledger_logger.level > logging.INFO:
        ledger_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: logging.Handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    logging.getLogger("ledger").removeHandler(handler)
    handler.close()
