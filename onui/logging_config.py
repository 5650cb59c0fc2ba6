"""
Logging configuration for onui.

The native host speaks its protocol on stdout, so nothing here may ever log
there: console output goes to stderr, persistent output to a rotating file.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


OPS_LOG_FILENAME = "onui-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Keep onui and library output to warnings and above.

    Args:
        quiet: If True, suppress verbose output. If False, show info.
    """
    level = logging.WARNING if quiet else logging.INFO
    if quiet:
        warnings.filterwarnings("ignore", category=DeprecationWarning)
    logging.getLogger("onui").setLevel(level)
    logging.getLogger("mcp").setLevel(logging.WARNING if quiet else logging.INFO)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("onui").setLevel(logging.DEBUG)


def configure_ops_log(data_dir):
    """Configure a persistent operations log in the data directory.

    Writes to {data_dir}/onui-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so callers can remove it on shutdown.
    """
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    log_path = data_dir / OPS_LOG_FILENAME

    onui_logger = logging.getLogger("onui")
    for existing in onui_logger.handlers:
        if (isinstance(existing, RotatingFileHandler)
                and Path(existing.baseFilename) == log_path.resolve()):
            return existing

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    onui_logger.addHandler(handler)
    # Ensure onui logger allows INFO through even in quiet mode
    if onui_logger.level == logging.NOTSET or onui_logger.level > logging.INFO:
        onui_logger.setLevel(logging.INFO)

    return handler
