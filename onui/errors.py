"""
Exceptions for the onui store and sync layers, plus error-log utilities.

The CLI logs full stack traces to a file for debugging while showing clean
one-line messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class OnuiError(Exception):
    """Base class for all onui errors."""


class StoreError(OnuiError):
    """Store-level failure (unreadable file, bad input to a transform)."""


class AnnotationNotFoundError(StoreError):
    """Referenced annotation id does not exist."""

    def __init__(self, annotation_id: str):
        super().__init__(f"Annotation not found: {annotation_id}")
        self.annotation_id = annotation_id


class UpdateConflictError(StoreError):
    """Optimistic-lock mismatch between expected and stored updatedAt."""

    def __init__(self, annotation_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"Update conflict for annotation {annotation_id}: "
            f"expected updatedAt {expected}, found {actual}"
        )
        self.annotation_id = annotation_id
        self.expected = expected
        self.actual = actual


class LockTimeoutError(StoreError):
    """Store lock not acquired within the retry budget. Safe to retry."""

    def __init__(self, lock_path: Path, attempts: int):
        super().__init__(f"Failed to acquire file lock {lock_path} after {attempts} attempts")
        self.lock_path = lock_path
        self.attempts = attempts


class ProtocolError(OnuiError):
    """Malformed native-messaging frame or envelope."""


class NativeTransportError(OnuiError):
    """Failure talking to the native host (not installed, crashed, ok:false)."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting ONUI_DATA_DIR."""
    from .config import get_data_dir
    try:
        return get_data_dir() / "onui-errors.log"
    except RuntimeError:
        return Path.home() / ".onui" / "onui-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
