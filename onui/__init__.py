"""
onUI local store

Persists browser page annotations outside the extension sandbox and keeps
them synchronized with edits made by other local processes.

Quick Start:
    from onui import StoreRepository
    from onui.config import get_default_store_path

    repo = StoreRepository(get_default_store_path())
    repo.upsert_page_snapshot("https://example.com/a", "Example", annotations)
    repo.update_annotation_metadata("ann-1", {"status": "resolved"})
    repo.get_changes_since(0)

CLI Usage:
    onui setup          # register the native-messaging host
    onui doctor         # health checks
    onui mcp            # MCP stdio server
    onui native-host    # spawned by the browser

Environment Variables:
    ONUI_DATA_DIR    - Override the per-user data directory
    ONUI_STORE_PATH  - Override the store file location
    ONUI_VERBOSE     - Set to 1 for debug logging on stderr
"""

from .errors import (
    AnnotationNotFoundError,
    LockTimeoutError,
    NativeTransportError,
    OnuiError,
    ProtocolError,
    StoreError,
    UpdateConflictError,
)
from .repository import StoreRepository
from .types import ChangeRecord, PageRecord, StoreSnapshot, normalize_url

__version__ = "0.1.0"
__all__ = [
    "StoreRepository",
    "StoreSnapshot",
    "PageRecord",
    "ChangeRecord",
    "normalize_url",
    "OnuiError",
    "StoreError",
    "AnnotationNotFoundError",
    "UpdateConflictError",
    "LockTimeoutError",
    "ProtocolError",
    "NativeTransportError",
]
