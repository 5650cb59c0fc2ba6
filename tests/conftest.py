"""
Shared pytest fixtures for onui tests.

Every test gets its own data directory (via ONUI_DATA_DIR) so nothing
touches the real per-user store, config or logs.
"""

from pathlib import Path
from typing import Any

import pytest

from onui.repository import StoreRepository


def make_annotation(id: str, updated_at: int = 1000, **fields: Any) -> dict:
    """Build a minimal annotation record as the extension would push it."""
    annotation = {
        "id": id,
        "comment": f"comment for {id}",
        "selector": f"#{id}",
        "status": "pending",
        "intent": "fix",
        "severity": "suggestion",
        "createdAt": updated_at,
        "updatedAt": updated_at,
    }
    annotation.update(fields)
    return annotation


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Point every path helper at a temp directory."""
    data_dir = tmp_path / "onui-data"
    monkeypatch.setenv("ONUI_DATA_DIR", str(data_dir))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.delenv("ONUI_STORE_PATH", raising=False)
    return data_dir


@pytest.fixture
def store_path(tmp_path) -> Path:
    return tmp_path / "store.v1.json"


@pytest.fixture
def repository(store_path) -> StoreRepository:
    # Small lock budget keeps timeout paths fast
    return StoreRepository(store_path, lock_attempts=20, lock_retry_delay=0.005)
