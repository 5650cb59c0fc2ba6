"""
Tests for the MCP stdio server tool functions.

Tests the tool layer in isolation by mocking StoreRepository: verifies
parameter mapping, return formatting, and edge cases for all 5 tools.
A final class runs the tools against a real store file.
"""

import json
import tomllib
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import make_annotation
from onui.errors import AnnotationNotFoundError, UpdateConflictError
from onui.repository import StoreRepository


@pytest.fixture
def mock_repository():
    """Mock StoreRepository with default return values."""
    repository = MagicMock()
    repository.list_pages.return_value = []
    repository.get_annotations.return_value = []
    repository.search_annotations.return_value = []
    repository.update_annotation_metadata.return_value = make_annotation("a1")
    repository.bulk_update_annotation_metadata.return_value = []
    return repository


@pytest.fixture(autouse=True)
def patch_repository(mock_repository):
    """Point the module-level repository at the mock for all tests."""
    import onui.mcp as mcp_mod
    mcp_mod._repository = mock_repository
    yield
    mcp_mod._repository = None


# ---------------------------------------------------------------------------
# Read tools
# ---------------------------------------------------------------------------

class TestReadTools:

    @pytest.mark.asyncio
    async def test_list_pages(self, mock_repository):
        from onui.mcp import onui_list_pages
        mock_repository.list_pages.return_value = [{"url": "https://e.com", "annotationCount": 1}]
        result = await onui_list_pages(limit=5, urlPrefix="https://e")
        assert json.loads(result) == [{"url": "https://e.com", "annotationCount": 1}]
        mock_repository.list_pages.assert_called_once_with(url_prefix="https://e", limit=5)

    @pytest.mark.asyncio
    async def test_get_annotations(self, mock_repository):
        from onui.mcp import onui_get_annotations
        await onui_get_annotations("https://e.com/a", includeResolved=False)
        mock_repository.get_annotations.assert_called_once_with(
            "https://e.com/a", include_resolved=False,
        )

    @pytest.mark.asyncio
    async def test_search(self, mock_repository):
        from onui.mcp import onui_search_annotations
        mock_repository.search_annotations.return_value = [make_annotation("a1")]
        result = await onui_search_annotations("button", status="pending", limit=3)
        assert json.loads(result)[0]["id"] == "a1"
        mock_repository.search_annotations.assert_called_once_with(
            "button", page_url=None, status="pending",
            severity=None, intent=None, limit=3,
        )

    @pytest.mark.asyncio
    async def test_store_error_is_returned_as_text(self, mock_repository):
        from onui.mcp import onui_list_pages
        from onui.errors import StoreError
        mock_repository.list_pages.side_effect = StoreError("Store file is not valid JSON")
        result = await onui_list_pages()
        assert result == "Error: Store file is not valid JSON"


# ---------------------------------------------------------------------------
# Update tools
# ---------------------------------------------------------------------------

class TestUpdateTools:

    @pytest.mark.asyncio
    async def test_update_passes_only_set_fields(self, mock_repository):
        from onui.mcp import onui_update_annotation_metadata
        result = await onui_update_annotation_metadata(
            "a1", status="resolved", expectedUpdatedAt=1000,
        )
        assert json.loads(result)["id"] == "a1"
        mock_repository.update_annotation_metadata.assert_called_once_with(
            "a1", {"status": "resolved"}, expected_updated_at=1000,
        )

    @pytest.mark.asyncio
    async def test_update_requires_id(self, mock_repository):
        from onui.mcp import onui_update_annotation_metadata
        assert await onui_update_annotation_metadata("") == "Error: id is required"
        mock_repository.update_annotation_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_conflict(self, mock_repository):
        from onui.mcp import onui_update_annotation_metadata
        mock_repository.update_annotation_metadata.side_effect = UpdateConflictError("a1", 1, 2)
        result = await onui_update_annotation_metadata("a1", status="resolved", expectedUpdatedAt=1)
        assert result.startswith("Error: Update conflict for annotation a1")

    @pytest.mark.asyncio
    async def test_update_rejects_bad_enum(self, mock_repository):
        from onui.mcp import onui_update_annotation_metadata
        result = await onui_update_annotation_metadata("a1", status="finished")
        assert result.startswith("Error: invalid status")
        mock_repository.update_annotation_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_bulk_update(self, mock_repository):
        from onui.mcp import onui_bulk_update_annotation_metadata
        await onui_bulk_update_annotation_metadata(["a1", "a2"], {"severity": "important"})
        mock_repository.bulk_update_annotation_metadata.assert_called_once_with(
            ["a1", "a2"], {"severity": "important"},
        )

    @pytest.mark.asyncio
    async def test_bulk_requires_ids(self, mock_repository):
        from onui.mcp import onui_bulk_update_annotation_metadata
        result = await onui_bulk_update_annotation_metadata([], {"status": "resolved"})
        assert result == "Error: ids must be a non-empty array"

    @pytest.mark.asyncio
    async def test_bulk_rejects_unknown_field(self, mock_repository):
        from onui.mcp import onui_bulk_update_annotation_metadata
        result = await onui_bulk_update_annotation_metadata(["a1"], {"pageUrl": "x"})
        assert result.startswith("Error: invalid pageUrl")
        mock_repository.bulk_update_annotation_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_bulk_not_found(self, mock_repository):
        from onui.mcp import onui_bulk_update_annotation_metadata
        mock_repository.bulk_update_annotation_metadata.side_effect = AnnotationNotFoundError("zz")
        result = await onui_bulk_update_annotation_metadata(["a1", "zz"], {"status": "resolved"})
        assert result == "Error: Annotation not found: zz"


# ---------------------------------------------------------------------------
# Against a real store
# ---------------------------------------------------------------------------

class TestWithStore:

    @pytest.fixture
    def real_repository(self, store_path):
        import onui.mcp as mcp_mod
        repository = StoreRepository(store_path)
        repository.upsert_page_snapshot("https://e.com/a", "A", [
            make_annotation("a1", updated_at=100, comment="Header overlaps nav"),
        ])
        mcp_mod._repository = repository
        return repository

    @pytest.mark.asyncio
    async def test_update_then_read_back(self, real_repository):
        from onui.mcp import onui_get_annotations, onui_update_annotation_metadata
        await onui_update_annotation_metadata("a1", severity="blocking", expectedUpdatedAt=100)
        annotations = json.loads(await onui_get_annotations("https://e.com/a/"))
        assert annotations[0]["severity"] == "blocking"
        assert real_repository.get_changes_since(0)["changes"][0]["patch"] == {
            "severity": "blocking",
        }

    @pytest.mark.asyncio
    async def test_stale_expected_updated_at(self, real_repository):
        from onui.mcp import onui_update_annotation_metadata
        result = await onui_update_annotation_metadata("a1", status="resolved", expectedUpdatedAt=5)
        assert "conflict" in result
        assert real_repository.get_annotations("https://e.com/a")[0]["status"] == "pending"


class TestServerDependency:

    def test_mcp_pinned_below_next_major(self):
        """The server is built on mcp.server.fastmcp, which the 1.x line provides."""
        pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
        dependencies = tomllib.loads(pyproject.read_text())["project"]["dependencies"]
        assert "mcp>=1.2,<2" in dependencies

    def test_server_is_fastmcp(self):
        from mcp.server.fastmcp import FastMCP

        import onui.mcp as mcp_mod
        assert isinstance(mcp_mod.mcp, FastMCP)
