"""
MCP stdio server for onui: annotation tools for local AI agents.

Exposes StoreRepository read and metadata-update operations as MCP tools,
so an agent can triage annotations while the browser extension picks up
its edits through the change-log pull.

Usage:
    onui mcp                              # stdio server (via CLI)
    claude mcp add onui -- onui mcp       # Claude Code integration

All repository calls are serialized through a single asyncio.Lock.
Cross-process safety is handled by the store's file lock.
"""

import asyncio
import json
from typing import Annotated, Any, Literal, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field, ValidationError

from .errors import OnuiError
from .protocol import MetadataPatch
from .repository import StoreRepository

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "onui",
    instructions=(
        "Browser page annotations captured with the onUI extension. "
        "List annotated pages, read and search annotations, and update "
        "their status, intent, severity or comment."
    ),
)

_repository: Optional[StoreRepository] = None
_lock = asyncio.Lock()

Status = Literal["pending", "acknowledged", "resolved", "dismissed"]
Intent = Literal["fix", "change", "question", "approve"]
Severity = Literal["blocking", "important", "suggestion"]


def _get_repository() -> StoreRepository:
    """Lazy-init the repository from config (respects ONUI_STORE_PATH).

    Must be called inside ``async with _lock``.
    """
    global _repository
    if _repository is None:
        from .config import load_or_create_config
        _repository = StoreRepository.from_config(load_or_create_config())
    return _repository


def _to_text(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _error(e: Exception) -> str:
    if isinstance(e, ValidationError):
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        return f"Error: invalid {loc}: {first.get('msg', e)}"
    return f"Error: {e}"


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_UPDATE = ToolAnnotations(destructiveHint=False, idempotentHint=False)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description="List pages that have onUI annotations in the local store.",
    annotations=_READ_ONLY,
)
async def onui_list_pages(
    limit: Annotated[int, Field(description="Maximum pages to return.", ge=0)] = 200,
    urlPrefix: Annotated[Optional[str], Field(
        description="Only pages whose normalized URL starts with this prefix.",
    )] = None,
) -> str:
    """List annotated pages, most recently updated first."""
    async with _lock:
        repository = _get_repository()
        try:
            pages = repository.list_pages(url_prefix=urlPrefix, limit=limit)
        except (OnuiError, OSError) as e:
            return _error(e)
    return _to_text(pages)


@mcp.tool(
    description="Get annotations for a specific page URL.",
    annotations=_READ_ONLY,
)
async def onui_get_annotations(
    pageUrl: Annotated[str, Field(description="Page URL (fragment and trailing slash ignored).")],
    includeResolved: Annotated[bool, Field(
        description="Include annotations whose status is resolved.",
    )] = True,
) -> str:
    """Annotations on one page."""
    async with _lock:
        repository = _get_repository()
        try:
            annotations = repository.get_annotations(pageUrl, include_resolved=includeResolved)
        except (OnuiError, OSError) as e:
            return _error(e)
    return _to_text(annotations)


@mcp.tool(
    description="Search annotations across the local store with optional filters.",
    annotations=_READ_ONLY,
)
async def onui_search_annotations(
    query: Annotated[str, Field(
        description="Case-insensitive text matched against comment, selector, element path and text.",
    )],
    pageUrl: Annotated[Optional[str], Field(description="Restrict to one page.")] = None,
    status: Annotated[Optional[Status], Field(description="Exact status.")] = None,
    severity: Annotated[Optional[Severity], Field(description="Exact severity.")] = None,
    intent: Annotated[Optional[Intent], Field(description="Exact intent.")] = None,
    limit: Annotated[int, Field(description="Maximum results.", ge=0)] = 100,
) -> str:
    """Search annotations."""
    async with _lock:
        repository = _get_repository()
        try:
            results = repository.search_annotations(
                query, page_url=pageUrl, status=status,
                severity=severity, intent=intent, limit=limit,
            )
        except (OnuiError, OSError) as e:
            return _error(e)
    return _to_text(results)


@mcp.tool(
    description=(
        "Update metadata for a single annotation (status/intent/severity/comment). "
        "Pass expectedUpdatedAt to reject the update if the annotation changed since you read it."
    ),
    annotations=_UPDATE,
)
async def onui_update_annotation_metadata(
    id: Annotated[str, Field(description="Annotation id.")],
    status: Annotated[Optional[Status], Field(description="New status.")] = None,
    intent: Annotated[Optional[Intent], Field(description="New intent.")] = None,
    severity: Annotated[Optional[Severity], Field(description="New severity.")] = None,
    comment: Annotated[Optional[str], Field(description="New comment text.")] = None,
    expectedUpdatedAt: Annotated[Optional[int], Field(
        description="updatedAt value last seen for this annotation (optimistic lock).",
    )] = None,
) -> str:
    """Update one annotation's metadata."""
    if not id:
        return "Error: id is required"
    try:
        patch = MetadataPatch(status=status, intent=intent, severity=severity, comment=comment)
    except ValidationError as e:
        return _error(e)

    async with _lock:
        repository = _get_repository()
        try:
            updated = repository.update_annotation_metadata(
                id, patch.to_patch(), expected_updated_at=expectedUpdatedAt,
            )
        except (OnuiError, OSError, ValueError) as e:
            return _error(e)
    return _to_text(updated)


@mcp.tool(
    description=(
        "Bulk update metadata for multiple annotations. "
        "All-or-nothing: if any id is unknown, no annotation is changed."
    ),
    annotations=_UPDATE,
)
async def onui_bulk_update_annotation_metadata(
    ids: Annotated[list[str], Field(description="Annotation ids to update.")],
    patch: Annotated[dict[str, Any], Field(
        description='Fields to set, e.g. {"status": "resolved", "severity": "important"}.',
    )],
) -> str:
    """Apply one metadata patch to several annotations."""
    if not ids:
        return "Error: ids must be a non-empty array"
    try:
        validated = MetadataPatch.model_validate(patch)
    except ValidationError as e:
        return _error(e)

    async with _lock:
        repository = _get_repository()
        try:
            updated = repository.bulk_update_annotation_metadata(ids, validated.to_patch())
        except (OnuiError, OSError, ValueError) as e:
            return _error(e)
    return _to_text(updated)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # anyio's stdin reader shields the blocking readline from cancellation,
    # so the first Ctrl+C would otherwise be swallowed.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
