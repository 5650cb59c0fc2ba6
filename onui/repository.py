"""
Store repository: page, annotation, search and metadata operations.

Reads go straight to the store file; every mutation runs inside one
``with_store`` call so it is a single locked read-modify-write.
"""

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from . import schema
from .config import DEFAULT_LOCK_ATTEMPTS, DEFAULT_LOCK_RETRY_DELAY, OnuiConfig, resolve_store_path
from .store import read_store, with_store
from .types import SEARCHABLE_FIELDS, StoreSnapshot, normalize_url

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 200
DEFAULT_SEARCH_LIMIT = 100
DEFAULT_CHANGES_LIMIT = 200


class StoreRepository:
    """Operations over one store file, shared by the native host, MCP and CLI."""

    def __init__(
        self,
        store_path: Path,
        *,
        lock_attempts: int = DEFAULT_LOCK_ATTEMPTS,
        lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
    ):
        self._store_path = Path(store_path)
        self._lock_attempts = lock_attempts
        self._lock_retry_delay = lock_retry_delay

    @classmethod
    def from_config(cls, config: OnuiConfig) -> "StoreRepository":
        return cls(
            resolve_store_path(config),
            lock_attempts=config.store.lock_attempts,
            lock_retry_delay=config.store.lock_retry_delay,
        )

    @property
    def store_path(self) -> Path:
        return self._store_path

    def read(self) -> StoreSnapshot:
        return read_store(self._store_path)

    def _mutate(self, fn):
        return with_store(
            self._store_path,
            fn,
            lock_attempts=self._lock_attempts,
            lock_retry_delay=self._lock_retry_delay,
        )

    # -- Page snapshots --

    def upsert_page_snapshot(
        self,
        page_url: str,
        page_title: str,
        annotations: Iterable[Mapping[str, Any]],
    ) -> dict[str, Any]:
        """Replace the annotation list for a page (empty list deletes it)."""
        url = normalize_url(page_url)
        annotations = list(annotations)

        def apply(store: StoreSnapshot):
            return schema.upsert_page_snapshot(store, url, page_title, annotations), None

        self._mutate(apply)
        logger.info("Upserted page %s (%d annotations)", url, len(annotations))
        return {"pageUrl": url, "annotationCount": len(annotations)}

    def delete_page_snapshot(self, page_url: str) -> dict[str, Any]:
        url = normalize_url(page_url)
        self._mutate(lambda store: (schema.delete_page_snapshot(store, url), None))
        logger.info("Deleted page %s", url)
        return {"pageUrl": url}

    # -- Queries --

    def list_pages(
        self, url_prefix: Optional[str] = None, limit: int = DEFAULT_PAGE_LIMIT,
    ) -> list[dict[str, Any]]:
        """Pages sorted most recently updated first."""
        store = self.read()
        pages = [
            {
                "url": page.url,
                "title": page.title,
                "updatedAt": page.updated_at,
                "annotationCount": len(page.annotation_ids),
            }
            for page in store.pages.values()
            if not url_prefix or page.url.startswith(url_prefix)
        ]
        pages.sort(key=lambda p: p["updatedAt"], reverse=True)
        return pages[:max(0, limit)]

    def get_annotations(
        self, page_url: str, include_resolved: bool = True,
    ) -> list[dict[str, Any]]:
        """Annotations on a page in page order, optionally without resolved ones."""
        store = self.read()
        page = store.pages.get(normalize_url(page_url))
        if page is None:
            return []

        results = []
        for annotation_id in page.annotation_ids:
            annotation = store.annotations_by_id.get(annotation_id)
            if annotation is None:
                continue
            if not include_resolved and annotation.get("status") == "resolved":
                continue
            results.append(annotation)
        return results

    def search_annotations(
        self,
        query: str,
        *,
        page_url: Optional[str] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        intent: Optional[str] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[dict[str, Any]]:
        """
        Case-insensitive substring search across annotation text fields.

        Args:
            query: Text to find in comment/selector/elementPath/textContent/selectedText
            page_url: Only annotations on this page (compared after normalization)
            status: Exact status match
            severity: Exact severity match
            intent: Exact intent match
            limit: Maximum results, most recently updated first
        """
        store = self.read()
        needle = query.strip().lower()
        wanted_url = normalize_url(page_url) if page_url else None

        matches = []
        for annotation in store.annotations_by_id.values():
            if wanted_url and normalize_url(annotation.get("pageUrl", "")) != wanted_url:
                continue
            if status and annotation.get("status") != status:
                continue
            if severity and annotation.get("severity") != severity:
                continue
            if intent and annotation.get("intent") != intent:
                continue

            haystack = " ".join(
                str(annotation.get(f) or "") for f in SEARCHABLE_FIELDS
            ).lower()
            if needle in haystack:
                matches.append(annotation)

        matches.sort(key=lambda a: a.get("updatedAt", 0), reverse=True)
        return matches[:max(0, limit)]

    # -- Metadata updates --

    def update_annotation_metadata(
        self,
        annotation_id: str,
        patch: Mapping[str, Any],
        expected_updated_at: Optional[int] = None,
    ) -> dict[str, Any]:
        """Patch one annotation. Raises AnnotationNotFoundError / UpdateConflictError."""
        def apply(store: StoreSnapshot):
            return schema.update_annotation_metadata(
                store, annotation_id, patch, expected_updated_at,
            )

        updated = self._mutate(apply)
        logger.info("Updated metadata for %s: %s", annotation_id, dict(patch))
        return updated

    def bulk_update_annotation_metadata(
        self, annotation_ids: Iterable[str], patch: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """Apply one patch to several annotations.

        All patches are applied to the in-memory snapshot before the single
        write, so a missing id fails the whole batch with nothing persisted.
        """
        annotation_ids = list(annotation_ids)

        def apply(store: StoreSnapshot):
            current = store
            updated = []
            for annotation_id in annotation_ids:
                current, record = schema.update_annotation_metadata(current, annotation_id, patch)
                updated.append(record)
            return current, updated

        results = self._mutate(apply)
        logger.info("Bulk-updated metadata for %d annotations: %s", len(results), dict(patch))
        return results

    # -- Sync feed --

    def get_changes_since(
        self, since: int = 0, limit: int = DEFAULT_CHANGES_LIMIT,
    ) -> dict[str, Any]:
        """Change-log delta after ``since`` plus the cursor to resume from."""
        store = self.read()
        changes = schema.get_changes_since(store, since, limit)
        latest = changes[-1].updated_at if changes else since
        return {
            "changes": [change.to_dict() for change in changes],
            "latest": latest,
        }
