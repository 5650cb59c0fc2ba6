"""
Pure transforms over StoreSnapshot.

Every function takes a snapshot and returns a new one (plus a result where
relevant). Nothing here does I/O or mutates its inputs; persistence and
locking live in ``onui.store``.
"""

import uuid
from dataclasses import replace
from typing import Any, Iterable, Mapping, Optional

from .errors import AnnotationNotFoundError, UpdateConflictError
from .types import (
    CHANGE_LOG_LIMIT,
    METADATA_FIELDS,
    STORE_VERSION,
    ChangeRecord,
    PageRecord,
    StoreSnapshot,
    normalize_url,
    now_ms,
)


def create_empty_store(now: Optional[int] = None) -> StoreSnapshot:
    return StoreSnapshot(
        version=STORE_VERSION,
        updated_at=now_ms() if now is None else now,
    )


def ensure_store_shape(candidate: Any, now: Optional[int] = None) -> StoreSnapshot:
    """Coerce a decoded JSON document into a snapshot.

    Anything that isn't a mapping, or carries a different schema version,
    yields a fresh empty store. No migration is attempted.
    """
    if not isinstance(candidate, Mapping):
        return create_empty_store(now)
    if candidate.get("version") != STORE_VERSION:
        return create_empty_store(now)
    return StoreSnapshot.from_dict(dict(candidate))


def clean_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a metadata patch, dropping None values.

    Raises:
        ValueError: Unknown field or value outside the field's enumeration
    """
    cleaned: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in METADATA_FIELDS:
            raise ValueError(f"Unsupported metadata field: {key!r}")
        if value is None:
            continue
        allowed = METADATA_FIELDS[key]
        if allowed is None:
            if not isinstance(value, str):
                raise ValueError(f"Metadata field {key!r} must be a string")
        elif value not in allowed:
            raise ValueError(
                f"Invalid {key} {value!r} (expected one of: {', '.join(allowed)})"
            )
        cleaned[key] = value
    return cleaned


def _updated_at(record: Mapping[str, Any]) -> int:
    value = record.get("updatedAt", 0)
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def _detach(pages: dict[str, PageRecord], page_url: Any, annotation_id: str) -> None:
    """Drop an id from a page's list in place, removing the page once empty."""
    page = pages.get(page_url)
    if page is None or annotation_id not in page.annotation_ids:
        return
    remaining = tuple(i for i in page.annotation_ids if i != annotation_id)
    if remaining:
        pages[page_url] = replace(page, annotation_ids=remaining)
    else:
        del pages[page_url]


def upsert_page_snapshot(
    store: StoreSnapshot,
    page_url: str,
    page_title: str,
    annotations: Iterable[Mapping[str, Any]],
    now: Optional[int] = None,
) -> StoreSnapshot:
    """Replace the authoritative annotation list for one page.

    Annotations previously listed on the page but absent from the input are
    deleted. Incoming records lose to a stored record with a strictly newer
    ``updatedAt`` (last write wins). An id listed on another page moves to
    this one. An empty list removes the page.
    """
    now = now_ms() if now is None else now
    url = normalize_url(page_url)
    current = store.pages.get(url)
    removed = set(current.annotation_ids) if current else set()
    annotations_by_id = dict(store.annotations_by_id)
    pages = dict(store.pages)
    next_ids: list[str] = []

    for annotation in annotations:
        annotation_id = str(annotation["id"])
        if annotation_id in next_ids:
            continue
        next_ids.append(annotation_id)
        removed.discard(annotation_id)

        existing = annotations_by_id.get(annotation_id)
        if existing is not None and existing.get("pageUrl") != url:
            _detach(pages, existing.get("pageUrl"), annotation_id)

        title = page_title or annotation.get("pageTitle", "")
        if existing is not None and _updated_at(existing) > _updated_at(annotation):
            annotations_by_id[annotation_id] = {**existing, "pageUrl": url, "pageTitle": title}
            continue

        record = dict(annotation)
        record["pageUrl"] = url
        record["pageTitle"] = title
        annotations_by_id[annotation_id] = record

    for annotation_id in removed:
        annotations_by_id.pop(annotation_id, None)

    if next_ids:
        pages[url] = PageRecord(
            url=url,
            title=page_title,
            annotation_ids=tuple(next_ids),
            updated_at=now,
        )
    else:
        pages.pop(url, None)

    return replace(store, updated_at=now, pages=pages, annotations_by_id=annotations_by_id)


def delete_page_snapshot(
    store: StoreSnapshot, page_url: str, now: Optional[int] = None,
) -> StoreSnapshot:
    """Remove a page and every annotation listed on it. No-op if absent."""
    url = normalize_url(page_url)
    page = store.pages.get(url)
    if page is None:
        return store

    annotations_by_id = dict(store.annotations_by_id)
    for annotation_id in page.annotation_ids:
        annotations_by_id.pop(annotation_id, None)
    pages = dict(store.pages)
    del pages[url]

    return replace(
        store,
        updated_at=now_ms() if now is None else now,
        pages=pages,
        annotations_by_id=annotations_by_id,
    )


def update_annotation_metadata(
    store: StoreSnapshot,
    annotation_id: str,
    patch: Mapping[str, Any],
    expected_updated_at: Optional[int] = None,
    now: Optional[int] = None,
) -> tuple[StoreSnapshot, dict[str, Any]]:
    """Patch one annotation's metadata and record the change.

    Returns:
        (next snapshot, updated annotation record)

    Raises:
        AnnotationNotFoundError: Unknown id
        UpdateConflictError: expected_updated_at doesn't match the stored value
        ValueError: Invalid patch
    """
    annotation = store.annotations_by_id.get(annotation_id)
    if annotation is None:
        raise AnnotationNotFoundError(annotation_id)

    current_updated_at = annotation.get("updatedAt")
    if expected_updated_at is not None and current_updated_at != expected_updated_at:
        raise UpdateConflictError(annotation_id, expected_updated_at, current_updated_at)

    applied = clean_patch(patch)
    now = now_ms() if now is None else now

    updated = {**annotation, **applied, "updatedAt": now}
    change = ChangeRecord(
        id=f"{now}-{uuid.uuid4().hex[:6]}",
        annotation_id=annotation_id,
        patch=applied,
        updated_at=now,
    )

    page_url = updated.get("pageUrl", "")
    page = store.pages.get(page_url)
    pages = dict(store.pages)
    pages[page_url] = PageRecord(
        url=page_url,
        title=updated.get("pageTitle", page.title if page else ""),
        annotation_ids=page.annotation_ids if page else (annotation_id,),
        updated_at=now,
    )

    annotations_by_id = dict(store.annotations_by_id)
    annotations_by_id[annotation_id] = updated

    change_log = (*store.change_log, change)[-CHANGE_LOG_LIMIT:]

    next_store = replace(
        store,
        updated_at=now,
        pages=pages,
        annotations_by_id=annotations_by_id,
        change_log=change_log,
    )
    return next_store, updated


def get_changes_since(
    store: StoreSnapshot, since: int = 0, limit: int = 200,
) -> list[ChangeRecord]:
    """Change-log entries newer than ``since``, in append order."""
    if limit <= 0:
        return []
    changes = [change for change in store.change_log if change.updated_at > since]
    return changes[:limit]
