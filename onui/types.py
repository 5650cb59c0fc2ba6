"""
Data types for the local annotation store.

All timestamps are integer epoch milliseconds, matching what the browser
extension produces with ``Date.now()``. Records are serialized with the
extension's camelCase field names; Python attributes use snake_case.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlsplit


STORE_VERSION = 1

# Change log is capped to the most recent entries (oldest evicted first)
CHANGE_LOG_LIMIT = 5000

CHANGE_TYPE_METADATA_UPDATE = "metadata_update"

ANNOTATION_STATUSES = ("pending", "acknowledged", "resolved", "dismissed")
ANNOTATION_INTENTS = ("fix", "change", "question", "approve")
ANNOTATION_SEVERITIES = ("blocking", "important", "suggestion")

# Fields a metadata patch may touch, with their allowed values (None = free text)
METADATA_FIELDS: dict[str, Optional[tuple[str, ...]]] = {
    "status": ANNOTATION_STATUSES,
    "intent": ANNOTATION_INTENTS,
    "severity": ANNOTATION_SEVERITIES,
    "comment": None,
}

# Annotation fields searched by free-text queries
SEARCHABLE_FIELDS = ("comment", "selector", "elementPath", "textContent", "selectedText")

_DEFAULT_PORTS = {"http": 80, "https": 443}


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_url(url: str) -> str:
    """Normalize a page URL to its store key.

    Keeps origin (lowercased scheme and host, default port dropped), path and
    query. Drops the fragment and a single trailing slash on the path.
    Strings that don't parse as absolute URLs are returned unchanged.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme or not parts.hostname:
        return url

    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        host = f"{host}:{port}"

    path = parts.path
    if path.endswith("/"):
        path = path[:-1]
    query = f"?{parts.query}" if parts.query else ""
    return f"{scheme}://{host}{path}{query}"


def _int_or(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


@dataclass(frozen=True)
class PageRecord:
    """A page that has at least one annotation."""
    url: str
    title: str
    annotation_ids: tuple[str, ...]
    updated_at: int

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "annotationIds": list(self.annotation_ids),
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PageRecord":
        return cls(
            url=str(d.get("url", "")),
            title=str(d.get("title", "")),
            annotation_ids=tuple(str(i) for i in d.get("annotationIds") or ()),
            updated_at=_int_or(d.get("updatedAt"), 0),
        )


@dataclass(frozen=True)
class ChangeRecord:
    """One entry in the append-only change log."""
    id: str
    annotation_id: str
    patch: dict[str, Any]
    updated_at: int
    type: str = CHANGE_TYPE_METADATA_UPDATE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "annotationId": self.annotation_id,
            "patch": dict(self.patch),
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ChangeRecord":
        return cls(
            id=str(d.get("id", "")),
            type=str(d.get("type", CHANGE_TYPE_METADATA_UPDATE)),
            annotation_id=str(d.get("annotationId", "")),
            patch=dict(d.get("patch") or {}),
            updated_at=_int_or(d.get("updatedAt"), 0),
        )


@dataclass(frozen=True)
class StoreSnapshot:
    """
    Root aggregate of the on-disk store.

    Snapshots are treated as immutable values: schema transforms build new
    containers rather than mutating the ones held here.

    Attributes:
        version: Schema generation (STORE_VERSION)
        updated_at: Timestamp of the last mutation
        pages: Normalized URL -> PageRecord
        annotations_by_id: Annotation id -> annotation record (JSON object
            with denormalized ``pageUrl``/``pageTitle``)
        change_log: Metadata edits in append order
    """
    version: int = STORE_VERSION
    updated_at: int = 0
    pages: dict[str, PageRecord] = field(default_factory=dict)
    annotations_by_id: dict[str, dict[str, Any]] = field(default_factory=dict)
    change_log: tuple[ChangeRecord, ...] = ()

    def to_dict(self) -> dict:
        """Serialize to the JSON document shape written to disk."""
        return {
            "version": self.version,
            "updatedAt": self.updated_at,
            "pages": {url: page.to_dict() for url, page in self.pages.items()},
            "annotationsById": {k: dict(v) for k, v in self.annotations_by_id.items()},
            "changeLog": [change.to_dict() for change in self.change_log],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StoreSnapshot":
        """Deserialize from a decoded JSON document (no version check)."""
        pages = d.get("pages")
        annotations = d.get("annotationsById")
        changes = d.get("changeLog")
        return cls(
            version=_int_or(d.get("version"), STORE_VERSION),
            updated_at=_int_or(d.get("updatedAt"), now_ms()),
            pages={
                url: PageRecord.from_dict(page)
                for url, page in (pages.items() if isinstance(pages, dict) else ())
                if isinstance(page, dict)
            },
            annotations_by_id={
                k: dict(v)
                for k, v in (annotations.items() if isinstance(annotations, dict) else ())
                if isinstance(v, dict)
            },
            change_log=tuple(
                ChangeRecord.from_dict(c)
                for c in (changes if isinstance(changes, list) else ())
                if isinstance(c, dict)
            ),
        )
