"""
Sync client: keeps a local annotation cache converged with the native host.

Push path: a local mutation sends the page's full annotation list (or a
delete when it becomes empty). Pull path: a recurring timer asks for
change-log entries after a persisted cursor and merges them into the cache
with the same last-write-wins rule the store applies.

Sync failures never propagate to the caller that triggered them. They are
classified and recorded in the client's SyncStatus.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

from .config import DEFAULT_PULL_INTERVAL, DEFAULT_PULL_LIMIT, OnuiConfig
from .errors import NativeTransportError
from .protocol import (
    REQUEST_DELETE_PAGE,
    REQUEST_GET_CHANGES_SINCE,
    REQUEST_PING,
    REQUEST_UPSERT_PAGE_SNAPSHOT,
    NativeResponse,
    encode_frame,
    read_frame,
)
from .store import write_json_atomic
from .types import CHANGE_TYPE_METADATA_UPDATE, METADATA_FIELDS, normalize_url, now_ms

logger = logging.getLogger(__name__)

PULL_SCHEDULE_NAME = "onui_native_pull"
DEFAULT_TRANSPORT_TIMEOUT = 10.0  # seconds

# Browser error texts meaning the host isn't installed or registered
HOST_UNAVAILABLE_MARKERS = (
    "Specified native messaging host not found",
    "No such native application",
    "Access to native messaging host denied",
)

STATUS_IDLE = "idle"
STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_UNAVAILABLE = "unavailable"


def classify_error(message: str) -> str:
    """'unavailable' for a missing/unregistered host, 'error' for anything else."""
    if any(marker in message for marker in HOST_UNAVAILABLE_MARKERS):
        return STATUS_UNAVAILABLE
    return STATUS_ERROR


def next_request_id(prefix: str) -> str:
    return f"{prefix}-{now_ms()}-{uuid.uuid4().hex[:6]}"


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SyncStatus:
    """Sync state surfaced to the UI."""
    status: str = STATUS_IDLE
    last_sync_at: Optional[int] = None
    last_pull_at: Optional[int] = None
    last_error: Optional[str] = None
    cursor: int = 0

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "lastSyncAt": self.last_sync_at,
            "lastPullAt": self.last_pull_at,
            "lastError": self.last_error,
            "cursor": self.cursor,
        }


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class NativeTransport(Protocol):
    """Sends one request envelope and returns the response's ``data``."""

    def send(self, message: dict) -> Any: ...


class SubprocessTransport:
    """
    Talks to the native host the way the browser does: one process per message.

    Writes a single frame to the child's stdin, closes it, and decodes the
    first response frame from stdout.
    """

    def __init__(self, command: Sequence[str], *, timeout: float = DEFAULT_TRANSPORT_TIMEOUT):
        self._command = list(command)
        self._timeout = timeout

    def send(self, message: dict) -> Any:
        try:
            proc = subprocess.run(
                self._command,
                input=encode_frame(message),
                capture_output=True,
                timeout=self._timeout,
                shell=os.name == "nt",
            )
        except FileNotFoundError as e:
            raise NativeTransportError("Specified native messaging host not found.") from e
        except PermissionError as e:
            raise NativeTransportError("Access to native messaging host denied.") from e
        except subprocess.TimeoutExpired as e:
            raise NativeTransportError(
                f"Native host did not respond within {self._timeout:.0f}s"
            ) from e

        payload = read_frame(proc.stdout)
        if payload is None:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            detail = f": {stderr.splitlines()[-1]}" if stderr else ""
            raise NativeTransportError(
                f"Native host exited with code {proc.returncode} without a response{detail}"
            )
        try:
            response = NativeResponse.from_dict(json.loads(payload.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError) as e:
            raise NativeTransportError("Native host returned an invalid response") from e
        if not response.ok:
            raise NativeTransportError(response.error or "Native host request failed")
        return response.data


# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------

class LocalAnnotationCache:
    """
    Client-side annotation cache keyed by normalized page URL.

    Keeps an annotation id -> page URL index for applying pulled changes,
    and persists the pull cursor. With ``path=None`` the cache lives in
    memory only.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._pages: dict[str, list[dict]] = {}
        self._index: dict[str, str] = {}
        self._cursor = 0
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable sync cache %s: %s", self._path, e)
            return
        pages = data.get("annotations") if isinstance(data, dict) else None
        if not isinstance(pages, dict):
            pages = {}
        self._pages = {
            url: list(items) for url, items in pages.items() if isinstance(items, list) and items
        }
        cursor = data.get("cursor", 0) if isinstance(data, dict) else 0
        self._cursor = cursor if isinstance(cursor, int) else 0
        self._reindex()

    def _reindex(self) -> None:
        self._index = {
            a["id"]: url for url, items in self._pages.items()
            for a in items if isinstance(a, dict) and "id" in a
        }

    def _save(self) -> None:
        if self._path is None:
            return
        write_json_atomic(self._path, {"annotations": self._pages, "cursor": self._cursor})

    def get_annotations(self, url: str) -> list[dict]:
        with self._lock:
            return [dict(a) for a in self._pages.get(normalize_url(url), [])]

    def set_annotations(self, url: str, annotations: list[dict]) -> None:
        """Replace a page's list; an empty list removes the page."""
        with self._lock:
            key = normalize_url(url)
            if annotations:
                self._pages[key] = [dict(a) for a in annotations]
            else:
                self._pages.pop(key, None)
            self._reindex()
            self._save()

    def update_annotation(
        self, annotation_id: str, fn: Callable[[dict], Optional[dict]],
    ) -> bool:
        """Replace one cached annotation with ``fn(existing)`` under one lock hold.

        ``fn`` returns the new record, or None to leave the cache untouched.
        It runs with the cache lock held and must not call back into the cache.
        """
        with self._lock:
            url = self._index.get(annotation_id)
            items = self._pages.get(url) if url is not None else None
            if not items:
                return False
            for index, existing in enumerate(items):
                if not isinstance(existing, dict) or existing.get("id") != annotation_id:
                    continue
                updated = fn(dict(existing))
                if updated is None:
                    return False
                items[index] = dict(updated)
                self._save()
                return True
            return False

    def get_all(self) -> dict[str, list[dict]]:
        with self._lock:
            return {url: [dict(a) for a in items] for url, items in self._pages.items()}

    def find_page_url(self, annotation_id: str) -> Optional[str]:
        with self._lock:
            return self._index.get(annotation_id)

    def get_cursor(self) -> int:
        with self._lock:
            return self._cursor

    def set_cursor(self, cursor: int) -> None:
        with self._lock:
            self._cursor = cursor
            self._save()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class PullScheduler:
    """Named fixed-period timers. Re-scheduling a name replaces, never stacks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._generation: dict[str, int] = {}

    def schedule(self, name: str, interval: float, fn: Callable[[], Any]) -> None:
        with self._lock:
            self._cancel_locked(name)
            generation = self._generation.get(name, 0) + 1
            self._generation[name] = generation
            self._start_locked(name, interval, fn, generation)

    def _start_locked(self, name, interval, fn, generation) -> None:
        timer = threading.Timer(interval, self._fire, args=(name, interval, fn, generation))
        timer.daemon = True
        self._timers[name] = timer
        timer.start()

    def _fire(self, name, interval, fn, generation) -> None:
        try:
            fn()
        except Exception:
            logger.exception("Scheduled %s failed", name)
        with self._lock:
            # A newer schedule() or cancel() for this name supersedes us
            if self._generation.get(name) == generation and name in self._timers:
                self._start_locked(name, interval, fn, generation)

    def _cancel_locked(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def cancel(self, name: str) -> None:
        with self._lock:
            self._cancel_locked(name)

    def cancel_all(self) -> None:
        with self._lock:
            for name in list(self._timers):
                self._cancel_locked(name)

    def is_scheduled(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SyncClient:
    """
    Push/pull synchronization between a local cache and the native host.

    Args:
        transport: How requests reach the host
        cache: Local annotation cache (also stores the pull cursor)
        scheduler: Recurring pull trigger; a private one is created if omitted
        pull_interval: Seconds between scheduled pulls
        pull_limit: Maximum changes requested per pull
    """

    def __init__(
        self,
        transport: NativeTransport,
        cache: Optional[LocalAnnotationCache] = None,
        *,
        scheduler: Optional[PullScheduler] = None,
        pull_interval: float = DEFAULT_PULL_INTERVAL,
        pull_limit: int = DEFAULT_PULL_LIMIT,
    ):
        self._transport = transport
        self._cache = cache if cache is not None else LocalAnnotationCache()
        self._scheduler = scheduler if scheduler is not None else PullScheduler()
        self._pull_interval = pull_interval
        self._pull_limit = pull_limit
        self._status_lock = threading.Lock()
        self._status = SyncStatus(cursor=self._cache.get_cursor())

    @classmethod
    def from_config(
        cls,
        config: OnuiConfig,
        transport: NativeTransport,
        cache: Optional[LocalAnnotationCache] = None,
        *,
        scheduler: Optional[PullScheduler] = None,
    ) -> "SyncClient":
        return cls(
            transport,
            cache,
            scheduler=scheduler,
            pull_interval=config.sync.pull_interval,
            pull_limit=config.sync.pull_limit,
        )

    @property
    def status(self) -> SyncStatus:
        with self._status_lock:
            return self._status

    @property
    def cache(self) -> LocalAnnotationCache:
        return self._cache

    def _set_status(self, **changes) -> None:
        with self._status_lock:
            self._status = replace(self._status, **changes)

    def _record_failure(self, operation: str, error: Exception, **context) -> None:
        message = str(error) or type(error).__name__
        self._set_status(status=classify_error(message), last_error=message)
        logger.warning("%s failed: %s %s", operation, message, context or "")

    def _request(self, type: str, prefix: str, payload: Any) -> Any:
        return self._transport.send({
            "type": type,
            "requestId": next_request_id(prefix),
            "sentAt": now_ms(),
            "payload": payload,
        })

    # -- Push --

    def sync_page_snapshot(self, page_url: str, annotations: list[dict]) -> bool:
        try:
            self._request(REQUEST_UPSERT_PAGE_SNAPSHOT, "upsert", {
                "pageUrl": page_url,
                "pageTitle": annotations[0].get("pageTitle", "") if annotations else "",
                "annotations": annotations,
            })
        except Exception as e:
            self._record_failure("syncPageSnapshot", e, pageUrl=page_url)
            return False
        self._set_status(status=STATUS_OK, last_sync_at=now_ms(), last_error=None)
        return True

    def delete_page_snapshot(self, page_url: str) -> bool:
        try:
            self._request(REQUEST_DELETE_PAGE, "delete", {"pageUrl": page_url})
        except Exception as e:
            self._record_failure("deletePageSnapshot", e, pageUrl=page_url)
            return False
        self._set_status(status=STATUS_OK, last_sync_at=now_ms(), last_error=None)
        return True

    def on_local_mutation(self, page_url: str, annotations: list[dict]) -> bool:
        """Record a page's new authoritative list locally, then push it."""
        self._cache.set_annotations(page_url, annotations)
        if not annotations:
            return self.delete_page_snapshot(page_url)
        return self.sync_page_snapshot(page_url, annotations)

    def resync_all_pages(self) -> None:
        for url, annotations in self._cache.get_all().items():
            if annotations:
                self.sync_page_snapshot(url, annotations)
            else:
                self.delete_page_snapshot(url)

    # -- Pull --

    def apply_change(self, change: dict) -> bool:
        """Merge one change into the cache unless the cached copy is newer.

        Changes without a numeric ``updatedAt`` are skipped.
        """
        if not isinstance(change, dict) or change.get("type") != CHANGE_TYPE_METADATA_UPDATE:
            return False
        updated_at = change.get("updatedAt")
        if not _is_timestamp(updated_at):
            logger.warning("Skipping change %r with updatedAt %r", change.get("id"), updated_at)
            return False
        patch = {
            k: v for k, v in (change.get("patch") or {}).items()
            if k in METADATA_FIELDS and v is not None
        }

        def merge(existing: dict) -> Optional[dict]:
            current = existing.get("updatedAt", 0)
            if _is_timestamp(current) and current > updated_at:
                return None
            return {**existing, **patch, "updatedAt": updated_at}

        return self._cache.update_annotation(change.get("annotationId"), merge)

    def pull_changes(self) -> bool:
        since = self._cache.get_cursor()
        try:
            result = self._request(REQUEST_GET_CHANGES_SINCE, "pull", {
                "since": since,
                "limit": self._pull_limit,
            })
            changes = result.get("changes", [])
            for change in changes:
                self.apply_change(change)
        except Exception as e:
            self._record_failure("pullChanges", e)
            return False

        observed = [
            int(c["updatedAt"]) for c in changes
            if isinstance(c, dict) and _is_timestamp(c.get("updatedAt"))
        ]
        latest = result.get("latest")
        if isinstance(latest, int):
            observed.append(latest)
        cursor = max(observed, default=since)
        if cursor > since:
            self._cache.set_cursor(cursor)
            self._set_status(cursor=cursor)

        self._set_status(status=STATUS_OK, last_pull_at=now_ms(), last_error=None)
        return True

    # -- Lifecycle --

    def ensure_pull_schedule(self) -> None:
        """Register the recurring pull, replacing any earlier registration."""
        self._scheduler.schedule(PULL_SCHEDULE_NAME, self._pull_interval, self.pull_changes)

    def bootstrap(self) -> bool:
        """Schedule pulls, ping the host, then resync everything and pull once.

        Returns False (after recording the status) if the host is unreachable;
        no resync is attempted in that case.
        """
        self.ensure_pull_schedule()
        self._set_status(cursor=self._cache.get_cursor())
        try:
            self._request(REQUEST_PING, "ping", {})
        except Exception as e:
            self._record_failure("bootstrap", e)
            return False
        self._set_status(status=STATUS_OK, last_error=None)

        self.resync_all_pages()
        self.pull_changes()
        return True

    def close(self) -> None:
        self._scheduler.cancel(PULL_SCHEDULE_NAME)
