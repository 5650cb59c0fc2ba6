"""
Persistence for the annotation store.

The store is a single pretty-printed JSON file. Writes go to a temporary
sibling and are renamed into place, so readers never see a partial file.
Mutation is serialized across processes by an advisory lock on the sibling
``<store>.lock`` file:

- POSIX: ``fcntl.flock`` on the lock file (released by the kernel if the
  holder dies, so a crashed writer never leaves the store wedged)
- elsewhere: exclusive creation of the lock file as a marker, removed on
  release

Acquisition is non-blocking with a fixed retry delay and a bounded number
of attempts, after which LockTimeoutError is raised. The lock is not
re-entrant: a transform that calls with_store() on the same path will time
out against its own caller.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .config import DEFAULT_LOCK_ATTEMPTS, DEFAULT_LOCK_RETRY_DELAY
from .errors import LockTimeoutError, StoreError
from .schema import create_empty_store, ensure_store_shape
from .types import StoreSnapshot

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def lock_path_for(store_path: Path) -> Path:
    return store_path.with_name(store_path.name + ".lock")


class StoreLock:
    """Cross-process advisory lock guarding one store file."""

    def __init__(
        self,
        store_path: Path,
        *,
        attempts: int = DEFAULT_LOCK_ATTEMPTS,
        retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
    ):
        self._lock_path = lock_path_for(Path(store_path))
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._lock_path

    def _try_acquire(self) -> bool:
        if fcntl is not None:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_RDWR, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                return False
            except BaseException:
                os.close(fd)
                raise
            self._fd = fd
            return True

        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        self._fd = fd
        return True

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self._attempts):
            if self._try_acquire():
                if attempt:
                    logger.debug("Acquired %s after %d retries", self._lock_path, attempt)
                return
            if attempt < self._attempts - 1:
                time.sleep(self._retry_delay)
        raise LockTimeoutError(self._lock_path, self._attempts)

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        if fcntl is not None:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
            return
        os.close(fd)
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def read_store(store_path: Path) -> StoreSnapshot:
    """Read the store, returning an empty snapshot if missing or from another version.

    Raises:
        StoreError: File exists but is not valid JSON
    """
    store_path = Path(store_path)
    try:
        raw = store_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return create_empty_store()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StoreError(f"Store file {store_path} is not valid JSON: {e}") from e

    snapshot = ensure_store_shape(data)
    if isinstance(data, dict) and data.get("version") != snapshot.version:
        logger.warning(
            "Store %s has version %r (expected %d); starting from an empty store",
            store_path, data.get("version"), snapshot.version,
        )
    return snapshot


def write_json_atomic(path: Path, data) -> None:
    """Write pretty-printed JSON to a temp sibling, then rename it over ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_store(store_path: Path, snapshot: StoreSnapshot) -> None:
    """Atomically replace the store file with ``snapshot``."""
    write_json_atomic(store_path, snapshot.to_dict())


def with_store(
    store_path: Path,
    fn: Callable[[StoreSnapshot], tuple[StoreSnapshot, T]],
    *,
    lock_attempts: int = DEFAULT_LOCK_ATTEMPTS,
    lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
) -> T:
    """Locked read-modify-write cycle; the only sanctioned way to mutate the store.

    ``fn`` receives the current snapshot and returns ``(next_snapshot, result)``.
    If ``fn`` raises, nothing is written and the lock is still released.
    """
    store_path = Path(store_path)
    with StoreLock(store_path, attempts=lock_attempts, retry_delay=lock_retry_delay):
        current = read_store(store_path)
        next_snapshot, result = fn(current)
        write_store(store_path, next_snapshot)
    return result
