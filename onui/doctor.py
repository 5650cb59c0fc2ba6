"""
Health checks for the local store and native-host wiring.

Each check returns a CheckResult rather than raising, so `onui doctor` can
report every problem in one run.
"""

import os
import platform
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .config import (
    DEFAULT_LOCK_ATTEMPTS,
    DEFAULT_LOCK_RETRY_DELAY,
    get_native_host_manifest_path,
)
from .errors import LockTimeoutError, OnuiError
from .manifest import read_manifest
from .protocol import REQUEST_PING
from .store import StoreLock, read_store, write_json_atomic
from .sync_client import SubprocessTransport
from .types import now_ms

CHECK_OK = "ok"
CHECK_WARNING = "warning"
CHECK_ERROR = "error"

_SEVERITY = {CHECK_OK: 0, CHECK_WARNING: 1, CHECK_ERROR: 2}

SETUP_HINT = "Run `onui setup` to install the native host."


@dataclass
class CheckResult:
    name: str
    status: str
    message: str
    fix: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"name": self.name, "status": self.status, "message": self.message}
        if self.fix:
            d["fix"] = self.fix
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class DoctorReport:
    checks: list[CheckResult]

    @property
    def status(self) -> str:
        worst = max((_SEVERITY[c.status] for c in self.checks), default=0)
        return next(name for name, level in _SEVERITY.items() if level == worst)

    def to_dict(self) -> dict:
        return {"status": self.status, "checks": [c.to_dict() for c in self.checks]}


def check_environment() -> CheckResult:
    from importlib.metadata import PackageNotFoundError, version
    try:
        pkg = version("onui-local")
    except PackageNotFoundError:
        pkg = "?"
    py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    return CheckResult(
        "environment", CHECK_OK,
        f"Python {py}, {platform.system()} {platform.release()}, onui-local {pkg}",
    )


def check_store_health(
    store_path: Path,
    *,
    lock_attempts: int = DEFAULT_LOCK_ATTEMPTS,
    lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
) -> CheckResult:
    """Read the store under its lock, then prove its directory is writable.

    The store itself is never rewritten: a scratch sibling is written and
    removed instead.
    """
    store_path = Path(store_path)
    try:
        with StoreLock(store_path, attempts=lock_attempts, retry_delay=lock_retry_delay):
            store = read_store(store_path)
        scratch = store_path.with_name(store_path.name + ".doctor")
        write_json_atomic(scratch, {"checkedAt": now_ms()})
        scratch.unlink()
    except LockTimeoutError as e:
        return CheckResult(
            "store.health", CHECK_WARNING,
            f"Store is busy: {e}",
            fix="Retry once other onui processes finish writing.",
        )
    except (OnuiError, OSError) as e:
        return CheckResult(
            "store.health", CHECK_ERROR,
            f"Store check failed at {store_path}: {e}",
            fix="Verify filesystem permissions and rerun setup.",
        )
    return CheckResult(
        "store.health", CHECK_OK,
        f"Store is readable and writable at {store_path}",
        details={
            "pages": len(store.pages),
            "annotations": len(store.annotations_by_id),
        },
    )


def check_change_log(store_path: Path) -> CheckResult:
    try:
        store = read_store(store_path)
    except (OnuiError, OSError) as e:
        return CheckResult("sync.changelog", CHECK_ERROR, f"Cannot read change log: {e}")
    return CheckResult(
        "sync.changelog", CHECK_OK,
        f"Change log available with {len(store.change_log)} entries for metadata pull sync.",
    )


def check_native_manifest(manifest_path: Optional[Path] = None) -> CheckResult:
    manifest_path = manifest_path or get_native_host_manifest_path()
    try:
        manifest = read_manifest(manifest_path)
    except FileNotFoundError:
        return CheckResult(
            "native.manifest", CHECK_WARNING,
            f"Native manifest not found at {manifest_path}",
            fix=SETUP_HINT,
        )
    except (ValueError, OSError) as e:
        return CheckResult("native.manifest", CHECK_ERROR, str(e), fix=SETUP_HINT)

    launcher = Path(manifest["path"])
    if not launcher.exists():
        return CheckResult(
            "native.manifest", CHECK_ERROR,
            f"Manifest points at missing launcher {launcher}",
            fix=SETUP_HINT,
        )
    if os.name != "nt" and not os.access(launcher, os.X_OK):
        return CheckResult(
            "native.manifest", CHECK_ERROR,
            f"Launcher {launcher} is not executable",
            fix=f"chmod +x {launcher}",
        )
    return CheckResult(
        "native.manifest", CHECK_OK,
        f"Native manifest exists at {manifest_path}",
        details={"hostName": manifest["name"], "path": manifest["path"]},
    )


def check_native_roundtrip(
    manifest_path: Optional[Path] = None, timeout: float = 4.0,
) -> CheckResult:
    """Spawn the registered launcher and exchange one PING frame."""
    manifest_path = manifest_path or get_native_host_manifest_path()
    try:
        manifest = read_manifest(manifest_path)
        transport = SubprocessTransport([manifest["path"]], timeout=timeout)
        transport.send({
            "type": REQUEST_PING,
            "requestId": "doctor-ping",
            "sentAt": now_ms(),
            "payload": {},
        })
    except (OnuiError, OSError, ValueError) as e:
        return CheckResult(
            "native.roundtrip", CHECK_WARNING,
            f"Native host roundtrip failed: {e}",
            fix=SETUP_HINT,
        )
    return CheckResult("native.roundtrip", CHECK_OK, "Native host roundtrip succeeded.")


def run_doctor(
    store_path: Path,
    *,
    manifest_path: Optional[Path] = None,
    roundtrip: bool = True,
) -> DoctorReport:
    checks: list[Callable[[], CheckResult]] = [
        check_environment,
        lambda: check_store_health(store_path),
        lambda: check_change_log(store_path),
        lambda: check_native_manifest(manifest_path),
    ]
    if roundtrip:
        checks.append(lambda: check_native_roundtrip(manifest_path))
    return DoctorReport([check() for check in checks])
