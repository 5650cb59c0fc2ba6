"""
Native-messaging manifest: the OS-level registration that lets the browser
spawn ``onui native-host``.

The manifest maps the reverse-DNS host name to a launcher script and lists
the extension origin allowed to call it. On Windows the manifest location is
additionally recorded in the registry.
"""

import json
import logging
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .config import (
    DEFAULT_EXTENSION_ID,
    NATIVE_HOST_NAME,
    get_data_dir,
    get_native_host_manifest_path,
    get_windows_registry_path,
)
from .errors import OnuiError
from .store import write_json_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NativeHostInstallResult:
    launcher_path: Path
    manifest_path: Path
    host_name: str


def default_host_command() -> list[str]:
    """Command that starts the native host with the current interpreter."""
    return [sys.executable, "-m", "onui", "native-host"]


def build_manifest(
    launcher_path: Path,
    *,
    host_name: str = NATIVE_HOST_NAME,
    extension_id: str = DEFAULT_EXTENSION_ID,
) -> dict:
    return {
        "name": host_name,
        "description": "onUI native messaging host",
        "path": str(launcher_path),
        "type": "stdio",
        "allowed_origins": [f"chrome-extension://{extension_id}/"],
    }


def read_manifest(manifest_path: Optional[Path] = None) -> dict:
    """Load a manifest.

    Raises:
        FileNotFoundError: Manifest not installed
        ValueError: Manifest is not JSON or lacks name/path
    """
    manifest_path = manifest_path or get_native_host_manifest_path()
    try:
        data = json.loads(Path(manifest_path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Manifest at {manifest_path} is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not data.get("name") or not data.get("path"):
        raise ValueError(f"Manifest at {manifest_path} does not define a host name and path")
    return data


def _launcher_script(command: Sequence[str], platform: str) -> str:
    if platform == "win32":
        quoted = " ".join(f'"{part}"' for part in command)
        return f"@echo off\r\n{quoted} %*\r\n"
    return f"#!/usr/bin/env bash\nexec {shlex.join(command)} \"$@\"\n"


def install_native_host(
    command: Optional[Sequence[str]] = None,
    *,
    host_name: str = NATIVE_HOST_NAME,
    extension_id: str = DEFAULT_EXTENSION_ID,
    platform: Optional[str] = None,
) -> NativeHostInstallResult:
    """Write the launcher script and manifest (plus registry key on Windows)."""
    platform = platform or sys.platform
    command = list(command or default_host_command())

    runtime_dir = get_data_dir(platform) / "runtime"
    runtime_dir.mkdir(parents=True, exist_ok=True)
    suffix = ".cmd" if platform == "win32" else ".sh"
    launcher_path = runtime_dir / f"onui-native-host{suffix}"
    launcher_path.write_text(_launcher_script(command, platform), encoding="utf-8")
    if platform != "win32":
        launcher_path.chmod(0o755)

    manifest_path = get_native_host_manifest_path(platform, host_name)
    write_json_atomic(
        manifest_path,
        build_manifest(launcher_path, host_name=host_name, extension_id=extension_id),
    )

    if platform == "win32":
        result = subprocess.run(
            ["reg", "add", get_windows_registry_path(host_name),
             "/ve", "/t", "REG_SZ", "/d", str(manifest_path), "/f"],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise OnuiError(
                f"Failed to register native host in registry: {result.stderr or result.stdout}"
            )

    logger.info("Installed native host %s -> %s", host_name, launcher_path)
    return NativeHostInstallResult(
        launcher_path=launcher_path,
        manifest_path=manifest_path,
        host_name=host_name,
    )
