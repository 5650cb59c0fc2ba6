"""
Configuration and filesystem locations for the onui store.

Paths follow per-platform conventions (Application Support on macOS,
XDG data/config dirs on Linux, roaming AppData on Windows). Optional
settings live in a TOML file in the data directory.
"""

import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "onui.toml"
CONFIG_VERSION = 1

STORE_FILENAME = "store.v1.json"
NATIVE_HOST_NAME = "com.onui.native"
DEFAULT_EXTENSION_ID = "fnkengnadapimmlepnjienecfoekgacp"
WINDOWS_REGISTRY_KEY = r"HKCU\Software\Google\Chrome\NativeMessagingHosts"

DEFAULT_LOCK_ATTEMPTS = 200
DEFAULT_LOCK_RETRY_DELAY = 0.025  # seconds
DEFAULT_PULL_INTERVAL = 60.0  # seconds
DEFAULT_PULL_LIMIT = 200


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} is required for this platform.")
    return value


def get_data_dir(platform: Optional[str] = None) -> Path:
    """Per-user data directory. ONUI_DATA_DIR overrides the platform default."""
    override = os.environ.get("ONUI_DATA_DIR")
    if override:
        return Path(override).expanduser()

    platform = platform or sys.platform
    home = Path.home()
    if platform == "darwin":
        return home / "Library" / "Application Support" / "onui"
    if platform.startswith("linux"):
        data_home = os.environ.get("XDG_DATA_HOME")
        return (Path(data_home) if data_home else home / ".local" / "share") / "onui"
    if platform == "win32":
        return Path(_require_env("APPDATA")) / "onui"
    return home / ".onui"


def get_default_store_path(platform: Optional[str] = None) -> Path:
    """Store file location, ignoring config. ONUI_STORE_PATH overrides."""
    override = os.environ.get("ONUI_STORE_PATH")
    if override:
        return Path(override).expanduser()
    return get_data_dir(platform) / STORE_FILENAME


def get_native_host_dir(platform: Optional[str] = None) -> Path:
    """Directory where the browser looks for native-messaging manifests."""
    platform = platform or sys.platform
    home = Path.home()
    if platform == "darwin":
        return (home / "Library" / "Application Support" / "Google" / "Chrome"
                / "NativeMessagingHosts")
    if platform.startswith("linux"):
        config_home = os.environ.get("XDG_CONFIG_HOME")
        base = Path(config_home) if config_home else home / ".config"
        return base / "google-chrome" / "NativeMessagingHosts"
    # Windows locates the manifest through the registry, so any directory works
    return get_data_dir(platform) / "native-host"


def get_native_host_manifest_path(
    platform: Optional[str] = None, host_name: str = NATIVE_HOST_NAME,
) -> Path:
    return get_native_host_dir(platform) / f"{host_name}.json"


def get_windows_registry_path(host_name: str = NATIVE_HOST_NAME) -> str:
    return f"{WINDOWS_REGISTRY_KEY}\\{host_name}"


@dataclass
class StoreSettings:
    """Store file location and lock retry budget."""
    path: Optional[Path] = None
    lock_attempts: int = DEFAULT_LOCK_ATTEMPTS
    lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY


@dataclass
class NativeSettings:
    host_name: str = NATIVE_HOST_NAME
    extension_id: str = DEFAULT_EXTENSION_ID


@dataclass
class SyncSettings:
    pull_interval: float = DEFAULT_PULL_INTERVAL
    pull_limit: int = DEFAULT_PULL_LIMIT


@dataclass
class OnuiConfig:
    """Complete configuration."""
    data_dir: Path
    version: int = CONFIG_VERSION
    store: StoreSettings = field(default_factory=StoreSettings)
    native: NativeSettings = field(default_factory=NativeSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.data_dir / CONFIG_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()


def load_config(data_dir: Path) -> OnuiConfig:
    """
    Load configuration from a data directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = data_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    version = store.get("version", CONFIG_VERSION)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    native = data.get("native", {})
    sync = data.get("sync", {})
    try:
        return OnuiConfig(
            data_dir=data_dir,
            version=version,
            store=StoreSettings(
                path=Path(store["path"]).expanduser() if store.get("path") else None,
                lock_attempts=int(store.get("lock_attempts", DEFAULT_LOCK_ATTEMPTS)),
                lock_retry_delay=float(store.get("lock_retry_delay", DEFAULT_LOCK_RETRY_DELAY)),
            ),
            native=NativeSettings(
                host_name=str(native.get("host_name", NATIVE_HOST_NAME)),
                extension_id=str(native.get("extension_id", DEFAULT_EXTENSION_ID)),
            ),
            sync=SyncSettings(
                pull_interval=float(sync.get("pull_interval", DEFAULT_PULL_INTERVAL)),
                pull_limit=int(sync.get("pull_limit", DEFAULT_PULL_LIMIT)),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config {config_path}: {e}") from e


def save_config(config: OnuiConfig) -> None:
    """Save configuration, creating the data directory if needed."""
    config.data_dir.mkdir(parents=True, exist_ok=True)

    store: dict[str, Any] = {
        "version": config.version,
        "lock_attempts": config.store.lock_attempts,
        "lock_retry_delay": config.store.lock_retry_delay,
    }
    if config.store.path is not None:
        store["path"] = str(config.store.path)

    data = {
        "store": store,
        "native": {
            "host_name": config.native.host_name,
            "extension_id": config.native.extension_id,
        },
        "sync": {
            "pull_interval": config.sync.pull_interval,
            "pull_limit": config.sync.pull_limit,
        },
    }
    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(data_dir: Optional[Path] = None) -> OnuiConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    data_dir = data_dir or get_data_dir()
    if (data_dir / CONFIG_FILENAME).exists():
        return load_config(data_dir)
    config = OnuiConfig(data_dir=data_dir)
    save_config(config)
    return config


def resolve_store_path(config: Optional[OnuiConfig] = None) -> Path:
    """Store path precedence: ONUI_STORE_PATH, config store.path, platform default."""
    override = os.environ.get("ONUI_STORE_PATH")
    if override:
        return Path(override).expanduser()
    if config is not None and config.store.path is not None:
        return config.store.path
    if config is not None:
        return config.data_dir / STORE_FILENAME
    return get_default_store_path()
