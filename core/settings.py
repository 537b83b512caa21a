"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``.

    ``CHRONIFY_DATA_DIR`` wins over the platform default when set.
    """

    platform_id = (platform or sys.platform).lower()
    environ = dict(os.environ if env is None else env)
    home_dir = Path(home or Path.home())

    override = environ.get("CHRONIFY_DATA_DIR")
    if override:
        return Path(override).expanduser()

    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = home_dir / "Library" / "Application Support"
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return base.expanduser() / sanitized


APP_NAME = "Chronify"
STORAGE_NAMESPACE = "chronify"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

REPLICA_DB_PATH = DATA_DIR / "replica.db"
CONFIG_PATH = DATA_DIR / "config.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    api_base_url: str = os.environ.get("CHRONIFY_API_URL", "http://localhost:5000")
    interval_sec: int = 30
    request_timeout_sec: float = 15.0
    max_retries: int = 3
    local_id_prefix: str = "offline_"
    squash_updates: bool = True
    cancel_unconfirmed_deletes: bool = True
    # timer ticks also pull when the outbox is empty
    poll_when_idle: bool = False


SYNC = SyncSettings()


@dataclass(frozen=True)
class StorageSettings:
    db_path: Path = REPLICA_DB_PATH
    namespace: str = STORAGE_NAMESPACE
    echo_sql: bool = False


STORAGE = StorageSettings()


@dataclass(frozen=True)
class LogSettings:
    path: Path = SYNC_LOG_PATH
    max_bytes: int = 1_000_000
    backup_count: int = 3
    level: str = os.environ.get("CHRONIFY_LOG_LEVEL", "INFO")


LOGGING = LogSettings()


__all__ = [
    "APP_NAME",
    "STORAGE_NAMESPACE",
    "DATA_DIR",
    "LOG_DIR",
    "REPLICA_DB_PATH",
    "CONFIG_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "STORAGE",
    "LOGGING",
    "SyncSettings",
    "StorageSettings",
    "LogSettings",
    "get_default_data_dir",
]
