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
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env if env is not None else os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    override = environ.get("INDEXSYNC_DATA_DIR")
    if override:
        return Path(override).expanduser()

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "IndexSync"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "indexsync.db"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = f"sqlite:///{DB_PATH.as_posix()}"
    echo: bool = False


@dataclass(frozen=True)
class WorkerSettings:
    batch_size: int = 100
    poll_interval: float = 5.0
    max_retries: int = 5
    shutdown_timeout: float = 30.0
    claim_timeout: float = 300.0
    backoff_base: float = 2.0
    backoff_cap: float = 300.0


@dataclass(frozen=True)
class IndexSettings:
    backend: str = "http"  # http / memory
    app_id: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    request_timeout: float = 10.0

    def resolved_base_url(self) -> Optional[str]:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.app_id:
            return f"https://{self.app_id}.algolia.net"
        return None


@dataclass(frozen=True)
class CaptureSettings:
    mode: str = "orm"  # orm / trigger
    enqueue_when_disabled: bool = True


@dataclass(frozen=True)
class Settings:
    database: DatabaseSettings = DatabaseSettings()
    worker: WorkerSettings = WorkerSettings()
    index: IndexSettings = IndexSettings()
    capture: CaptureSettings = CaptureSettings()


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from environment-style key/value pairs."""

    environ = dict(env if env is not None else os.environ)
    defaults = WorkerSettings()

    capture_mode = (environ.get("CAPTURE_MODE") or "orm").strip().lower()
    if capture_mode not in {"orm", "trigger"}:
        raise ValueError(f"CAPTURE_MODE must be 'orm' or 'trigger', got {capture_mode!r}")
    backend = (environ.get("INDEX_BACKEND") or "http").strip().lower()
    if backend not in {"http", "memory"}:
        raise ValueError(f"INDEX_BACKEND must be 'http' or 'memory', got {backend!r}")

    worker = WorkerSettings(
        batch_size=_env_int(environ, "BATCH_SIZE", defaults.batch_size),
        poll_interval=_env_float(environ, "POLLING_INTERVAL", defaults.poll_interval),
        max_retries=_env_int(environ, "MAX_RETRIES", defaults.max_retries),
        shutdown_timeout=_env_float(environ, "SHUTDOWN_TIMEOUT", defaults.shutdown_timeout),
        claim_timeout=_env_float(environ, "CLAIM_TIMEOUT", defaults.claim_timeout),
        backoff_base=_env_float(environ, "BACKOFF_BASE", defaults.backoff_base),
        backoff_cap=_env_float(environ, "BACKOFF_CAP", defaults.backoff_cap),
    )
    if worker.batch_size < 1:
        raise ValueError("BATCH_SIZE must be at least 1")
    if worker.max_retries < 1:
        raise ValueError("MAX_RETRIES must be at least 1")

    return Settings(
        database=DatabaseSettings(
            url=environ.get("DATABASE_URL") or DatabaseSettings.url,
            echo=_env_bool(environ, "DATABASE_ECHO", False),
        ),
        worker=worker,
        index=IndexSettings(
            backend=backend,
            app_id=environ.get("INDEX_APP_ID") or None,
            api_key=environ.get("INDEX_ADMIN_KEY") or None,
            base_url=environ.get("INDEX_BASE_URL") or None,
            request_timeout=_env_float(environ, "INDEX_REQUEST_TIMEOUT", 10.0),
        ),
        capture=CaptureSettings(
            mode=capture_mode,
            enqueue_when_disabled=_env_bool(environ, "CAPTURE_WHEN_DISABLED", True),
        ),
    )


SETTINGS = load_settings()
DATABASE = SETTINGS.database
WORKER = SETTINGS.worker
INDEX = SETTINGS.index
CAPTURE = SETTINGS.capture


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "DB_PATH",
    "SYNC_LOG_PATH",
    "SETTINGS",
    "DATABASE",
    "WORKER",
    "INDEX",
    "CAPTURE",
    "Settings",
    "DatabaseSettings",
    "WorkerSettings",
    "IndexSettings",
    "CaptureSettings",
    "get_default_data_dir",
    "load_settings",
]
