"""Load dashboard settings from `.wave_orchestrator/config.yaml` and the environment."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    BATCH_CONNECT_TIMEOUT,
    BATCH_TOTAL_TIMEOUT,
    CONFIG_FILE,
    DATABASE_FILE,
    DEFAULT_DOCKER_WORKER_URL,
    DEFAULT_WORKER_URL,
    STATE_DIR_NAME,
)
from .errors import ConfigurationError
from .io_utils import FileLock, _load_data_with_error, _save_data


# Keys the dashboard lets operators edit through the settings endpoint.
EDITABLE_KEYS = ("mb_site_id", "mb_secret", "webhook_url", "worker_url", "target_api_url", "target_api_token")


@dataclass
class Settings:
    project_dir: Path
    worker_url: str = DEFAULT_WORKER_URL
    cache_path: Path = Path("var/cache")
    log_path: Path = Path("var/log")
    database_url: str = ""
    webhook_url: str = ""
    target_api_url: str = ""
    target_api_token: str = ""
    mb_site_id: Optional[str] = None
    mb_secret: Optional[str] = None
    connect_timeout: float = BATCH_CONNECT_TIMEOUT
    total_timeout: float = BATCH_TOTAL_TIMEOUT
    extra: dict[str, Any] = field(default_factory=dict)

    def require_credentials(self, overrides: Optional[dict[str, Any]] = None) -> tuple[str, str]:
        """Return `(site_id, secret)`, preferring per-request overrides.

        Raises:
            ConfigurationError: If either value is missing.
        """
        overrides = overrides or {}
        site_id = overrides.get("mb_site_id") or self.mb_site_id
        secret = overrides.get("mb_secret") or self.mb_secret
        if not site_id or not secret:
            raise ConfigurationError(
                "mb_site_id and mb_secret must be provided in the request or in settings"
            )
        return str(site_id), str(secret)

    def public_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["project_dir"] = str(self.project_dir)
        data["cache_path"] = str(self.cache_path)
        data["log_path"] = str(self.log_path)
        for secret_key in ("mb_secret", "target_api_token"):
            if data.get(secret_key):
                data[secret_key] = "***"
        return data


def config_path(project_dir: Path) -> Path:
    return project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE


def _running_in_container() -> bool:
    return Path("/.dockerenv").exists() or bool(os.environ.get("DOCKER_CONTAINER"))


def resolve_worker_url(configured: Optional[str] = None) -> str:
    """Pick the worker service base URL.

    `MIGRATION_API_URL` wins over the config file; without either, the default
    depends on whether we run inside a container.
    """
    url = os.environ.get("MIGRATION_API_URL") or configured
    if not url:
        url = DEFAULT_DOCKER_WORKER_URL if _running_in_container() else DEFAULT_WORKER_URL
    return url.rstrip("/")


def _resolve_dir(project_dir: Path, env_key: str, configured: Any, default: str) -> Path:
    raw = os.environ.get(env_key) or configured or default
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = project_dir / path
    return path


def load_settings(project_dir: Path) -> tuple[Settings, str | None]:
    """Load settings for a project directory.

    Args:
        project_dir: Directory holding the `.wave_orchestrator` state folder.

    Returns:
        A tuple of `(settings, error_message)`. A missing file yields defaults
        and no error; an unreadable file yields defaults and the parse error.
    """
    project_dir = project_dir.resolve()
    raw, err = _load_data_with_error(config_path(project_dir), {})
    if err:
        raw = {}

    database_url = os.environ.get("DATABASE_URL") or raw.get("database_url")
    if not database_url:
        database_url = f"sqlite:///{project_dir / STATE_DIR_NAME / DATABASE_FILE}"

    known = {
        "worker_url", "cache_path", "log_path", "database_url", "webhook_url",
        "target_api_url", "target_api_token", "mb_site_id", "mb_secret",
        "connect_timeout", "total_timeout",
    }
    settings = Settings(
        project_dir=project_dir,
        worker_url=resolve_worker_url(raw.get("worker_url")),
        cache_path=_resolve_dir(project_dir, "CACHE_PATH", raw.get("cache_path"), "var/cache"),
        log_path=_resolve_dir(project_dir, "LOG_PATH", raw.get("log_path"), "var/log"),
        database_url=str(database_url),
        webhook_url=str(os.environ.get("WEBHOOK_URL") or raw.get("webhook_url") or ""),
        target_api_url=str(os.environ.get("TARGET_API_URL") or raw.get("target_api_url") or "").rstrip("/"),
        target_api_token=str(os.environ.get("TARGET_API_TOKEN") or raw.get("target_api_token") or ""),
        mb_site_id=_optional_str(raw.get("mb_site_id")),
        mb_secret=_optional_str(raw.get("mb_secret")),
        connect_timeout=float(raw.get("connect_timeout") or BATCH_CONNECT_TIMEOUT),
        total_timeout=float(raw.get("total_timeout") or BATCH_TOTAL_TIMEOUT),
        extra={k: v for k, v in raw.items() if k not in known},
    )
    return settings, err


def save_settings(project_dir: Path, updates: dict[str, Any]) -> tuple[Settings, str | None]:
    """Merge editable keys into the config file and reload it.

    Unknown keys are ignored. Refuses to overwrite a file it could not parse.
    """
    path = config_path(project_dir)
    with FileLock(path.with_suffix(".lock")):
        raw, err = _load_data_with_error(path, {})
        if err:
            return load_settings(project_dir)[0], err
        for key in EDITABLE_KEYS:
            if key in updates and updates[key] is not None:
                raw[key] = updates[key]
        _save_data(path, raw)
    return load_settings(project_dir)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
