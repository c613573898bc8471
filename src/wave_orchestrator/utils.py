"""Provide small helpers for timestamps, identifiers and process checks."""

from __future__ import annotations

import hashlib
import os
import random
import time
from datetime import datetime, timezone
from typing import Any

from .constants import STATUS_ALIASES


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        if value is None:
            return default
        if isinstance(value, bool):
            return int(value)
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _new_wave_id() -> str:
    return f"{int(time.time())}_{random.randint(1000, 9999)}"


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _normalize_status(value: Any, default: str = "pending") -> str:
    if not value:
        return default
    status = str(value).strip().lower()
    return STATUS_ALIASES.get(status, status)


def _pid_is_running(pid_value: Any) -> bool:
    pid = _coerce_int(pid_value, 0)
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        # Process exists but we may not have permission to signal it.
        return True
    except OSError:
        return False
    return True
