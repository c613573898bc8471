"""Locate and read the files a migration worker leaves behind.

Lock and cache files are written by the worker only; this module reads them
and, for forced resets, deletes them.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..utils import _coerce_int, _md5


@dataclass
class LockInfo:
    path: Path
    exists: bool
    pid: Optional[int] = None
    started_at: Optional[Any] = None
    current_stage: Optional[str] = None
    stage_updated_at: Optional[Any] = None
    total_pages: Optional[int] = None
    processed_pages: Optional[int] = None
    progress_percent: Optional[float] = None
    wrapper_script: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)
    raw_text: Optional[str] = None
    age_seconds: Optional[int] = None

    def stage_info(self) -> dict[str, Any]:
        info = {
            "current_stage": self.current_stage,
            "stage_updated_at": self.stage_updated_at,
            "total_pages": self.total_pages,
            "processed_pages": self.processed_pages,
            "progress_percent": self.progress_percent,
            "started_at": self.started_at,
        }
        return {k: v for k, v in info.items() if v is not None}


def lock_path(cache_path: Path, source_id: str, target_id: int) -> Path:
    return cache_path / f"{source_id}-{target_id}.lock"


def cache_file_path(cache_path: Path, source_id: str, target_id: int) -> Path:
    return cache_path / f"{_md5(f'{source_id}{target_id}')}-{target_id}.json"


def lock_age_seconds(path: Path, now: Optional[float] = None) -> Optional[int]:
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return None
    return max(0, int((now if now is not None else time.time()) - mtime))


def read_lock(path: Path) -> LockInfo:
    """Read a lock file; every field is optional and old workers wrote plain text."""
    if not path.exists():
        return LockInfo(path=path, exists=False)
    info = LockInfo(path=path, exists=True, age_seconds=lock_age_seconds(path))
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return info
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        info.raw_text = text
        return info

    pid = _coerce_int(data.get("pid"))
    info.raw = data
    info.pid = pid if pid > 0 else None
    info.started_at = data.get("started_at")
    info.current_stage = data.get("current_stage")
    info.stage_updated_at = data.get("stage_updated_at")
    info.total_pages = _optional_int(data.get("total_pages"))
    info.processed_pages = _optional_int(data.get("processed_pages"))
    percent = data.get("progress_percent")
    info.progress_percent = float(percent) if isinstance(percent, (int, float)) else None
    wrapper = data.get("wrapper_script")
    info.wrapper_script = str(wrapper) if wrapper else None
    return info


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return _coerce_int(value)


def find_latest_lock(cache_path: Path, source_id: str) -> Optional[tuple[Path, int]]:
    """Return the newest `{source_id}-{target}.lock` and its target id."""
    candidates: list[tuple[float, Path, int]] = []
    for path in cache_path.glob(f"{source_id}-*.lock"):
        target = _coerce_int(path.stem[len(source_id) + 1:])
        if target <= 0:
            continue
        try:
            candidates.append((path.stat().st_mtime, path, target))
        except OSError:
            continue
    if not candidates:
        return None
    _, path, target = max(candidates, key=lambda item: item[0])
    return path, target


def remove_file(path: Path) -> bool:
    """Delete a file if present. Returns True only when something was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def _sorted_newest_first(paths: list[Path]) -> list[Path]:
    unique = {p.resolve(): p for p in paths if p.is_file()}
    return sorted(unique.values(), key=lambda p: p.stat().st_mtime, reverse=True)


def migration_log_files(log_path: Path, target_id: int) -> list[Path]:
    """Worker log files for a target project, newest first."""
    found: list[Path] = []
    for pattern in (f"migration_*_{target_id}.log", f"brizy-{target_id}.log", f"*_{target_id}.log"):
        found.extend(log_path.glob(pattern))
    return _sorted_newest_first(found)


def wave_log_files(log_path: Path, wave_id: str) -> list[Path]:
    found = list(log_path.glob(f"wave_{wave_id}_*.log"))
    simple = log_path / f"wave_{wave_id}.log"
    if simple.exists():
        found.append(simple)
    return _sorted_newest_first(found)
