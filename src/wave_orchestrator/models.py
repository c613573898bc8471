from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .constants import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
)
from .utils import _coerce_bool, _coerce_int, _normalize_status


@dataclass
class WaveProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0

    def __post_init__(self) -> None:
        self.total = max(0, int(self.total))
        self.completed = max(0, int(self.completed))
        self.failed = max(0, int(self.failed))
        # completed + failed never exceeds total
        overflow = self.completed + self.failed - self.total
        if overflow > 0:
            self.completed = max(0, self.completed - overflow)
            self.failed = min(self.failed, self.total - self.completed)

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def is_finished(self) -> bool:
        return self.total > 0 and self.processed >= self.total

    def derive_status(self, current: str) -> str:
        """Return the wave status implied by these counters.

        Terminal once every member is processed; `pending` is promoted to
        `in_progress` as soon as any member was processed.
        """
        if self.is_finished:
            return STATUS_ERROR if self.failed > 0 else STATUS_COMPLETED
        if self.processed > 0 and current == STATUS_PENDING:
            return STATUS_IN_PROGRESS
        return current

    @classmethod
    def from_statuses(cls, statuses: list[str], total: Optional[int] = None) -> "WaveProgress":
        return cls(
            total=len(statuses) if total is None else total,
            completed=sum(1 for s in statuses if s == STATUS_COMPLETED),
            failed=sum(1 for s in statuses if s == STATUS_ERROR),
        )

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "WaveProgress":
        data = data or {}
        return cls(
            total=_coerce_int(data.get("total")),
            completed=_coerce_int(data.get("completed")),
            failed=_coerce_int(data.get("failed")),
        )


@dataclass
class Wave:
    wave_id: str
    name: str
    workspace_id: Optional[int] = None
    workspace_name: str = ""
    member_ids: list[str] = field(default_factory=list)
    batch_size: int = 3
    mgr_manual: bool = False
    enable_cloning: bool = False
    status: str = STATUS_PENDING
    progress: WaveProgress = field(default_factory=WaveProgress)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress"] = self.progress.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Wave":
        return cls(
            wave_id=str(data.get("wave_id") or data.get("id") or ""),
            name=str(data.get("name") or data.get("wave_name") or ""),
            workspace_id=_coerce_int(data.get("workspace_id")) or None,
            workspace_name=str(data.get("workspace_name") or ""),
            member_ids=[str(m) for m in list(data.get("member_ids") or data.get("project_uuids") or [])],
            batch_size=_coerce_int(data.get("batch_size"), 3) or 3,
            mgr_manual=_coerce_bool(data.get("mgr_manual")),
            enable_cloning=_coerce_bool(data.get("enable_cloning")),
            status=_normalize_status(data.get("status")),
            progress=WaveProgress.from_dict(data.get("progress") if isinstance(data.get("progress"), dict) else None),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class MigrationTask:
    source_id: str
    target_id: Optional[int] = None
    wave_id: Optional[str] = None
    status: str = STATUS_PENDING
    error: Optional[str] = None
    result: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None
    migration_id: Optional[int] = None
    target_domain: Optional[str] = None
    cloning_enabled: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MigrationTask":
        target = _coerce_int(data.get("target_id"))
        return cls(
            source_id=str(data.get("source_id") or ""),
            target_id=target or None,
            wave_id=data.get("wave_id"),
            status=_normalize_status(data.get("status")),
            error=data.get("error"),
            result=dict(data.get("result") or {}),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            updated_at=data.get("updated_at"),
            migration_id=_coerce_int(data.get("migration_id")) or None,
            target_domain=data.get("target_domain"),
            cloning_enabled=_coerce_bool(data.get("cloning_enabled")),
        )


@dataclass
class DispatchRequest:
    source_id: str
    target_id: int
    wave_id: Optional[str] = None
    workspace_id: Optional[int] = None
    manual_mode: bool = False
    quality_analysis: bool = False
    page_slug: Optional[str] = None
    site_id: Optional[str] = None
    secret: Optional[str] = None


@dataclass
class DispatchResult:
    source_id: str
    target_id: Optional[int]
    success: bool
    status: str
    http_code: int = 0
    error: Optional[str] = None
    message: Optional[str] = None
    response_preview: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    stage: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProbeResult:
    running: bool
    pid: Optional[int] = None
    lock_exists: bool = False
    lock_age_seconds: Optional[int] = None
    lock_path: Optional[str] = None
    detected_by: Optional[str] = None
    should_reconcile: bool = False
    stage_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KillResult:
    killed: bool
    pid: Optional[int] = None
    forced: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HardResetSummary:
    process_killed: bool = False
    lock_removed: bool = False
    cache_removed: bool = False
    status_reset: bool = False
    killed_pids: list[int] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
