from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from ..models import MigrationTask, Wave, WaveProgress


class SqlExecutor(ABC):
    """The handful of raw-SQL operations the task store relies on."""

    @abstractmethod
    def begin(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def commit(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        raise NotImplementedError

    @abstractmethod
    def fetch_all(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def has_table(self, name: str) -> bool:
        raise NotImplementedError

    def forget_table(self, name: str) -> None:
        """Drop any cached knowledge that `name` exists."""

    def fetch_one(self, sql: str, params: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    @contextmanager
    def transaction(self) -> Iterator["SqlExecutor"]:
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class TaskStore(ABC):
    @abstractmethod
    def create_wave(
        self,
        name: str,
        member_source_ids: list[str],
        workspace_id: Optional[int],
        workspace_name: str = "",
        concurrency_limit: int = 3,
        manual_mode: bool = False,
        *,
        enable_cloning: bool = False,
        wave_id: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_wave(self, wave_id: str) -> Optional[Wave]:
        raise NotImplementedError

    @abstractmethod
    def list_waves(self) -> list[Wave]:
        raise NotImplementedError

    @abstractmethod
    def update_wave_progress(
        self,
        wave_id: str,
        progress: WaveProgress,
        member_statuses: Optional[list[MigrationTask]] = None,
        new_status: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def upsert_task_result(
        self,
        source_id: str,
        target_id: Optional[int],
        wave_id: Optional[str],
        payload: dict[str, Any],
    ) -> MigrationTask:
        raise NotImplementedError

    @abstractmethod
    def save_task(self, task: MigrationTask) -> MigrationTask:
        raise NotImplementedError

    @abstractmethod
    def get_task(
        self,
        source_id: str,
        wave_id: Optional[str] = None,
        target_id: Optional[int] = None,
    ) -> Optional[MigrationTask]:
        raise NotImplementedError

    @abstractmethod
    def reset_task(self, source_id: str, target_id: Optional[int], wave_id: Optional[str] = None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_tasks_for_wave(self, wave_id: str) -> list[MigrationTask]:
        raise NotImplementedError

    @abstractmethod
    def set_cloning_enabled(self, target_id: int, enabled: bool) -> bool:
        raise NotImplementedError

    @abstractmethod
    def reset_wave(self, wave_id: str) -> int:
        raise NotImplementedError
