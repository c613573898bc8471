from __future__ import annotations

import json
from typing import Any, Optional

from loguru import logger
from ..constants import (
    MSG_NOT_STARTED,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    TERMINAL_STATUSES,
)
from ..errors import StoreError, WaveNotFoundError
from ..io_utils import _loads_dict
from ..models import MigrationTask, Wave, WaveProgress
from ..utils import _coerce_bool, _coerce_int, _new_wave_id, _normalize_status, _now_iso
from .interfaces import SqlExecutor, TaskStore
from .schema import MAPPING_TABLE, RESULT_LIST_TABLE, WAVES_TABLE


def _legacy_wave_key(wave_id: str) -> str:
    return f"wave_{wave_id}"


def _result_status(payload: dict[str, Any]) -> Optional[str]:
    """Status recorded inside a stored result payload, if any."""
    status = payload.get("status")
    if not status:
        value = payload.get("value")
        if isinstance(value, dict):
            status = value.get("status")
    return _normalize_status(status) if status else None


def _result_error(payload: dict[str, Any]) -> Optional[str]:
    value = payload.get("value")
    err = value.get("error") if isinstance(value, dict) else None
    err = err or payload.get("error")
    if err is None:
        return None
    return err if isinstance(err, str) else json.dumps(err)


def _result_target(payload: dict[str, Any]) -> int:
    value = payload.get("value") if isinstance(payload.get("value"), dict) else {}
    for source in (payload, value):
        for key in ("brizy_project_id", "target_id", "brz_project_id"):
            found = _coerce_int(source.get(key))
            if found > 0:
                return found
    return 0


def _row_time(row: dict[str, Any]) -> str:
    return str(row.get("updated_at") or row.get("created_at") or "")


class SqlTaskStore(TaskStore):
    """Task store over `waves`, `migrations` and the legacy result tables.

    The `waves` table is optional: when it is missing, wave records are kept in
    the legacy `migrations_mapping` shape (`mb_project_uuid = 'wave_{id}'`,
    `brz_project_id = 0`, everything else inside `changes_json`).
    """

    def __init__(self, executor: SqlExecutor) -> None:
        self.db = executor

    # ------------------------------------------------------------------
    # Waves
    # ------------------------------------------------------------------

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
        name = (name or "").strip()
        if not name:
            raise ValueError("Wave name is required")
        members: list[str] = []
        for raw in member_source_ids or []:
            item = str(raw).strip()
            if item and item not in members:
                members.append(item)
        if not members:
            raise ValueError("At least one project uuid is required")

        wave_id = wave_id or _new_wave_id()
        now = _now_iso()
        batch_size = max(1, _coerce_int(concurrency_limit, 3))

        with self.db.transaction():
            if self.db.has_table(WAVES_TABLE):
                existing = self.db.fetch_one("SELECT id FROM waves WHERE wave_id = :wave_id", {"wave_id": wave_id})
                if existing is None:
                    self.db.execute(
                        """
                        INSERT INTO waves (
                            wave_id, name, workspace_id, workspace_name, status,
                            progress_total, progress_completed, progress_failed,
                            project_uuids, batch_size, mgr_manual, enable_cloning,
                            created_at, updated_at
                        ) VALUES (
                            :wave_id, :name, :workspace_id, :workspace_name, :status,
                            :total, 0, 0, :project_uuids, :batch_size, :mgr_manual,
                            :enable_cloning, :now, :now
                        )
                        """,
                        {
                            "wave_id": wave_id,
                            "name": name,
                            "workspace_id": workspace_id,
                            "workspace_name": workspace_name or "",
                            "status": STATUS_PENDING,
                            "total": len(members),
                            "project_uuids": json.dumps(members),
                            "batch_size": batch_size,
                            "mgr_manual": bool(manual_mode),
                            "enable_cloning": bool(enable_cloning),
                            "now": now,
                        },
                    )
            else:
                self._save_legacy_wave(
                    wave_id,
                    {
                        "wave_name": name,
                        "workspace_id": workspace_id,
                        "workspace_name": workspace_name or "",
                        "project_uuids": members,
                        "status": STATUS_PENDING,
                        "progress": WaveProgress(total=len(members)).to_dict(),
                        "batch_size": batch_size,
                        "mgr_manual": bool(manual_mode),
                        "enable_cloning": bool(enable_cloning),
                        "migrations": [],
                    },
                    create=True,
                )

            for source_id in members:
                exists = self.db.fetch_one(
                    "SELECT id FROM migrations WHERE wave_id = :wave_id AND mb_project_uuid = :source LIMIT 1",
                    {"wave_id": wave_id, "source": source_id},
                )
                if exists:
                    continue
                self.db.execute(
                    """
                    INSERT INTO migrations (
                        migration_uuid, wave_id, mb_project_uuid, brz_project_id,
                        status, result_json, created_at, updated_at
                    ) VALUES (
                        :wave_id, :wave_id, :source, NULL, :status, :result_json, :now, :now
                    )
                    """,
                    {
                        "wave_id": wave_id,
                        "source": source_id,
                        "status": STATUS_PENDING,
                        "result_json": json.dumps({"status": STATUS_PENDING, "message": MSG_NOT_STARTED}),
                        "now": now,
                    },
                )
        logger.info("Created wave {} ({}) with {} members", wave_id, name, len(members))
        return wave_id

    def _row_to_wave(self, row: dict[str, Any]) -> Wave:
        try:
            members = json.loads(row.get("project_uuids") or "[]")
        except json.JSONDecodeError:
            members = []
        return Wave(
            wave_id=str(row["wave_id"]),
            name=str(row.get("name") or ""),
            workspace_id=_coerce_int(row.get("workspace_id")) or None,
            workspace_name=str(row.get("workspace_name") or ""),
            member_ids=[str(m) for m in members] if isinstance(members, list) else [],
            batch_size=_coerce_int(row.get("batch_size"), 3) or 3,
            mgr_manual=_coerce_bool(row.get("mgr_manual")),
            enable_cloning=_coerce_bool(row.get("enable_cloning")),
            status=_normalize_status(row.get("status")),
            progress=WaveProgress(
                total=_coerce_int(row.get("progress_total")),
                completed=_coerce_int(row.get("progress_completed")),
                failed=_coerce_int(row.get("progress_failed")),
            ),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            completed_at=row.get("completed_at"),
        )

    def _legacy_row_to_wave(self, row: dict[str, Any]) -> Wave:
        changes = _loads_dict(row.get("changes_json"))
        data = dict(changes)
        data["wave_id"] = str(row["mb_project_uuid"])[len("wave_"):]
        data.setdefault("created_at", row.get("created_at"))
        data.setdefault("updated_at", row.get("updated_at"))
        return Wave.from_dict(data)

    def _load_legacy_wave(self, wave_id: str) -> Optional[dict[str, Any]]:
        if not self.db.has_table(MAPPING_TABLE):
            return None
        return self.db.fetch_one(
            "SELECT * FROM migrations_mapping WHERE mb_project_uuid = :key AND brz_project_id = 0",
            {"key": _legacy_wave_key(wave_id)},
        )

    def _save_legacy_wave(self, wave_id: str, changes: dict[str, Any], create: bool = False) -> None:
        now = _now_iso()
        params = {"key": _legacy_wave_key(wave_id), "changes": json.dumps(changes), "now": now}
        updated = self.db.execute(
            "UPDATE migrations_mapping SET changes_json = :changes, updated_at = :now "
            "WHERE mb_project_uuid = :key AND brz_project_id = 0",
            params,
        )
        if updated:
            return
        if not create:
            raise WaveNotFoundError(wave_id)
        self.db.execute(
            "INSERT INTO migrations_mapping (mb_project_uuid, brz_project_id, changes_json, cloning_enabled, created_at, updated_at) "
            "VALUES (:key, 0, :changes, :cloning, :now, :now)",
            {**params, "cloning": False},
        )

    def get_wave(self, wave_id: str) -> Optional[Wave]:
        if self.db.has_table(WAVES_TABLE):
            row = self.db.fetch_one("SELECT * FROM waves WHERE wave_id = :wave_id", {"wave_id": wave_id})
            if row:
                return self._row_to_wave(row)
        legacy = self._load_legacy_wave(wave_id)
        return self._legacy_row_to_wave(legacy) if legacy else None

    def list_waves(self) -> list[Wave]:
        if self.db.has_table(WAVES_TABLE):
            rows = self.db.fetch_all("SELECT * FROM waves ORDER BY created_at DESC, id DESC")
            waves = [self._row_to_wave(row) for row in rows]
        elif self.db.has_table(MAPPING_TABLE):
            rows = self.db.fetch_all(
                "SELECT * FROM migrations_mapping WHERE mb_project_uuid LIKE 'wave_%' AND brz_project_id = 0 "
                "ORDER BY created_at DESC, id DESC"
            )
            waves = [self._legacy_row_to_wave(row) for row in rows]
        else:
            waves = []

        for wave in waves:
            # Only promote toward a terminal state; stored terminal statuses win.
            if wave.status in (STATUS_PENDING, STATUS_IN_PROGRESS):
                wave.status = wave.progress.derive_status(wave.status)
        return waves

    def update_wave_progress(
        self,
        wave_id: str,
        progress: WaveProgress,
        member_statuses: Optional[list[MigrationTask]] = None,
        new_status: Optional[str] = None,
    ) -> None:
        now = _now_iso()
        updated = 0
        if self.db.has_table(WAVES_TABLE):
            params: dict[str, Any] = {
                "wave_id": wave_id,
                "total": progress.total,
                "completed": progress.completed,
                "failed": progress.failed,
                "now": now,
            }
            sets = [
                "progress_total = :total",
                "progress_completed = :completed",
                "progress_failed = :failed",
                "updated_at = :now",
            ]
            if new_status is not None:
                sets.append("status = :status")
                params["status"] = new_status
                if new_status in TERMINAL_STATUSES:
                    sets.append("completed_at = :now")
            with self.db.transaction():
                updated = self.db.execute(f"UPDATE waves SET {', '.join(sets)} WHERE wave_id = :wave_id", params)

        legacy_row = None
        if not updated:
            # No `waves` record: the wave lives in the legacy mapping shape.
            legacy_row = self._load_legacy_wave(wave_id)
            if legacy_row is None:
                raise WaveNotFoundError(wave_id)
            changes = _loads_dict(legacy_row.get("changes_json"))
            changes["progress"] = progress.to_dict()
            if member_statuses:
                changes["migrations"] = [self._legacy_member(task) for task in member_statuses]
            if new_status is not None:
                changes["status"] = new_status
                if new_status in TERMINAL_STATUSES:
                    changes["completed_at"] = now
            with self.db.transaction():
                self._save_legacy_wave(wave_id, changes)

        if member_statuses:
            self._mirror_result_list(wave_id, member_statuses)
            if legacy_row is None:
                self._mirror_legacy_members(wave_id, member_statuses)

    @staticmethod
    def _legacy_member(task: MigrationTask) -> dict[str, Any]:
        item: dict[str, Any] = {
            "mb_project_uuid": task.source_id,
            "brz_project_id": task.target_id or 0,
            "status": task.status,
        }
        if task.error:
            item["error"] = task.error
        return item

    def _mirror_result_list(self, wave_id: str, tasks: list[MigrationTask]) -> None:
        if not self.db.has_table(RESULT_LIST_TABLE):
            return
        for task in tasks:
            try:
                with self.db.transaction():
                    self._write_result_list(wave_id, task.source_id, task.target_id, task.status, task.error, None)
            except StoreError as exc:
                self.db.forget_table(RESULT_LIST_TABLE)
                logger.warning(
                    "Could not mirror status of {} into migration_result_list for wave {}: {}",
                    task.source_id,
                    wave_id,
                    exc,
                )

    def _mirror_legacy_members(self, wave_id: str, tasks: list[MigrationTask]) -> None:
        try:
            legacy_row = self._load_legacy_wave(wave_id)
            if legacy_row is None:
                return
            changes = _loads_dict(legacy_row.get("changes_json"))
            changes["migrations"] = [self._legacy_member(task) for task in tasks]
            with self.db.transaction():
                self._save_legacy_wave(wave_id, changes)
        except (StoreError, WaveNotFoundError) as exc:
            logger.warning("Could not update legacy mapping for wave {}: {}", wave_id, exc)

    def _write_result_list(
        self,
        wave_id: str,
        source_id: str,
        target_id: Optional[int],
        status: Optional[str],
        error: Optional[str],
        payload: Optional[dict[str, Any]],
    ) -> None:
        now = _now_iso()
        existing = self.db.fetch_one(
            "SELECT id, result_json FROM migration_result_list "
            "WHERE migration_uuid = :wave_id AND mb_project_uuid = :source ORDER BY id DESC LIMIT 1",
            {"wave_id": wave_id, "source": source_id},
        )
        data = _loads_dict(existing.get("result_json")) if existing else {}
        if payload:
            data.update(payload)
        if status:
            data["status"] = status
            if status != STATUS_ERROR:
                data.pop("error", None)
        if error:
            data["error"] = error
        if existing:
            sets = ["result_json = :result_json", "updated_at = :now"]
            params: dict[str, Any] = {"id": existing["id"], "result_json": json.dumps(data), "now": now}
            if target_id:
                sets.append("brz_project_id = :target")
                params["target"] = target_id
            self.db.execute(f"UPDATE migration_result_list SET {', '.join(sets)} WHERE id = :id", params)
            return
        self.db.execute(
            "INSERT INTO migration_result_list (migration_uuid, mb_project_uuid, brz_project_id, "
            "brizy_project_domain, result_json, created_at, updated_at) "
            "VALUES (:wave_id, :source, :target, '', :result_json, :now, :now)",
            {
                "wave_id": wave_id,
                "source": source_id,
                "target": target_id or 0,
                "result_json": json.dumps(data),
                "now": now,
            },
        )

    def reset_wave(self, wave_id: str) -> int:
        wave = self.get_wave(wave_id)
        if wave is None:
            raise WaveNotFoundError(wave_id)
        now = _now_iso()
        with self.db.transaction():
            count = self.db.execute(
                "UPDATE migrations SET status = :status, error = NULL, started_at = NULL, "
                "completed_at = NULL, reset_at = :now, updated_at = :now, result_json = :result_json "
                "WHERE wave_id = :wave_id",
                {
                    "status": STATUS_PENDING,
                    "now": now,
                    "wave_id": wave_id,
                    "result_json": json.dumps({"status": STATUS_PENDING, "message": MSG_NOT_STARTED}),
                },
            )
        tasks = self.get_tasks_for_wave(wave_id)
        self.update_wave_progress(
            wave_id,
            WaveProgress(total=wave.progress.total or len(tasks)),
            member_statuses=tasks,
            new_status=STATUS_PENDING,
        )
        if self.db.has_table(WAVES_TABLE):
            self.db.execute("UPDATE waves SET completed_at = NULL WHERE wave_id = :wave_id", {"wave_id": wave_id})
        return count

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _find_row(
        self,
        source_id: str,
        wave_id: Optional[str],
        target_id: Optional[int],
    ) -> Optional[dict[str, Any]]:
        if wave_id:
            row = self.db.fetch_one(
                "SELECT * FROM migrations WHERE wave_id = :wave_id AND mb_project_uuid = :source "
                "ORDER BY id DESC LIMIT 1",
                {"wave_id": wave_id, "source": source_id},
            )
            if row:
                return row
        if target_id:
            # Never steal a row that belongs to a different wave.
            params: dict[str, Any] = {"source": source_id, "target": target_id}
            clause = ""
            if wave_id:
                clause = " AND (wave_id IS NULL OR wave_id = :wave_id)"
                params["wave_id"] = wave_id
            return self.db.fetch_one(
                "SELECT * FROM migrations WHERE mb_project_uuid = :source AND brz_project_id = :target"
                f"{clause} ORDER BY id DESC LIMIT 1",
                params,
            )
        return None

    def _row_to_task(self, row: dict[str, Any]) -> MigrationTask:
        payload = _loads_dict(row.get("result_json"))
        target = _coerce_int(row.get("brz_project_id")) or _result_target(payload)
        return MigrationTask(
            source_id=str(row["mb_project_uuid"]),
            target_id=target or None,
            wave_id=row.get("wave_id"),
            status=_normalize_status(row.get("status")),
            error=row.get("error"),
            result=payload,
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            updated_at=row.get("updated_at"),
            migration_id=_coerce_int(row.get("id")) or None,
            target_domain=row.get("brizy_project_domain"),
        )

    def get_task(
        self,
        source_id: str,
        wave_id: Optional[str] = None,
        target_id: Optional[int] = None,
    ) -> Optional[MigrationTask]:
        row = self._find_row(source_id, wave_id, target_id)
        if row is None and not wave_id and not target_id:
            row = self.db.fetch_one(
                "SELECT * FROM migrations WHERE mb_project_uuid = :source ORDER BY id DESC LIMIT 1",
                {"source": source_id},
            )
        return self._row_to_task(row) if row else None

    def _write_task_row(
        self,
        source_id: str,
        target_id: Optional[int],
        wave_id: Optional[str],
        fields: dict[str, Any],
        *,
        only_non_null: bool,
        clear: tuple[str, ...] = (),
    ) -> dict[str, Any]:
        now = _now_iso()
        with self.db.transaction():
            row = self._find_row(source_id, wave_id, target_id)
            if row is not None:
                values = {k: v for k, v in fields.items() if v is not None} if only_non_null else dict(fields)
                # Target identity is set once and then kept.
                if _coerce_int(row.get("brz_project_id")) > 0:
                    values.pop("brz_project_id", None)
                if wave_id and not row.get("wave_id"):
                    values["wave_id"] = wave_id
                for column in clear:
                    values[column] = None
                values["updated_at"] = now
                sets = ", ".join(f"{key} = :{key}" for key in values)
                self.db.execute(f"UPDATE migrations SET {sets} WHERE id = :row_id", {**values, "row_id": row["id"]})
                row_id = row["id"]
            else:
                values = {k: v for k, v in fields.items() if v is not None}
                values.update(
                    {
                        "mb_project_uuid": source_id,
                        "wave_id": wave_id,
                        "migration_uuid": fields.get("migration_uuid") or wave_id,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                values.setdefault("status", STATUS_PENDING)
                if target_id and not values.get("brz_project_id"):
                    values["brz_project_id"] = target_id
                columns = ", ".join(values)
                placeholders = ", ".join(f":{key}" for key in values)
                self.db.execute(f"INSERT INTO migrations ({columns}) VALUES ({placeholders})", values)
                row_id = None
            fresh = self._find_row(source_id, wave_id, target_id or values.get("brz_project_id"))
            if fresh is None and row_id is not None:
                fresh = self.db.fetch_one("SELECT * FROM migrations WHERE id = :id", {"id": row_id})
            if fresh is None:
                fresh = self.db.fetch_one(
                    "SELECT * FROM migrations WHERE mb_project_uuid = :source ORDER BY id DESC LIMIT 1",
                    {"source": source_id},
                )
        return fresh or {}

    def upsert_task_result(
        self,
        source_id: str,
        target_id: Optional[int],
        wave_id: Optional[str],
        payload: dict[str, Any],
    ) -> MigrationTask:
        payload = dict(payload or {})
        status = _result_status(payload)
        error = _result_error(payload)
        if status is None and error:
            status = STATUS_ERROR
        target = _coerce_int(target_id) or _result_target(payload) or None
        now = _now_iso()
        fields: dict[str, Any] = {
            "brz_project_id": target,
            "brizy_project_domain": payload.get("brizy_project_domain") or None,
            "status": status,
            "error": error,
            "result_json": json.dumps(payload),
            "started_at": payload.get("started_at"),
            "completed_at": payload.get("completed_at") or (now if status in TERMINAL_STATUSES else None),
            "migration_uuid": payload.get("migration_uuid"),
        }
        clear = ("error",) if status and status != STATUS_ERROR else ()
        row = self._write_task_row(source_id, target, wave_id, fields, only_non_null=True, clear=clear)
        if wave_id and self.db.has_table(RESULT_LIST_TABLE):
            try:
                with self.db.transaction():
                    self._write_result_list(wave_id, source_id, target, status, error, payload)
            except StoreError as exc:
                self.db.forget_table(RESULT_LIST_TABLE)
                logger.warning("Could not mirror result of {} into migration_result_list: {}", source_id, exc)
        task = self._row_to_task(row) if row else MigrationTask(source_id=source_id, target_id=target, wave_id=wave_id)
        logger.debug("Stored result for {} (wave={}, status={})", source_id, wave_id, task.status)
        return task

    def save_task(self, task: MigrationTask) -> MigrationTask:
        fields = {
            "brz_project_id": task.target_id,
            "status": task.status,
            "error": task.error,
            "result_json": json.dumps(task.result or {}),
            "started_at": task.started_at,
            "completed_at": task.completed_at,
        }
        if task.target_domain:
            fields["brizy_project_domain"] = task.target_domain
        row = self._write_task_row(task.source_id, task.target_id, task.wave_id, fields, only_non_null=False)
        return self._row_to_task(row) if row else task

    def reset_task(self, source_id: str, target_id: Optional[int], wave_id: Optional[str] = None) -> bool:
        """Return a task to `pending`, clearing its error and timestamps."""
        now = _now_iso()
        with self.db.transaction():
            row = self._find_row(source_id, wave_id, target_id)
            if row is None:
                row = self.db.fetch_one(
                    "SELECT * FROM migrations WHERE mb_project_uuid = :source ORDER BY id DESC LIMIT 1",
                    {"source": source_id},
                )
            if row is None:
                return False
            self.db.execute(
                "UPDATE migrations SET status = :status, error = NULL, started_at = NULL, completed_at = NULL, "
                "reset_at = :now, updated_at = :now, result_json = :result_json WHERE id = :id",
                {
                    "status": STATUS_PENDING,
                    "now": now,
                    "id": row["id"],
                    "result_json": json.dumps({"status": STATUS_PENDING, "message": "Migration reset"}),
                },
            )
        return True

    def get_tasks_for_wave(self, wave_id: str) -> list[MigrationTask]:
        task_rows = self.db.fetch_all(
            "SELECT * FROM migrations WHERE wave_id = :wave_id ORDER BY id ASC", {"wave_id": wave_id}
        )
        result_rows = self._result_list_rows(wave_id)

        order: list[str] = []
        latest_task: dict[str, dict[str, Any]] = {}
        latest_result: dict[str, dict[str, Any]] = {}
        for row in task_rows:
            source = str(row["mb_project_uuid"])
            if source not in order:
                order.append(source)
            current = latest_task.get(source)
            if current is None or _row_time(row) >= _row_time(current):
                latest_task[source] = row
        for row in result_rows:
            source = str(row["mb_project_uuid"])
            if source not in order:
                order.append(source)
            current = latest_result.get(source)
            if current is None or _row_time(row) >= _row_time(current):
                latest_result[source] = row

        wave = self.get_wave(wave_id)
        if wave and wave.member_ids:
            order.sort(key=lambda s: wave.member_ids.index(s) if s in wave.member_ids else len(wave.member_ids))

        cloning = self._cloning_flags()
        tasks: list[MigrationTask] = []
        for source in order:
            tasks.append(self._merge_task(source, wave_id, latest_task.get(source), latest_result.get(source), cloning))
        return tasks

    def _result_list_rows(self, wave_id: str) -> list[dict[str, Any]]:
        if not self.db.has_table(RESULT_LIST_TABLE):
            return []
        try:
            return self.db.fetch_all(
                "SELECT * FROM migration_result_list WHERE migration_uuid = :wave_id ORDER BY id ASC",
                {"wave_id": wave_id},
            )
        except StoreError as exc:
            # The table may be dropped or rebuilt underneath us; task rows still answer.
            self.db.forget_table(RESULT_LIST_TABLE)
            logger.warning("Reading migration_result_list for wave {} failed: {}", wave_id, exc)
            return []

    def _merge_task(
        self,
        source_id: str,
        wave_id: str,
        row: Optional[dict[str, Any]],
        result_row: Optional[dict[str, Any]],
        cloning: dict[int, bool],
    ) -> MigrationTask:
        if row is not None:
            task = self._row_to_task(row)
        else:
            task = MigrationTask(source_id=source_id, wave_id=wave_id, status=STATUS_COMPLETED)

        if result_row is not None:
            payload = _loads_dict(result_row.get("result_json"))
            explicit_newer = row is None or _row_time(result_row) > _row_time(row)
            # A pending task row means a reset happened after the result was written.
            if row is None or (explicit_newer and task.status != STATUS_PENDING):
                status = _result_status(payload)
                if status:
                    task.status = status
                task.error = (_result_error(payload) or task.error) if task.status == STATUS_ERROR else None
                task.result = payload or task.result
                task.updated_at = _row_time(result_row) or task.updated_at
            if not task.target_id:
                task.target_id = _coerce_int(result_row.get("brz_project_id")) or _result_target(payload) or None
            if not task.target_domain and result_row.get("brizy_project_domain"):
                task.target_domain = result_row.get("brizy_project_domain")

        if task.target_id:
            task.cloning_enabled = cloning.get(task.target_id, False)
        task.wave_id = wave_id
        return task

    def _cloning_flags(self) -> dict[int, bool]:
        if not self.db.has_table(MAPPING_TABLE):
            return {}
        try:
            rows = self.db.fetch_all(
                "SELECT brz_project_id, cloning_enabled FROM migrations_mapping WHERE brz_project_id > 0"
            )
        except StoreError as exc:
            self.db.forget_table(MAPPING_TABLE)
            logger.warning("Reading migrations_mapping failed: {}", exc)
            return {}
        return {_coerce_int(r["brz_project_id"]): _coerce_bool(r.get("cloning_enabled")) for r in rows}

    def set_cloning_enabled(self, target_id: int, enabled: bool) -> bool:
        if not self.db.has_table(MAPPING_TABLE):
            logger.warning("migrations_mapping table is missing; cloning flag for {} not stored", target_id)
            return False
        now = _now_iso()
        with self.db.transaction():
            updated = self.db.execute(
                "UPDATE migrations_mapping SET cloning_enabled = :enabled, updated_at = :now "
                "WHERE brz_project_id = :target",
                {"enabled": bool(enabled), "now": now, "target": target_id},
            )
            if updated:
                return True
            owner = self.db.fetch_one(
                "SELECT mb_project_uuid FROM migrations WHERE brz_project_id = :target ORDER BY id DESC LIMIT 1",
                {"target": target_id},
            )
            if owner is None:
                return False
            self.db.execute(
                "INSERT INTO migrations_mapping (mb_project_uuid, brz_project_id, changes_json, cloning_enabled, "
                "created_at, updated_at) VALUES (:source, :target, :changes, :enabled, :now, :now)",
                {
                    "source": owner["mb_project_uuid"],
                    "target": target_id,
                    "changes": json.dumps({}),
                    "enabled": bool(enabled),
                    "now": now,
                },
            )
        return True
