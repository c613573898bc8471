"""Run migration waves: provision targets, dispatch jobs and keep wave progress honest."""

from __future__ import annotations

import re
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import Settings
from .constants import (
    DEFAULT_BATCH_SIZE,
    MSG_STALE_LOCK,
    PROVISION_RETRY_DELAY_SECONDS,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    TASK_STATUSES,
    TERMINAL_STATUSES,
)
from .dispatcher import BatchDispatcher
from .errors import ConfigurationError, ProvisioningError, TaskNotFoundError, WaveNotFoundError
from .io_utils import _read_text
from .logging_utils import wave_log_sink
from .models import DispatchRequest, DispatchResult, MigrationTask, Wave, WaveProgress
from .provisioning import ProjectProvisioner
from .storage.interfaces import TaskStore
from .supervision.artifacts import find_latest_lock, migration_log_files, wave_log_files
from .supervision.supervisor import ProcessSupervisor
from .utils import _coerce_int, _now_iso, _normalize_status


_WAVE_ID_RE = re.compile(r"^\d+_\d+$")


def aggregate_status(progress: WaveProgress, tasks: list[MigrationTask], current: str) -> str:
    """Wave status implied by its members.

    Terminal once every member is processed, `in_progress` once any member has
    started, otherwise unchanged (a terminal status falls back to `pending`).
    """
    if progress.is_finished:
        return progress.derive_status(current)
    if any(task.status != STATUS_PENDING for task in tasks) or progress.processed:
        return STATUS_IN_PROGRESS
    return STATUS_PENDING if current in TERMINAL_STATUSES else current


def _read_logs(paths: list[Path]) -> str:
    chunks = []
    for path in paths:
        content = _read_text(path)
        if content:
            chunks.append(f"=== {path.name} ===\n{content}")
    return "\n\n".join(chunks)


class WaveOrchestrator:
    def __init__(
        self,
        store: TaskStore,
        supervisor: ProcessSupervisor,
        dispatcher: BatchDispatcher,
        provisioner: ProjectProvisioner,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.dispatcher = dispatcher
        self.provisioner = provisioner
        self.settings = settings
        self._sleep = sleep
        self._threads: dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()
        self._progress_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_wave(self, wave_id: str) -> Wave:
        wave = self.store.get_wave(wave_id)
        if wave is None:
            raise WaveNotFoundError(wave_id)
        return wave

    def _require_member(self, wave_id: str, source_id: str) -> MigrationTask:
        for task in self.store.get_tasks_for_wave(wave_id):
            if task.source_id == source_id:
                return task
        raise TaskNotFoundError(source_id, wave_id)

    def list_waves(self) -> list[dict[str, Any]]:
        return [wave.to_dict() for wave in self.store.list_waves()]

    def get_wave_mapping(self, wave_id: str) -> list[dict[str, Any]]:
        self._require_wave(wave_id)
        return [
            {
                "source_id": task.source_id,
                "target_id": task.target_id,
                "target_domain": task.target_domain,
                "status": task.status,
                "cloning_enabled": task.cloning_enabled,
            }
            for task in self.store.get_tasks_for_wave(wave_id)
        ]

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def recalculate_wave_progress(self, wave_id: str) -> dict[str, Any]:
        """Recount member statuses and persist the wave's progress and status."""
        with self._progress_lock:
            wave = self._require_wave(wave_id)
            tasks = self.store.get_tasks_for_wave(wave_id)
            total = wave.progress.total or len(wave.member_ids) or len(tasks)
            progress = WaveProgress.from_statuses([task.status for task in tasks], total=total)
            status = aggregate_status(progress, tasks, wave.status)
            self.store.update_wave_progress(wave_id, progress, member_statuses=tasks, new_status=status)
        logger.debug("Wave {} progress {} -> {}", wave_id, progress.to_dict(), status)
        return {"wave_id": wave_id, "status": status, "progress": progress.to_dict()}

    # ------------------------------------------------------------------
    # Create / run
    # ------------------------------------------------------------------

    def _resolve_workspace(self, workspace_name: str) -> int:
        try:
            return self.provisioner.resolve_or_create_workspace(workspace_name)
        except ProvisioningError as exc:
            logger.warning("Workspace '{}' not resolved ({}); retrying once", workspace_name, exc)
            self._sleep(PROVISION_RETRY_DELAY_SECONDS)
            return self.provisioner.resolve_or_create_workspace(workspace_name)

    def create_wave(
        self,
        name: str,
        member_source_ids: list[str],
        workspace_name: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        mgr_manual: bool = False,
        enable_cloning: bool = False,
        run_async: bool = True,
    ) -> dict[str, Any]:
        """Persist a new wave with one pending task per member and start it.

        Raises:
            ValueError: If the name, workspace or member list is empty.
            ProvisioningError: If the target workspace cannot be resolved.
        """
        if not (name or "").strip():
            raise ValueError("Wave name is required")
        if not (workspace_name or "").strip():
            raise ValueError("Workspace name is required")
        if not [m for m in member_source_ids or [] if str(m).strip()]:
            raise ValueError("At least one project uuid is required")

        workspace_id = self._resolve_workspace(workspace_name.strip())
        wave_id = self.store.create_wave(
            name,
            member_source_ids,
            workspace_id,
            workspace_name.strip(),
            concurrency_limit=batch_size,
            manual_mode=mgr_manual,
            enable_cloning=enable_cloning,
        )
        if run_async:
            self.start_wave(wave_id)
        else:
            self.run_wave(wave_id)
        return {
            "wave_id": wave_id,
            "workspace_id": workspace_id,
            "workspace_name": workspace_name.strip(),
            "status": STATUS_IN_PROGRESS,
        }

    def start_wave(self, wave_id: str) -> threading.Thread:
        with self._threads_lock:
            existing = self._threads.get(wave_id)
            if existing and existing.is_alive():
                return existing
            thread = threading.Thread(target=self._run_wave_safely, args=(wave_id,), daemon=True, name=f"wave-{wave_id}")
            self._threads[wave_id] = thread
            thread.start()
        return thread

    def wait_for_wave(self, wave_id: str, timeout: Optional[float] = None) -> bool:
        """Join the background run of a wave. Returns False if it is still running."""
        with self._threads_lock:
            thread = self._threads.get(wave_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run_wave_safely(self, wave_id: str) -> None:
        try:
            self.run_wave(wave_id)
        except Exception:
            logger.bind(wave_id=wave_id).exception("Wave {} failed to run", wave_id)

    def _provision_members(
        self,
        wave: Wave,
        log: Any,
    ) -> tuple[list[DispatchRequest], list[MigrationTask]]:
        site_id, secret = self.settings.require_credentials()
        existing = {task.source_id: task for task in self.store.get_tasks_for_wave(wave.wave_id)}
        requests: list[DispatchRequest] = []
        failures: list[MigrationTask] = []
        for position, source_id in enumerate(wave.member_ids, start=1):
            known = existing.get(source_id)
            target_id = known.target_id if known and known.target_id else None
            try:
                if not target_id:
                    if not wave.workspace_id:
                        raise ProvisioningError(f"Wave {wave.wave_id} has no target workspace")
                    target_id = self.provisioner.resolve_or_create_project(source_id, wave.workspace_id)
                if not target_id or target_id <= 0:
                    raise ProvisioningError(f"No target project for {source_id}")
            except ProvisioningError as exc:
                log.error("Project for {} could not be provisioned: {}", source_id, exc)
                task = known or MigrationTask(source_id=source_id, wave_id=wave.wave_id)
                task.status = STATUS_ERROR
                task.error = str(exc)
                task.completed_at = _now_iso()
                task.result = {"status": STATUS_ERROR, "error": str(exc), "stage": "provisioning"}
                failures.append(self.store.save_task(task))
                continue
            log.info("Member {}/{} {} -> target {}", position, len(wave.member_ids), source_id, target_id)
            requests.append(
                DispatchRequest(
                    source_id=source_id,
                    target_id=target_id,
                    wave_id=wave.wave_id,
                    workspace_id=wave.workspace_id,
                    manual_mode=wave.mgr_manual,
                    site_id=site_id,
                    secret=secret,
                )
            )
        return requests, failures

    def _persist_result(self, wave_id: Optional[str], result: DispatchResult, started_at: str) -> MigrationTask:
        now = _now_iso()
        payload = dict(result.payload or {})
        payload.update(
            {
                "status": result.status,
                "http_code": result.http_code,
                "message": result.message,
            }
        )
        if result.error:
            payload["error"] = result.error
        if result.response_preview:
            payload["response_preview"] = result.response_preview
        if result.stage:
            payload["stage"] = result.stage
        payload["started_at"] = started_at
        if result.status in TERMINAL_STATUSES:
            payload["completed_at"] = now
        return self.store.upsert_task_result(result.source_id, result.target_id, wave_id, payload)

    def run_wave(self, wave_id: str) -> dict[str, Any]:
        """Provision and launch every member of a wave, then record the outcome.

        Raises:
            WaveNotFoundError: If the wave does not exist.
            ConfigurationError: If dashboard credentials are not configured; the
                wave is marked `error` first.
        """
        wave = self._require_wave(wave_id)
        with wave_log_sink(self.settings.log_path, wave_id):
            log = logger.bind(wave_id=wave_id)
            log.info("Starting wave {} ({} members, batch size {})", wave_id, len(wave.member_ids), wave.batch_size)
            try:
                self.settings.require_credentials()
            except ConfigurationError:
                log.error("Dashboard credentials are not configured; wave {} marked as error", wave_id)
                self.store.update_wave_progress(wave_id, wave.progress, new_status=STATUS_ERROR)
                raise

            self.store.update_wave_progress(wave_id, wave.progress, new_status=STATUS_IN_PROGRESS)
            requests, failures = self._provision_members(wave, log)

            started_at = _now_iso()
            for request in requests:
                self.store.upsert_task_result(
                    request.source_id,
                    request.target_id,
                    wave_id,
                    {"status": STATUS_PENDING, "message": "Project ready, launching migration"},
                )
            results = self.dispatcher.dispatch_batch(requests, wave.batch_size)

            launched = 0
            failed = len(failures)
            for result in results:
                self._persist_result(wave_id, result, started_at)
                if result.success:
                    launched += 1
                else:
                    failed += 1
                    log.error("Launch of {} failed: {}", result.source_id, result.error)

            total = len(wave.member_ids)
            tasks = self.store.get_tasks_for_wave(wave_id)
            already_done = sum(1 for task in tasks if task.status == STATUS_COMPLETED)
            progress = WaveProgress(total=total, completed=already_done, failed=failed)
            status = STATUS_ERROR if total and failed >= total else STATUS_IN_PROGRESS
            self.store.update_wave_progress(wave_id, progress, member_statuses=tasks, new_status=status)
            log.info(
                "Wave {} dispatched: {} launched, {} failed, status {}",
                wave_id, launched, failed, status,
            )
        return {"wave_id": wave_id, "status": status, "progress": progress.to_dict(), "launched": launched}

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _monitor_task(self, task: MigrationTask) -> tuple[Optional[dict[str, Any]], bool]:
        """Probe one member and apply the verdict. Returns `(probe, changed)`."""
        if task.is_terminal:
            return None, False

        target_id = task.target_id
        recovered_target = False
        if not target_id:
            found = find_latest_lock(self.supervisor.cache_path, task.source_id)
            if found is None:
                return None, False
            target_id = found[1]
            recovered_target = True

        probe = self.supervisor.probe(task.source_id, target_id, durable_status=task.status)
        new_status = task.status
        error: Optional[str] = None
        completed_at: Optional[str] = None

        stale = (
            probe.lock_exists
            and probe.lock_age_seconds is not None
            and probe.lock_age_seconds > self.supervisor.stale_after
        )
        if probe.running:
            new_status = STATUS_IN_PROGRESS
        elif task.status == STATUS_IN_PROGRESS and (probe.should_reconcile or not probe.lock_exists):
            task.target_id = target_id
            verdict = self.supervisor.reconcile(task)
            new_status = verdict.status
            error = verdict.error
            if new_status == STATUS_ERROR and stale:
                error = MSG_STALE_LOCK
            completed_at = _now_iso()
        elif probe.lock_exists:
            if stale:
                new_status = STATUS_ERROR
                error = MSG_STALE_LOCK
                completed_at = _now_iso()
            else:
                new_status = STATUS_IN_PROGRESS

        if new_status == task.status and not recovered_target:
            return probe.to_dict(), False

        task.target_id = target_id
        task.status = new_status
        task.error = error if new_status == STATUS_ERROR else None
        if completed_at and new_status in TERMINAL_STATUSES:
            task.completed_at = completed_at
        result = dict(task.result or {})
        result["status"] = new_status
        if task.error:
            result["error"] = task.error
        else:
            result.pop("error", None)
        result["detected_by"] = probe.detected_by
        task.result = result
        self.store.save_task(task)
        return probe.to_dict(), True

    def get_wave_details(self, wave_id: str) -> dict[str, Any]:
        """Return the wave with its members after a self-healing monitoring pass."""
        wave = self._require_wave(wave_id)
        probes: dict[str, dict[str, Any]] = {}
        changed = False
        for task in self.store.get_tasks_for_wave(wave_id):
            try:
                probe, task_changed = self._monitor_task(task)
            except OSError as exc:
                logger.warning("Monitoring of {} in wave {} failed: {}", task.source_id, wave_id, exc)
                continue
            if probe is not None:
                probes[task.source_id] = probe
            changed = changed or task_changed

        if changed:
            self.recalculate_wave_progress(wave_id)
            wave = self._require_wave(wave_id)

        tasks = []
        for task in self.store.get_tasks_for_wave(wave_id):
            item = task.to_dict()
            item["probe"] = probes.get(task.source_id)
            tasks.append(item)
        return {"wave": wave.to_dict(), "tasks": tasks, "progress": wave.progress.to_dict()}

    # ------------------------------------------------------------------
    # Restart / reset
    # ------------------------------------------------------------------

    def restart_member(
        self,
        wave_id: str,
        source_id: str,
        params: Optional[dict[str, Any]] = None,
    ) -> DispatchResult:
        """Launch one member again, provisioning its target project if needed.

        Raises:
            WaveNotFoundError: If the wave does not exist.
            TaskNotFoundError: If the source id is not a member of the wave.
            ConfigurationError: If no credentials are available.
        """
        params = params or {}
        wave = self._require_wave(wave_id)
        task = self._require_member(wave_id, source_id)
        site_id, secret = self.settings.require_credentials(params)

        target_id = task.target_id
        if not target_id:
            try:
                if not wave.workspace_id:
                    raise ProvisioningError(f"Wave {wave_id} has no target workspace")
                target_id = self.provisioner.resolve_or_create_project(source_id, wave.workspace_id)
            except ProvisioningError as exc:
                logger.bind(wave_id=wave_id).error("Project for {} could not be provisioned: {}", source_id, exc)
                task.status = STATUS_ERROR
                task.error = str(exc)
                task.completed_at = _now_iso()
                task.result = {"status": STATUS_ERROR, "error": str(exc), "stage": "provisioning"}
                self.store.save_task(task)
                self.recalculate_wave_progress(wave_id)
                return DispatchResult(
                    source_id=source_id,
                    target_id=None,
                    success=False,
                    status=STATUS_ERROR,
                    error=str(exc),
                    stage="provisioning",
                )
            self.store.upsert_task_result(
                source_id, target_id, wave_id,
                {"status": STATUS_PENDING, "message": "Project created, preparing migration"},
            )

        started_at = _now_iso()
        self.store.upsert_task_result(
            source_id, target_id, wave_id,
            {"status": STATUS_IN_PROGRESS, "message": "Migration restarted", "started_at": started_at},
        )
        request = DispatchRequest(
            source_id=source_id,
            target_id=target_id,
            wave_id=wave_id,
            workspace_id=wave.workspace_id,
            manual_mode=_coerce_int(params.get("mgr_manual"), int(wave.mgr_manual)) > 0,
            quality_analysis=bool(params.get("quality_analysis", False)),
            page_slug=params.get("mb_page_slug"),
            site_id=site_id,
            secret=secret,
        )
        with wave_log_sink(self.settings.log_path, wave_id):
            logger.bind(wave_id=wave_id).info("Restarting {} (target {})", source_id, target_id)
            result = self.dispatcher.dispatch_one(request)
            self._persist_result(wave_id, result, started_at)
        self.recalculate_wave_progress(wave_id)
        return result

    def restart_all(
        self,
        wave_id: str,
        source_ids: Optional[list[str]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Clear artifacts of the selected members and relaunch them as one batch."""
        params = params or {}
        wave = self._require_wave(wave_id)
        site_id, secret = self.settings.require_credentials(params)
        selected = set(source_ids or [])
        members = [t for t in self.store.get_tasks_for_wave(wave_id) if not selected or t.source_id in selected]
        if not members:
            raise ValueError(f"No migrations to restart in wave {wave_id}")

        report: dict[str, Any] = {"restarted": 0, "skipped": 0, "errors": 0, "details": []}
        requests: list[DispatchRequest] = []
        details: dict[str, dict[str, Any]] = {}
        for task in members:
            detail: dict[str, Any] = {
                "source_id": task.source_id,
                "target_id": task.target_id,
                "lock_removed": False,
                "cache_cleared": False,
                "status_reset": False,
                "restarted": False,
                "error": None,
            }
            details[task.source_id] = detail
            report["details"].append(detail)
            if not task.target_id:
                detail["error"] = "No target project yet; use restart for this member"
                report["skipped"] += 1
                continue
            try:
                detail["lock_removed"], detail["cache_cleared"] = self.supervisor.clear_artifacts(
                    task.source_id, task.target_id
                )
                detail["status_reset"] = self.store.reset_task(task.source_id, task.target_id, wave_id)
            except OSError as exc:
                detail["error"] = str(exc)
                report["errors"] += 1
                continue
            requests.append(
                DispatchRequest(
                    source_id=task.source_id,
                    target_id=task.target_id,
                    wave_id=wave_id,
                    workspace_id=wave.workspace_id,
                    manual_mode=wave.mgr_manual,
                    site_id=site_id,
                    secret=secret,
                )
            )

        if requests:
            self.store.update_wave_progress(wave_id, wave.progress, new_status=STATUS_IN_PROGRESS)
            started_at = _now_iso()
            with wave_log_sink(self.settings.log_path, wave_id):
                logger.bind(wave_id=wave_id).info("Restarting {} migrations", len(requests))
                for result in self.dispatcher.dispatch_batch(requests, wave.batch_size):
                    self._persist_result(wave_id, result, started_at)
                    detail = details[result.source_id]
                    if result.success:
                        detail["restarted"] = True
                        report["restarted"] += 1
                    else:
                        detail["error"] = result.error
                        report["errors"] += 1
        self.recalculate_wave_progress(wave_id)
        return report

    def reset_wave_status(self, wave_id: str) -> dict[str, Any]:
        """Put every member of a wave back to `pending` without touching workers."""
        count = self.store.reset_wave(wave_id)
        logger.info("Reset {} migrations of wave {}", count, wave_id)
        return {"wave_id": wave_id, "reset": count, "status": STATUS_PENDING}

    # ------------------------------------------------------------------
    # Supervisor delegates
    # ------------------------------------------------------------------

    def _refresh_wave(self, wave_id: Optional[str]) -> None:
        if wave_id and self.store.get_wave(wave_id) is not None:
            self.recalculate_wave_progress(wave_id)

    def kill_task(self, source_id: str, target_id: int, force: bool = False, wave_id: Optional[str] = None) -> dict[str, Any]:
        result = self.supervisor.kill_task(source_id, target_id, force=force, wave_id=wave_id)
        if result.killed:
            self._refresh_wave(wave_id)
        return result.to_dict()

    def hard_reset(self, source_id: str, target_id: int, wave_id: Optional[str] = None) -> dict[str, Any]:
        summary = self.supervisor.hard_reset(source_id, target_id, wave_id=wave_id)
        if summary.status_reset:
            self._refresh_wave(wave_id)
        return summary.to_dict()

    def remove_lock(self, wave_id: str, source_id: str) -> dict[str, Any]:
        task = self._require_member(wave_id, source_id)
        if not task.target_id:
            raise ValueError(f"Migration {source_id} has no target project")
        outcome = self.supervisor.remove_lock(source_id, task.target_id, wave_id=wave_id)
        if outcome["status_updated"]:
            self.recalculate_wave_progress(wave_id)
        return outcome

    def process_info(self, source_id: str, target_id: int) -> dict[str, Any]:
        return self.supervisor.process_info(source_id, target_id)

    # ------------------------------------------------------------------
    # Worker callback
    # ------------------------------------------------------------------

    @staticmethod
    def _webhook_status(payload: dict[str, Any]) -> str:
        raw = payload.get("status")
        if raw:
            status = _normalize_status(raw)
            if status in TASK_STATUSES:
                return status
        return STATUS_ERROR if payload.get("error") else STATUS_COMPLETED

    def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Record a result pushed by the worker when a job finishes.

        Raises:
            ValueError: If `mb_project_uuid` or `brz_project_id` is missing.
        """
        source_id = str(payload.get("mb_project_uuid") or "").strip()
        target_id = _coerce_int(payload.get("brz_project_id"))
        if not source_id or target_id <= 0:
            raise ValueError("mb_project_uuid and brz_project_id are required")

        status = self._webhook_status(payload)
        migration_uuid = str(payload.get("migration_uuid") or "")
        wave_id = migration_uuid if _WAVE_ID_RE.match(migration_uuid) else None
        if wave_id is None:
            existing = self.store.get_task(source_id, None, target_id)
            wave_id = existing.wave_id if existing else None

        stored = dict(payload)
        stored["status"] = status
        if status == STATUS_ERROR and not stored.get("error"):
            stored["error"] = payload.get("message") or "Migration failed"
        if status in TERMINAL_STATUSES:
            stored.setdefault("completed_at", _now_iso())
        task = self.store.upsert_task_result(source_id, target_id, wave_id, stored)
        logger.info("Webhook for {} (target {}, wave {}): {}", source_id, target_id, wave_id, status)

        progress = None
        cloning = False
        if wave_id:
            wave = self.store.get_wave(wave_id)
            if wave is not None:
                progress = self.recalculate_wave_progress(wave_id)
                if status == STATUS_COMPLETED and wave.enable_cloning:
                    cloning = self.update_cloning_enabled(target_id, True)["cloning_enabled"]
        return {
            "source_id": source_id,
            "target_id": target_id,
            "wave_id": wave_id,
            "status": task.status,
            "wave": progress,
            "cloning_enabled": cloning,
        }

    def update_cloning_enabled(self, target_id: int, enabled: bool) -> dict[str, Any]:
        stored = self.store.set_cloning_enabled(target_id, enabled)
        remote = False
        try:
            remote = self.provisioner.set_cloning_link(target_id, enabled)
        except ProvisioningError as exc:
            logger.warning("Cloning link for target {} not updated on the platform: {}", target_id, exc)
        return {"target_id": target_id, "cloning_enabled": enabled, "stored": stored, "remote_updated": remote}

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def get_wave_logs(self, wave_id: str) -> str:
        files = wave_log_files(self.settings.log_path, wave_id)
        if not files:
            return f"No log files for wave {wave_id} (expected wave_{wave_id}_*.log or wave_{wave_id}.log)"
        return _read_logs(files) or "Log files exist but could not be read"

    def get_migration_logs(self, wave_id: str, source_id: str) -> dict[str, Any]:
        task = self._require_member(wave_id, source_id)
        files: list[Path] = []
        if task.target_id:
            files.extend(migration_log_files(self.settings.log_path, task.target_id))
        files.extend(wave_log_files(self.settings.log_path, wave_id))
        return {
            "source_id": source_id,
            "target_id": task.target_id,
            "log_files": [str(p) for p in files],
            "logs": _read_logs(files),
        }
