from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import (
    KILL_FORCE_WAIT_SECONDS,
    KILL_GRACE_SECONDS,
    MSG_LOCK_REMOVED,
    MSG_TERMINATED,
    STALE_LOCK_SECONDS,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
)
from ..logging_utils import append_task_log
from ..models import HardResetSummary, KillResult, MigrationTask, ProbeResult
from ..storage.interfaces import TaskStore
from ..utils import _now_iso
from .artifacts import (
    cache_file_path,
    lock_path,
    migration_log_files,
    read_lock,
    remove_file,
)
from .log_inspector import CompletionVerdict, detect_completion
from .probes import LivenessProbe, ProbeContext, default_probes, run_probes
from .process_table import ProcessTable, PsutilProcessTable, cmdline_patterns


class ProcessSupervisor:
    """Answer "is this task's worker alive?" and force-stop stuck workers.

    Liveness comes from the worker's lock file, the OS process table and, as a
    last resort, the lock's age. The supervisor proposes status transitions but
    every durable write goes through the task store.
    """

    def __init__(
        self,
        store: TaskStore,
        cache_path: Path,
        log_path: Path,
        *,
        processes: Optional[ProcessTable] = None,
        probes: Optional[list[LivenessProbe]] = None,
        stale_after: int = STALE_LOCK_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.cache_path = cache_path
        self.log_path = log_path
        self.processes = processes or PsutilProcessTable()
        self.probes = probes if probes is not None else default_probes()
        self.stale_after = stale_after
        self._sleep = sleep

    def lock_path(self, source_id: str, target_id: int) -> Path:
        return lock_path(self.cache_path, source_id, target_id)

    def cache_file(self, source_id: str, target_id: int) -> Path:
        return cache_file_path(self.cache_path, source_id, target_id)

    def probe(
        self,
        source_id: str,
        target_id: int,
        durable_status: Optional[str] = None,
        wave_id: Optional[str] = None,
    ) -> ProbeResult:
        lock = read_lock(self.lock_path(source_id, target_id))
        if durable_status is None and lock.exists:
            task = self.store.get_task(source_id, wave_id, target_id)
            durable_status = task.status if task else None
        ctx = ProbeContext(
            source_id=source_id,
            target_id=target_id,
            lock=lock,
            durable_status=durable_status,
            processes=self.processes,
            stale_after=self.stale_after,
        )
        return run_probes(self.probes, ctx)

    def reconcile(self, task: MigrationTask) -> CompletionVerdict:
        """Check the worker's own output before declaring a vanished task failed."""
        logs = migration_log_files(self.log_path, task.target_id) if task.target_id else []
        verdict = detect_completion(task.result, logs)
        logger.info(
            "Reconciled {} (target {}): {} ({})",
            task.source_id,
            task.target_id,
            verdict.status,
            verdict.evidence or verdict.error,
        )
        return verdict

    # ------------------------------------------------------------------
    # Kill / reset
    # ------------------------------------------------------------------

    def _search_pid(self, source_id: str, target_id: int) -> Optional[int]:
        lock_file = self.lock_path(source_id, target_id)
        candidates: list[int] = []
        if lock_file.exists():
            candidates.extend(self.processes.pids_holding(lock_file))
        candidates.extend(self.processes.pids_matching(cmdline_patterns(source_id, target_id)))
        for pid in candidates:
            if self.processes.is_alive(pid):
                return pid
        return None

    def _terminate(self, pid: int, force: bool) -> tuple[bool, bool]:
        """Signal, wait, re-check and escalate once. Returns `(dead, forced)`."""
        self.processes.terminate(pid, force=force)
        self._sleep(KILL_GRACE_SECONDS)
        if not self.processes.is_alive(pid):
            return True, force
        self.processes.terminate(pid, force=True)
        self._sleep(KILL_FORCE_WAIT_SECONDS)
        return not self.processes.is_alive(pid), True

    def kill_task(
        self,
        source_id: str,
        target_id: int,
        force: bool = False,
        wave_id: Optional[str] = None,
    ) -> KillResult:
        task = self.store.get_task(source_id, wave_id, target_id)
        status = task.status if task else None
        probe = self.probe(source_id, target_id, durable_status=status)
        pid = probe.pid if probe.running and probe.pid else None
        if pid is None:
            pid = self._search_pid(source_id, target_id)
        if pid is None:
            return KillResult(killed=False, pid=None, message="No running worker process found")

        logger.info("Stopping worker PID {} for {}-{} (force={})", pid, source_id, target_id, force)
        dead, forced = self._terminate(pid, force)
        if not dead:
            logger.warning("Worker PID {} for {}-{} survived SIGKILL", pid, source_id, target_id)
            return KillResult(killed=False, pid=pid, forced=forced, message=f"Process {pid} is still running")

        if task is not None and status == STATUS_IN_PROGRESS:
            task.status = STATUS_ERROR
            task.error = MSG_TERMINATED.format(pid=pid)
            task.completed_at = _now_iso()
            self.store.save_task(task)
        return KillResult(killed=True, pid=pid, forced=forced, message=f"Process {pid} terminated")

    def _reset_candidates(self, source_id: str, target_id: int, summary: HardResetSummary) -> list[int]:
        lock_file = self.lock_path(source_id, target_id)
        lock = read_lock(lock_file)
        own_pid = os.getpid()
        found: list[int] = []

        def _add(pids: list[int], origin: str) -> None:
            for pid in pids:
                if pid and pid != own_pid and pid not in found:
                    found.append(pid)
                    summary.messages.append(f"PID {pid} found via {origin}")

        if lock.pid and self.processes.is_alive(lock.pid):
            _add([lock.pid], "lock file")
        if lock.exists:
            _add(self.processes.pids_holding(lock_file), "open lock file")
        _add(self.processes.pids_matching(cmdline_patterns(source_id, target_id, include_source=True)), "command line")
        if lock.wrapper_script:
            _add(self.processes.pids_matching([re.escape(Path(lock.wrapper_script).name)]), "wrapper script")
        return found

    def hard_reset(self, source_id: str, target_id: int, wave_id: Optional[str] = None) -> HardResetSummary:
        """Kill any worker, delete lock and cache, and put the task back to pending.

        Each step runs even when an earlier one failed; the summary says what
        actually happened.
        """
        summary = HardResetSummary()

        try:
            candidates = self._reset_candidates(source_id, target_id, summary)
        except Exception as exc:
            logger.warning("Process discovery failed for {}-{}: {}", source_id, target_id, exc)
            summary.messages.append(f"Process discovery failed: {exc}")
            candidates = []
        for pid in candidates:
            try:
                dead, _ = self._terminate(pid, force=False)
            except Exception as exc:
                logger.warning("Could not stop PID {}: {}", pid, exc)
                summary.messages.append(f"Failed to stop PID {pid}: {exc}")
                continue
            if dead:
                summary.killed_pids.append(pid)
                summary.messages.append(f"PID {pid} terminated")
            else:
                summary.messages.append(f"PID {pid} is still running")
        summary.process_killed = bool(summary.killed_pids)

        for attr, path, label in (
            ("lock_removed", self.lock_path(source_id, target_id), "Lock file"),
            ("cache_removed", self.cache_file(source_id, target_id), "Cache file"),
        ):
            try:
                removed = remove_file(path)
            except OSError as exc:
                logger.warning("Could not delete {}: {}", path, exc)
                summary.messages.append(f"{label} not removed: {exc}")
                continue
            setattr(summary, attr, removed)
            summary.messages.append(f"{label} removed" if removed else f"{label} not present")

        try:
            summary.status_reset = self.store.reset_task(source_id, target_id, wave_id)
            summary.messages.append("Status reset to pending" if summary.status_reset else "No stored task to reset")
        except Exception as exc:
            logger.warning("Could not reset status of {}-{}: {}", source_id, target_id, exc)
            summary.messages.append(f"Status not reset: {exc}")

        logs = migration_log_files(self.log_path, target_id)
        if logs:
            append_task_log(
                logs[0],
                "HardReset",
                f"source={source_id} target={target_id} killed={summary.killed_pids} "
                f"lock_removed={summary.lock_removed} cache_removed={summary.cache_removed} "
                f"status_reset={summary.status_reset}",
            )
        logger.info("Hard reset of {}-{} finished: {}", source_id, target_id, summary.to_dict())
        return summary

    def remove_lock(self, source_id: str, target_id: int, wave_id: Optional[str] = None) -> dict[str, Any]:
        path = self.lock_path(source_id, target_id)
        removed = remove_file(path)
        status_updated = False
        if removed:
            task = self.store.get_task(source_id, wave_id, target_id)
            if task is not None and task.status == STATUS_IN_PROGRESS:
                task.status = STATUS_ERROR
                task.error = MSG_LOCK_REMOVED
                task.completed_at = _now_iso()
                self.store.save_task(task)
                status_updated = True
        return {"lock_removed": removed, "status_updated": status_updated, "lock_path": str(path)}

    def clear_artifacts(self, source_id: str, target_id: int) -> tuple[bool, bool]:
        return (
            remove_file(self.lock_path(source_id, target_id)),
            remove_file(self.cache_file(source_id, target_id)),
        )

    def process_info(self, source_id: str, target_id: int) -> dict[str, Any]:
        probe = self.probe(source_id, target_id)
        info: dict[str, Any] = {"probe": probe.to_dict(), "process": None}
        if probe.pid:
            info["process"] = self.processes.describe(probe.pid)
        return info
