"""Liveness probes, consulted in order until one reaches a verdict."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..constants import STALE_LOCK_SECONDS, STATUS_IN_PROGRESS
from ..errors import SupervisionAmbiguity
from ..models import ProbeResult
from .artifacts import LockInfo
from .process_table import ProcessTable, cmdline_patterns


@dataclass
class ProbeContext:
    source_id: str
    target_id: int
    lock: LockInfo
    durable_status: Optional[str]
    processes: ProcessTable
    stale_after: int = STALE_LOCK_SECONDS

    def result(self, running: bool, detected_by: str, pid: Optional[int] = None, should_reconcile: bool = False) -> ProbeResult:
        return ProbeResult(
            running=running,
            pid=pid,
            lock_exists=self.lock.exists,
            lock_age_seconds=self.lock.age_seconds,
            lock_path=str(self.lock.path),
            detected_by=detected_by,
            should_reconcile=should_reconcile,
            stage_info=self.lock.stage_info(),
        )


class LivenessProbe(ABC):
    name = "probe"

    @abstractmethod
    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        """Return a verdict, or None to defer to the next probe."""
        raise NotImplementedError


class LockMissingProbe(LivenessProbe):
    name = "no_lock_file"

    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        if ctx.lock.exists:
            return None
        return ctx.result(False, self.name)


class LockPidProbe(LivenessProbe):
    name = "lock_file_pid"

    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        pid = ctx.lock.pid
        if not pid:
            return None
        if ctx.processes.is_alive(pid):
            return ctx.result(True, self.name, pid=pid)
        # The worker died without removing its lock.
        return ctx.result(False, "lock_file_pid_dead", pid=pid, should_reconcile=True)


class RecentLockProbe(LivenessProbe):
    name = "lock_file_timestamp_and_db_status"

    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        age = ctx.lock.age_seconds
        if age is None or age >= ctx.stale_after:
            return None
        if ctx.durable_status != STATUS_IN_PROGRESS:
            return None
        return ctx.result(True, self.name)


class OpenFileProbe(LivenessProbe):
    name = "open_file"

    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        for pid in ctx.processes.pids_holding(ctx.lock.path):
            if ctx.processes.is_alive(pid):
                return ctx.result(True, self.name, pid=pid)
        return None


class CmdlineProbe(LivenessProbe):
    name = "cmdline"

    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        for pid in ctx.processes.pids_matching(cmdline_patterns(ctx.source_id, ctx.target_id)):
            if ctx.processes.is_alive(pid):
                return ctx.result(True, self.name, pid=pid)
        return None


class LockAgeFallbackProbe(LivenessProbe):
    name = "lock_age"

    def check(self, ctx: ProbeContext) -> Optional[ProbeResult]:
        age = ctx.lock.age_seconds
        if age is None:
            raise SupervisionAmbiguity(f"Lock {ctx.lock.path} vanished while probing")
        if age >= ctx.stale_after:
            return ctx.result(False, "lock_file_stale", should_reconcile=True)
        # Grace period for a worker that has not written its pid yet.
        return ctx.result(True, "lock_grace_period")


def default_probes() -> list[LivenessProbe]:
    return [
        LockMissingProbe(),
        LockPidProbe(),
        RecentLockProbe(),
        OpenFileProbe(),
        CmdlineProbe(),
        LockAgeFallbackProbe(),
    ]


def run_probes(probes: list[LivenessProbe], ctx: ProbeContext) -> ProbeResult:
    """Walk the ladder; the first probe with an opinion wins."""
    for probe in probes:
        try:
            verdict = probe.check(ctx)
        except SupervisionAmbiguity as exc:
            logger.debug("Probe {} undecided for {}-{}: {}", probe.name, ctx.source_id, ctx.target_id, exc)
            continue
        if verdict is not None:
            return verdict
    return ctx.result(False, "undetermined", should_reconcile=ctx.lock.exists)
