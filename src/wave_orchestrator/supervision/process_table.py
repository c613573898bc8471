from __future__ import annotations

import os
import re
import signal
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional

import psutil
from loguru import logger

from ..utils import _pid_is_running


class ProcessTable(ABC):
    """OS process operations the supervisor depends on."""

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def pids_holding(self, path: Path) -> list[int]:
        raise NotImplementedError

    @abstractmethod
    def pids_matching(self, patterns: Iterable[str]) -> list[int]:
        raise NotImplementedError

    @abstractmethod
    def terminate(self, pid: int, force: bool = False) -> bool:
        raise NotImplementedError

    def describe(self, pid: int) -> dict[str, Any]:
        return {"pid": pid, "alive": self.is_alive(pid)}


class PsutilProcessTable(ProcessTable):
    def __init__(self, exclude_self: bool = True) -> None:
        self._own_pid = os.getpid() if exclude_self else None

    def is_alive(self, pid: int) -> bool:
        if not _pid_is_running(pid):
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def pids_holding(self, path: Path) -> list[int]:
        target = str(path.resolve())
        pids: list[int] = []
        for proc in psutil.process_iter(["pid"]):
            if proc.info["pid"] == self._own_pid:
                continue
            try:
                open_files = proc.open_files()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if any(f.path == target for f in open_files):
                pids.append(proc.info["pid"])
        return pids

    def pids_matching(self, patterns: Iterable[str]) -> list[int]:
        compiled = [re.compile(p) for p in patterns]
        if not compiled:
            return []
        pids: list[int] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            pid = proc.info["pid"]
            if pid == self._own_pid:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or [])
            if cmdline and any(rx.search(cmdline) for rx in compiled):
                pids.append(pid)
        return pids

    def terminate(self, pid: int, force: bool = False) -> bool:
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            logger.warning("Not allowed to signal PID {}: {}", pid, exc)
            return False
        return True

    def describe(self, pid: int) -> dict[str, Any]:
        info: dict[str, Any] = {"pid": pid, "alive": False}
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                info.update(
                    {
                        "alive": proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE,
                        "status": proc.status(),
                        "cmdline": " ".join(proc.cmdline()),
                        "cpu_percent": proc.cpu_percent(interval=None),
                        "memory_rss": proc.memory_info().rss,
                        "create_time": proc.create_time(),
                    }
                )
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            info["alive"] = True
            info["error"] = "access denied"
        return info


def cmdline_patterns(source_id: Optional[str], target_id: int, include_source: bool = False) -> list[str]:
    """Command-line patterns that identify a worker for a task."""
    patterns = [
        rf"migration.*{target_id}",
        rf"brz_project_id.*{target_id}",
        rf"migration_wrapper.*{target_id}",
    ]
    if include_source and source_id:
        patterns.append(rf"{re.escape(source_id)}.*{target_id}")
    return patterns
