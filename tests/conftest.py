"""Shared fixtures: a file-backed SQLite store, a fake process table and a fake provisioner."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import httpx
import pytest

from wave_orchestrator.config import Settings
from wave_orchestrator.container import WaveContainer
from wave_orchestrator.errors import ProvisioningError
from wave_orchestrator.provisioning import ProjectProvisioner
from wave_orchestrator.supervision import ProcessTable


class FakeProcessTable(ProcessTable):
    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.holding: dict[str, list[int]] = {}
        self.matching: list[int] = []
        self.terminated: list[tuple[int, bool]] = []
        self.patterns_seen: list[list[str]] = []
        # pid -> number of SIGTERMs it ignores
        self.stubborn: dict[int, int] = {}

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def pids_holding(self, path: Path) -> list[int]:
        return list(self.holding.get(path.name, []))

    def pids_matching(self, patterns: Iterable[str]) -> list[int]:
        self.patterns_seen.append(list(patterns))
        return list(self.matching)

    def terminate(self, pid: int, force: bool = False) -> bool:
        self.terminated.append((pid, force))
        if pid not in self.alive:
            return False
        if not force and self.stubborn.get(pid, 0) > 0:
            self.stubborn[pid] -= 1
            return True
        self.alive.discard(pid)
        return True


class FakeProvisioner(ProjectProvisioner):
    def __init__(self, targets: Optional[dict[str, int]] = None, workspace_id: int = 7) -> None:
        self.targets = dict(targets or {})
        self.workspace_id = workspace_id
        self.failing: set[str] = set()
        self.cloning_calls: list[tuple[int, bool]] = []
        self._next = 500

    def resolve_or_create_workspace(self, name: str) -> int:
        return self.workspace_id

    def resolve_or_create_project(self, name: str, workspace_id: int) -> int:
        if name in self.failing:
            raise ProvisioningError(f"Failed to create project '{name}' in workspace {workspace_id}")
        if name not in self.targets:
            self._next += 1
            self.targets[name] = self._next
        return self.targets[name]

    def set_cloning_link(self, project_id: int, enabled: bool) -> bool:
        self.cloning_calls.append((project_id, enabled))
        return True


WorkerHandler = Callable[[httpx.Request], httpx.Response]


def accept_all(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"status": "started"})


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def processes() -> FakeProcessTable:
    return FakeProcessTable()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner({"a": 101, "b": 102, "c": 103})


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "project_dir": tmp_path,
            "worker_url": "http://worker.test",
            "cache_path": tmp_path / "var" / "cache",
            "log_path": tmp_path / "var" / "log",
            "database_url": f"sqlite:///{tmp_path / 'waves.db'}",
            "webhook_url": "http://dashboard.test/api/webhooks/migration-result",
            "mb_site_id": "31383",
            "mb_secret": "s3cret",
        }
        values.update(overrides)
        settings = Settings(**values)
        settings.cache_path.mkdir(parents=True, exist_ok=True)
        settings.log_path.mkdir(parents=True, exist_ok=True)
        return settings

    return _make


@pytest.fixture
def make_container(
    tmp_path: Path,
    make_settings: Callable[..., Settings],
    processes: FakeProcessTable,
    provisioner: FakeProvisioner,
):
    built: list[WaveContainer] = []

    def _make(handler: WorkerHandler = accept_all, **settings_overrides: Any) -> WaveContainer:
        container = WaveContainer(
            tmp_path,
            settings=make_settings(**settings_overrides),
            processes=processes,
            provisioner=provisioner,
            worker_transport=httpx.MockTransport(handler),
            sync_worker_transport=httpx.MockTransport(handler),
            sleep=lambda seconds: None,
        )
        built.append(container)
        return container

    yield _make
    for container in built:
        container.close()
