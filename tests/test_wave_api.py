"""Test the FastAPI wave endpoints with an injected container."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from wave_orchestrator.server import create_app


def _worker(request: httpx.Request) -> httpx.Response:
    if request.url.params["mb_project_uuid"] == "c":
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
    return httpx.Response(200, json={"status": "started"})


@pytest.fixture
def container(make_container):
    return make_container(_worker)


@pytest.fixture
def client(container) -> TestClient:
    return TestClient(create_app(container=container))


def _create(client: TestClient, container, members=("a", "b", "c"), **extra) -> str:
    body = {"name": "Wave 1", "project_uuids": list(members), "workspace_name": "Clients", **extra}
    resp = client.post("/api/waves", json=body)
    assert resp.status_code == 200, resp.text
    wave_id = resp.json()["data"]["wave_id"]
    assert container.orchestrator.wait_for_wave(wave_id, timeout=30)
    return wave_id


def test_health(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/").json()["status"] == "running"


def test_create_and_inspect_wave(client: TestClient, container) -> None:
    wave_id = _create(client, container)

    listed = client.get("/api/waves").json()["data"]
    assert [w["wave_id"] for w in listed] == [wave_id]

    status = client.get(f"/api/waves/{wave_id}/status").json()["data"]
    assert status["status"] == "in_progress"
    assert status["progress"]["total"] == 3

    mapping = client.get(f"/api/waves/{wave_id}/mapping").json()["data"]
    assert {m["source_id"]: m["target_id"] for m in mapping} == {"a": 101, "b": 102, "c": 103}


def test_create_wave_validation(client: TestClient) -> None:
    resp = client.post("/api/waves", json={"name": "W", "project_uuids": ["a"], "workspace_name": "X", "batch_size": 0})
    assert resp.status_code == 422

    resp = client.post("/api/waves", json={"name": "W", "project_uuids": [], "workspace_name": "X"})
    assert resp.status_code == 400


def test_unknown_wave_is_404(client: TestClient) -> None:
    assert client.get("/api/waves/1_1").status_code == 404
    assert client.post("/api/waves/1_1/reset-status").status_code == 404


def test_webhook_updates_progress(client: TestClient, container) -> None:
    wave_id = _create(client, container)

    resp = client.post(
        "/api/webhooks/migration-result",
        json={"mb_project_uuid": "a", "brz_project_id": 101, "migration_uuid": wave_id, "status": "success"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["wave"]["progress"] == {"total": 3, "completed": 1, "failed": 1}

    bad = client.post("/api/webhooks/migration-result", json={"status": "success"})
    assert bad.status_code == 400


def test_restart_member(client: TestClient, container) -> None:
    wave_id = _create(client, container)

    resp = client.post(f"/api/waves/{wave_id}/migrations/a/restart", json={"quality_analysis": True})
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    assert client.post(f"/api/waves/{wave_id}/migrations/zzz/restart").status_code == 404


def test_restart_all_reports_failures(client: TestClient, container) -> None:
    wave_id = _create(client, container)

    resp = client.post(f"/api/waves/{wave_id}/restart-all", json={"mb_uuids": ["b", "c"]})

    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is False
    assert body["data"]["restarted"] == 1
    assert body["data"]["errors"] == 1


def test_restart_without_credentials_is_422(make_container) -> None:
    container = make_container(_worker, mb_site_id=None, mb_secret=None)
    client = TestClient(create_app(container=container))
    wave_id = container.store.create_wave("Wave", ["a"], 7)

    assert client.post(f"/api/waves/{wave_id}/migrations/a/restart").status_code == 422


def test_task_endpoints(client: TestClient, container) -> None:
    wave_id = _create(client, container)
    container.supervisor.lock_path("a", 101).write_text("", encoding="utf-8")

    process = client.get("/api/tasks/a/101/process").json()["data"]
    assert process["probe"]["lock_exists"] is True

    kill = client.post("/api/tasks/a/101/kill", json={"wave_id": wave_id}).json()
    assert kill["success"] is False
    assert kill["data"]["message"] == "No running worker process found"

    unlock = client.delete(f"/api/waves/{wave_id}/migrations/a/lock").json()["data"]
    assert unlock["lock_removed"] is True

    reset = client.post("/api/tasks/b/102/hard-reset", json={"wave_id": wave_id}).json()["data"]
    assert reset["status_reset"] is True


def test_cloning_and_logs(client: TestClient, container, provisioner) -> None:
    wave_id = _create(client, container)

    resp = client.post(f"/api/waves/{wave_id}/projects/101/cloning", json={"cloning_enabled": True})
    assert resp.json()["data"]["cloning_enabled"] is True
    assert provisioner.cloning_calls == [(101, True)]

    logs = client.get(f"/api/waves/{wave_id}/logs").json()["data"]["logs"]
    assert f"Starting wave {wave_id}" in logs

    member = client.get(f"/api/waves/{wave_id}/migrations/a/logs").json()["data"]
    assert member["target_id"] == 101


def test_settings_are_masked_and_editable(client: TestClient, tmp_path: Path) -> None:
    current = client.get("/api/settings").json()["data"]
    assert current["mb_secret"] == "***"

    resp = client.put(
        "/api/settings",
        json={"mb_site_id": "999", "mb_secret": "new-secret", "webhook_url": "http://hooks.test/cb"},
    )

    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["mb_site_id"] == "999"
    assert data["mb_secret"] == "***"
    assert data["webhook_url"] == "http://hooks.test/cb"
    assert (tmp_path / ".wave_orchestrator" / "config.yaml").exists()


def test_missing_result_list_does_not_break_status(client: TestClient, container) -> None:
    wave_id = _create(client, container)
    container.store.db.execute("DROP TABLE migration_result_list")

    resp = client.get(f"/api/waves/{wave_id}")

    assert resp.status_code == 200, resp.text
    assert len(resp.json()["data"]["tasks"]) == 3


def test_store_failure_is_503(client: TestClient, container) -> None:
    wave_id = _create(client, container)
    container.store.db.execute("DROP TABLE migrations")

    assert client.get(f"/api/waves/{wave_id}").status_code == 503
