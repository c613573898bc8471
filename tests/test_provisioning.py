"""Tests for the target platform client."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from wave_orchestrator.errors import ProvisioningError
from wave_orchestrator.provisioning import HttpProjectProvisioner


def _provisioner(handler, token: str = "tok") -> tuple[HttpProjectProvisioner, list[float]]:
    sleeps: list[float] = []
    client = HttpProjectProvisioner(
        "https://admin.test/",
        token,
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )
    return client, sleeps


def test_existing_workspace_is_reused() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": 3, "name": "Other"}, {"id": 7, "name": "Clients"}])

    client, _ = _provisioner(handler)

    assert client.resolve_or_create_workspace("Clients") == 7
    assert seen[0].headers["x-auth-user-token"] == "tok"
    assert seen[0].url.path == "/api/2.0/workspaces"
    assert seen[0].url.params["count"] == "100"


def test_project_is_created_when_missing() -> None:
    created: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=[])
        created.append(parse_qs(request.content.decode()))
        return httpx.Response(201, json={"id": 101})

    client, _ = _provisioner(handler)

    assert client.resolve_or_create_project("uuid-a", 7) == 101
    assert created == [{"name": ["uuid-a"], "workspace": ["7"]}]


def test_created_without_id_is_looked_up_again() -> None:
    state = {"created": False}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            state["created"] = True
            return httpx.Response(200, json={})
        items = [{"id": 55, "name": "uuid-a"}] if state["created"] else []
        return httpx.Response(200, json=items)

    client, sleeps = _provisioner(handler)

    assert client.resolve_or_create_project("uuid-a", 7) == 55
    assert sleeps == [1.0]


def test_server_errors_are_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(502)
        return httpx.Response(200, json=[{"id": 9, "name": "Clients"}])

    client, sleeps = _provisioner(handler)

    assert client.find_workspace("Clients") == 9
    assert sleeps == [2.0, 2.0]


def test_connection_errors_exhaust_attempts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, sleeps = _provisioner(handler)

    with pytest.raises(ProvisioningError, match="after 3 attempts"):
        client.find_workspace("Clients")
    assert len(sleeps) == 2


def test_client_errors_are_not_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(403, text="forbidden")

    client, _ = _provisioner(handler)

    with pytest.raises(ProvisioningError, match="HTTP 403"):
        client.find_workspace("Clients")
    assert calls["n"] == 1


def test_missing_token() -> None:
    client, _ = _provisioner(lambda request: httpx.Response(200, json=[]), token="")
    with pytest.raises(ProvisioningError):
        client.resolve_or_create_workspace("Clients")


def test_cloning_link() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": 200})

    client, _ = _provisioner(handler)

    assert client.set_cloning_link(101, True) is True
    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/api/projects/101/cloning_link"
    assert parse_qs(seen[0].content.decode()) == {"enabled": ["1"], "regenerate": ["0"]}
