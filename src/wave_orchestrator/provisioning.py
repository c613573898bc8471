"""Resolve or create target workspaces and projects on the target platform."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx
from loguru import logger

from .constants import (
    DEFAULT_TARGET_API_URL,
    PROVISION_RETRY_DELAY_SECONDS,
    TARGET_API_CONNECT_TIMEOUT,
    TARGET_API_MAX_ATTEMPTS,
    TARGET_API_RETRY_DELAY_SECONDS,
    TARGET_API_TIMEOUT,
)
from .errors import ProvisioningError
from .utils import _coerce_int


class ProjectProvisioner(ABC):
    @abstractmethod
    def resolve_or_create_workspace(self, name: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def resolve_or_create_project(self, name: str, workspace_id: int) -> int:
        raise NotImplementedError

    def set_cloning_link(self, project_id: int, enabled: bool) -> bool:
        return False


def _find_id_by_name(items: Any, name: str) -> Optional[int]:
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and item.get("name") == name:
            found = _coerce_int(item.get("id"))
            return found or None
    return None


class HttpProjectProvisioner(ProjectProvisioner):
    """Talk to the target platform's REST API with an `x-auth-user-token` header."""

    WORKSPACES = "/api/2.0/workspaces"
    PROJECTS = "/api/2.0/projects"

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = (base_url or DEFAULT_TARGET_API_URL).rstrip("/")
        self.token = token
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.Client:
        if not self.token:
            raise ProvisioningError("Target API token is not configured")
        return httpx.Client(
            base_url=self.base_url,
            headers={"x-auth-user-token": self.token},
            timeout=httpx.Timeout(TARGET_API_TIMEOUT, connect=TARGET_API_CONNECT_TIMEOUT),
            follow_redirects=True,
            transport=self._transport,
        )

    def _request(self, method: str, path: str, data: Optional[dict[str, Any]] = None) -> Any:
        """Send a request, retrying connection failures and 5xx responses.

        Raises:
            ProvisioningError: On 4xx responses or when every attempt failed.
        """
        last_error = ""
        with self._client() as client:
            for attempt in range(1, TARGET_API_MAX_ATTEMPTS + 1):
                try:
                    if method == "GET":
                        response = client.request(method, path, params=data)
                    else:
                        response = client.request(method, path, data=data or {})
                except httpx.HTTPError as exc:
                    last_error = str(exc) or exc.__class__.__name__
                    logger.warning(
                        "Target API {} {} failed (attempt {}/{}): {}",
                        method, path, attempt, TARGET_API_MAX_ATTEMPTS, last_error,
                    )
                else:
                    if 400 <= response.status_code < 500:
                        raise ProvisioningError(
                            f"API request failed: HTTP {response.status_code} - {response.text[:500]}"
                        )
                    if response.status_code < 400:
                        try:
                            return response.json()
                        except ValueError:
                            return {"status": response.status_code, "body": response.text}
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Target API {} {} returned {} (attempt {}/{})",
                        method, path, response.status_code, attempt, TARGET_API_MAX_ATTEMPTS,
                    )
                if attempt < TARGET_API_MAX_ATTEMPTS:
                    self._sleep(TARGET_API_RETRY_DELAY_SECONDS)
        raise ProvisioningError(f"Request failed after {TARGET_API_MAX_ATTEMPTS} attempts: {last_error}")

    def find_workspace(self, name: str) -> Optional[int]:
        return _find_id_by_name(self._request("GET", self.WORKSPACES, {"page": 1, "count": 100}), name)

    def find_project(self, name: str, workspace_id: int) -> Optional[int]:
        items = self._request("GET", self.PROJECTS, {"page": 1, "count": 100, "workspace": workspace_id})
        return _find_id_by_name(items, name)

    def resolve_or_create_workspace(self, name: str) -> int:
        if not name:
            raise ProvisioningError("Workspace name is required")
        workspace_id = self.find_workspace(name)
        if workspace_id:
            logger.info("Using existing workspace '{}' (ID {})", name, workspace_id)
            return workspace_id

        created = self._request("POST", self.WORKSPACES, {"name": name})
        workspace_id = _coerce_int(created.get("id")) if isinstance(created, dict) else 0
        if not workspace_id:
            # Some deployments answer without the id; the list catches up shortly after.
            self._sleep(PROVISION_RETRY_DELAY_SECONDS)
            workspace_id = self.find_workspace(name) or 0
        if not workspace_id:
            raise ProvisioningError(f"Failed to create workspace '{name}'")
        logger.info("Created workspace '{}' (ID {})", name, workspace_id)
        return workspace_id

    def resolve_or_create_project(self, name: str, workspace_id: int) -> int:
        project_id = self.find_project(name, workspace_id)
        if project_id:
            return project_id

        created = self._request("POST", self.PROJECTS, {"name": name, "workspace": workspace_id})
        project_id = _coerce_int(created.get("id")) if isinstance(created, dict) else 0
        if not project_id:
            self._sleep(PROVISION_RETRY_DELAY_SECONDS)
            project_id = self.find_project(name, workspace_id) or 0
        if not project_id:
            raise ProvisioningError(f"Failed to create project '{name}' in workspace {workspace_id}")
        logger.info("Created project '{}' (ID {}) in workspace {}", name, project_id, workspace_id)
        return project_id

    def set_cloning_link(self, project_id: int, enabled: bool) -> bool:
        response = self._request(
            "PUT",
            f"/api/projects/{project_id}/cloning_link",
            {"enabled": 1 if enabled else 0, "regenerate": 0},
        )
        return isinstance(response, dict) and response.get("status") == 200
