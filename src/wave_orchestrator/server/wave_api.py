from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..config import save_settings
from ..container import WaveContainer
from ..errors import (
    ConfigurationError,
    ProvisioningError,
    StoreError,
    TaskNotFoundError,
    WaveNotFoundError,
)


class CreateWaveRequest(BaseModel):
    name: str
    project_uuids: list[str] = Field(default_factory=list)
    workspace_name: str
    batch_size: int = Field(default=3, ge=1)
    mgr_manual: bool = False
    enable_cloning: bool = False


class RestartMemberRequest(BaseModel):
    mb_site_id: Optional[str] = None
    mb_secret: Optional[str] = None
    mgr_manual: Optional[bool] = None
    quality_analysis: bool = False
    mb_page_slug: Optional[str] = None


class RestartAllRequest(BaseModel):
    mb_uuids: list[str] = Field(default_factory=list)
    mb_site_id: Optional[str] = None
    mb_secret: Optional[str] = None


class CloningRequest(BaseModel):
    cloning_enabled: bool


class KillRequest(BaseModel):
    force: bool = False
    wave_id: Optional[str] = None


class HardResetRequest(BaseModel):
    wave_id: Optional[str] = None


class UpdateSettingsRequest(BaseModel):
    mb_site_id: Optional[str] = None
    mb_secret: Optional[str] = None
    webhook_url: Optional[str] = None
    worker_url: Optional[str] = None
    target_api_url: Optional[str] = None
    target_api_token: Optional[str] = None


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except (WaveNotFoundError, TaskNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except ProvisioningError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def create_wave_router(resolve_container: Callable[[Optional[str]], WaveContainer]) -> APIRouter:
    """Routes for waves, member tasks, the worker callback and dashboard settings.

    Handlers are plain functions: FastAPI runs them in its threadpool, which
    lets the dispatcher drive its own event loop.
    """
    router = APIRouter(prefix="/api", tags=["waves"])

    def _ctx(project_dir: Optional[str]) -> WaveContainer:
        return resolve_container(project_dir)

    # ------------------------------------------------------------------
    # Waves
    # ------------------------------------------------------------------

    @router.get("/waves")
    def list_waves(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.list_waves())

    @router.post("/waves")
    def create_wave(body: CreateWaveRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            created = container.orchestrator.create_wave(
                body.name,
                body.project_uuids,
                body.workspace_name,
                batch_size=body.batch_size,
                mgr_manual=body.mgr_manual,
                enable_cloning=body.enable_cloning,
            )
        return _ok(created)

    @router.get("/waves/{wave_id}")
    def get_wave(wave_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.get_wave_details(wave_id))

    @router.get("/waves/{wave_id}/status")
    def wave_status(wave_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            details = container.orchestrator.get_wave_details(wave_id)
        wave = details["wave"]
        return _ok({"wave_id": wave_id, "status": wave["status"], "progress": details["progress"]})

    @router.get("/waves/{wave_id}/mapping")
    def wave_mapping(wave_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.get_wave_mapping(wave_id))

    @router.post("/waves/{wave_id}/reset-status")
    def reset_wave_status(wave_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.reset_wave_status(wave_id))

    @router.post("/waves/{wave_id}/restart-all")
    def restart_all(
        wave_id: str,
        body: Optional[RestartAllRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        container = _ctx(project_dir)
        body = body or RestartAllRequest()
        params = body.model_dump(exclude_none=True, exclude={"mb_uuids"})
        with _http_errors():
            report = container.orchestrator.restart_all(wave_id, body.mb_uuids or None, params)
        return {"success": report["errors"] == 0, "data": report}

    @router.post("/waves/{wave_id}/migrations/{source_id}/restart")
    def restart_member(
        wave_id: str,
        source_id: str,
        body: Optional[RestartMemberRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        container = _ctx(project_dir)
        params = (body or RestartMemberRequest()).model_dump(exclude_none=True)
        with _http_errors():
            result = container.orchestrator.restart_member(wave_id, source_id, params)
        return {"success": result.success, "data": result.to_dict()}

    @router.get("/waves/{wave_id}/logs")
    def wave_logs(wave_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        return _ok({"wave_id": wave_id, "logs": container.orchestrator.get_wave_logs(wave_id)})

    @router.get("/waves/{wave_id}/migrations/{source_id}/logs")
    def migration_logs(wave_id: str, source_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.get_migration_logs(wave_id, source_id))

    @router.delete("/waves/{wave_id}/migrations/{source_id}/lock")
    def remove_lock(wave_id: str, source_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.remove_lock(wave_id, source_id))

    @router.post("/waves/{wave_id}/projects/{target_id}/cloning")
    def update_cloning(
        wave_id: str,
        target_id: int,
        body: CloningRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.update_cloning_enabled(target_id, body.cloning_enabled))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @router.post("/tasks/{source_id}/{target_id}/kill")
    def kill_task(
        source_id: str,
        target_id: int,
        body: Optional[KillRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        container = _ctx(project_dir)
        body = body or KillRequest()
        with _http_errors():
            result = container.orchestrator.kill_task(source_id, target_id, force=body.force, wave_id=body.wave_id)
        return {"success": result["killed"], "data": result}

    @router.post("/tasks/{source_id}/{target_id}/hard-reset")
    def hard_reset(
        source_id: str,
        target_id: int,
        body: Optional[HardResetRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        container = _ctx(project_dir)
        wave_id = body.wave_id if body else None
        with _http_errors():
            return _ok(container.orchestrator.hard_reset(source_id, target_id, wave_id=wave_id))

    @router.get("/tasks/{source_id}/{target_id}/process")
    def process_info(source_id: str, target_id: int, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        return _ok(container.orchestrator.process_info(source_id, target_id))

    # ------------------------------------------------------------------
    # Worker callback and settings
    # ------------------------------------------------------------------

    @router.post("/webhooks/migration-result")
    def migration_result(payload: dict[str, Any], project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        with _http_errors():
            return _ok(container.orchestrator.handle_webhook(payload))

    @router.get("/settings")
    def get_settings(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        return _ok(container.settings.public_dict())

    @router.put("/settings")
    def put_settings(body: UpdateSettingsRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = _ctx(project_dir)
        _, err = save_settings(container.project_dir, body.model_dump(exclude_none=True))
        if err:
            raise HTTPException(status_code=400, detail=err)
        return _ok(container.reload_settings().public_dict())

    return router
