"""FastAPI web server for the wave dashboard."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..container import WaveContainer
from .wave_api import create_wave_router


def create_app(
    project_dir: Optional[Path] = None,
    container: Optional[WaveContainer] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        container: Pre-built container, used by tests to inject fakes.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Wave Orchestrator",
        description="Launch, supervise and reconcile migration waves",
        version="1.0.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    default_dir = (container.project_dir if container else (project_dir or Path.cwd())).resolve()
    app.state.default_project_dir = default_dir
    app.state.containers = {default_dir: container} if container else {}
    containers_lock = threading.Lock()

    def _resolve_container(project_dir_param: Optional[str] = None) -> WaveContainer:
        path = Path(project_dir_param).resolve() if project_dir_param else default_dir
        with containers_lock:
            cached = app.state.containers.get(path)
            if cached is None:
                cached = WaveContainer(path)
                app.state.containers[path] = cached
        return cached

    @app.get("/")
    async def root():
        return {"name": "Wave Orchestrator", "version": "1.0.0", "status": "running"}

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    app.include_router(create_wave_router(_resolve_container))
    return app
