from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

import httpx
from loguru import logger

from .config import Settings, load_settings
from .dispatcher import BatchDispatcher
from .orchestrator import WaveOrchestrator
from .provisioning import HttpProjectProvisioner, ProjectProvisioner
from .storage import SqlAlchemyExecutor, SqlTaskStore, ensure_schema
from .supervision import ProcessSupervisor, ProcessTable


class WaveContainer:
    """Wire settings, store, supervisor, dispatcher and orchestrator for one project."""

    def __init__(
        self,
        project_dir: Path,
        *,
        settings: Optional[Settings] = None,
        processes: Optional[ProcessTable] = None,
        provisioner: Optional[ProjectProvisioner] = None,
        worker_transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_worker_transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.settings_error: Optional[str] = None
        if settings is None:
            settings, self.settings_error = load_settings(self.project_dir)
            if self.settings_error:
                logger.warning("Using default settings: {}", self.settings_error)
        self.settings = settings

        if self.settings.database_url.startswith("sqlite:///"):
            db_file = Path(self.settings.database_url[len("sqlite:///"):])
            if str(db_file) != ":memory:":
                db_file.parent.mkdir(parents=True, exist_ok=True)
        self.executor = SqlAlchemyExecutor.from_url(self.settings.database_url)
        ensure_schema(self.executor.engine)

        self.store = SqlTaskStore(self.executor)
        self.supervisor = ProcessSupervisor(
            self.store,
            self.settings.cache_path,
            self.settings.log_path,
            processes=processes,
            sleep=sleep,
        )
        self.dispatcher = BatchDispatcher(
            self.settings,
            transport=worker_transport,
            sync_transport=sync_worker_transport,
        )
        self.provisioner = provisioner or HttpProjectProvisioner(
            self.settings.target_api_url,
            self.settings.target_api_token,
            sleep=sleep,
        )
        self.orchestrator = WaveOrchestrator(
            self.store,
            self.supervisor,
            self.dispatcher,
            self.provisioner,
            self.settings,
            sleep=sleep,
        )

    @property
    def project_id(self) -> str:
        return self.project_dir.name

    def reload_settings(self) -> Settings:
        """Re-read the config file; the store keeps its database connection."""
        settings, err = load_settings(self.project_dir)
        if err:
            logger.warning("Settings reload failed: {}", err)
            return self.settings
        settings.database_url = self.settings.database_url
        for key, value in vars(settings).items():
            setattr(self.settings, key, value)
        return self.settings

    def close(self) -> None:
        self.executor.dispose()
