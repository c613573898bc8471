"""Exception types raised by the wave engine."""

from __future__ import annotations


class WaveOrchestratorError(RuntimeError):
    """Base class for every error raised by this package."""


class ConfigurationError(WaveOrchestratorError):
    """Required credentials or settings are missing."""


class ProvisioningError(WaveOrchestratorError):
    """A target workspace or project could not be resolved or created."""


class DispatchError(WaveOrchestratorError):
    """A job-start request could not be delivered to the worker service."""

    def __init__(self, message: str, http_code: int = 0, timed_out: bool = False) -> None:
        super().__init__(message)
        self.http_code = http_code
        self.timed_out = timed_out


class SupervisionAmbiguity(WaveOrchestratorError):
    """A liveness probe cannot decide; the next probe in the ladder is consulted."""


class ReconciliationError(WaveOrchestratorError):
    """A worker disappeared without leaving a verifiable outcome."""


class StoreError(WaveOrchestratorError):
    """The durable store is unreachable or rejected a primary write."""


class WaveNotFoundError(WaveOrchestratorError, LookupError):
    def __init__(self, wave_id: str) -> None:
        super().__init__(f"Wave not found: {wave_id}")
        self.wave_id = wave_id


class TaskNotFoundError(WaveOrchestratorError, LookupError):
    def __init__(self, source_id: str, wave_id: str | None = None) -> None:
        where = f" in wave {wave_id}" if wave_id else ""
        super().__init__(f"Migration {source_id} not found{where}")
        self.source_id = source_id
        self.wave_id = wave_id
