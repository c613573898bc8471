"""Provide the public `wave_orchestrator` package exports."""

from __future__ import annotations

from .container import WaveContainer
from .orchestrator import WaveOrchestrator

__all__ = ["WaveContainer", "WaveOrchestrator"]
