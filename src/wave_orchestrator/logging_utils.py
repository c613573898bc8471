"""Configure loguru sinks for the CLI, the server and per-wave log files."""

from __future__ import annotations

import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> | "
            "{message}"
        ),
    )


def wave_log_path(log_path: Path, wave_id: str) -> Path:
    return log_path / f"wave_{wave_id}.log"


@contextmanager
def wave_log_sink(log_path: Path, wave_id: str) -> Iterator[None]:
    """Mirror records bound with `wave_id` into `wave_{wave_id}.log`.

    Usage::

        with wave_log_sink(settings.log_path, wave_id):
            logger.bind(wave_id=wave_id).info("...")
    """
    log_path.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(
        str(wave_log_path(log_path, wave_id)),
        level="DEBUG",
        format="[{time:YYYY-MM-DD HH:mm:ss}] [{level}] {message}",
        filter=lambda record: record["extra"].get("wave_id") == wave_id,
        enqueue=False,
    )
    try:
        yield
    finally:
        logger.remove(sink_id)


def append_task_log(path: Path, tag: str, message: str) -> bool:
    """Append a single tagged line to a worker log. Returns False if the file is not writable."""
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] [{tag}] {message}\n")
    except OSError as exc:
        logger.warning("Could not append to {}: {}", path, exc)
        return False
    return True
