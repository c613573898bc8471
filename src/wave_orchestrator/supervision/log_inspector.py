"""Decide whether a worker that is gone actually finished its job."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..constants import LOG_TAIL_CHARS, MSG_WORKER_VANISHED, STATUS_COMPLETED, STATUS_ERROR
from ..errors import ReconciliationError
from ..io_utils import _read_text


_SUCCESS_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"Project migration completed successfully",
        r"migration completed successfully",
        r"Migration finished successfully",
        r"Migration process completed",
        r"finalSuccess.*status.*success",
        r"Status.*Total.*Success",
    )
]

_CRITICAL_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"Fatal error",
        r"Critical error",
        r"Migration failed",
        r"Exception.*migration",
    )
]

_FINISHED_WORDS = ("completed", "finished")


@dataclass
class CompletionVerdict:
    status: str
    error: Optional[str] = None
    evidence: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == STATUS_COMPLETED


def result_reports_success(result: Optional[dict[str, Any]]) -> bool:
    if not isinstance(result, dict) or not result:
        return False
    value = result.get("value")
    if isinstance(value, dict) and str(value.get("status", "")).lower() == "success":
        return True
    return str(result.get("status", "")).lower() in {"success", "completed"}


def scan_log_text(text: str) -> Optional[str]:
    """Return the evidence string when a log shows a successful run, else None."""
    if not text:
        return None
    for rx in _SUCCESS_PATTERNS:
        match = rx.search(text)
        if match:
            return match.group(0)
    if any(rx.search(text) for rx in _CRITICAL_PATTERNS):
        return None
    tail = text[-LOG_TAIL_CHARS:].lower()
    for word in _FINISHED_WORDS:
        if word in tail:
            return f"log tail mentions '{word}'"
    return None


def find_success_evidence(result: Optional[dict[str, Any]], log_files: list[Path]) -> str:
    """Return where success was found for a worker that is no longer running.

    Raises:
        ReconciliationError: If neither the result payload nor any log shows success.
    """
    if result_reports_success(result):
        return "result payload"
    for path in log_files:
        text = _read_text(path)
        evidence = scan_log_text(text or "")
        if evidence:
            return f"{path.name}: {evidence}"
    raise ReconciliationError(MSG_WORKER_VANISHED)


def detect_completion(result: Optional[dict[str, Any]], log_files: list[Path]) -> CompletionVerdict:
    try:
        evidence = find_success_evidence(result, log_files)
    except ReconciliationError as exc:
        return CompletionVerdict(STATUS_ERROR, error=str(exc))
    return CompletionVerdict(STATUS_COMPLETED, evidence=evidence)
