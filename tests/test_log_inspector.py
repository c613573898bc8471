"""Tests for deciding whether a vanished worker finished its job."""

from __future__ import annotations

from pathlib import Path

import pytest

from wave_orchestrator.errors import ReconciliationError
from wave_orchestrator.supervision.artifacts import migration_log_files
from wave_orchestrator.supervision.log_inspector import (
    detect_completion,
    find_success_evidence,
    result_reports_success,
    scan_log_text,
)


class TestScanLogText:
    def test_success_marker(self):
        assert scan_log_text("...\nProject migration completed successfully\n") == (
            "Project migration completed successfully"
        )

    def test_final_success_json(self):
        assert scan_log_text('finalSuccess {"status": "success"}') is not None

    def test_critical_error_blocks_tail_heuristic(self):
        assert scan_log_text("Fatal error: out of memory\nprocess finished") is None

    def test_tail_mentions_finished(self):
        assert scan_log_text("pages copied\nall done, job finished") == "log tail mentions 'finished'"

    def test_only_tail_counts(self):
        text = "completed step 1\n" + ("x" * 2000)
        assert scan_log_text(text) is None

    def test_empty(self):
        assert scan_log_text("") is None


class TestResultReportsSuccess:
    def test_nested_value_status(self):
        assert result_reports_success({"value": {"status": "success"}}) is True

    def test_top_level_status(self):
        assert result_reports_success({"status": "completed"}) is True

    def test_in_progress(self):
        assert result_reports_success({"status": "in_progress"}) is False
        assert result_reports_success(None) is False


def test_detect_completion_prefers_result_payload(tmp_path: Path):
    verdict = detect_completion({"value": {"status": "success"}}, [])
    assert verdict.completed
    assert verdict.evidence == "result payload"


def test_detect_completion_reads_logs(tmp_path: Path):
    log = tmp_path / "migration_20240101_101.log"
    log.write_text("Migration finished successfully", encoding="utf-8")

    verdict = detect_completion({"status": "in_progress"}, migration_log_files(tmp_path, 101))

    assert verdict.status == "completed"
    assert verdict.evidence.startswith("migration_20240101_101.log")


def test_detect_completion_without_evidence(tmp_path: Path):
    log = tmp_path / "brizy-101.log"
    log.write_text("Migration failed: timeout\n", encoding="utf-8")

    verdict = detect_completion({}, migration_log_files(tmp_path, 101))

    assert verdict.status == "error"
    assert verdict.error == "worker process ended without reporting completion"


def test_find_success_evidence_raises_without_evidence(tmp_path: Path):
    with pytest.raises(ReconciliationError, match="without reporting completion"):
        find_success_evidence(None, [tmp_path / "missing.log"])

def test_migration_log_files_deduplicates(tmp_path: Path):
    (tmp_path / "migration_a_101.log").write_text("x", encoding="utf-8")
    (tmp_path / "brizy-101.log").write_text("y", encoding="utf-8")
    (tmp_path / "migration_a_1010.log").write_text("z", encoding="utf-8")

    names = sorted(p.name for p in migration_log_files(tmp_path, 101))

    assert names == ["brizy-101.log", "migration_a_101.log"]
