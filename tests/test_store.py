"""Tests for the SQL task store, including the legacy mapping fallback."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from loguru import logger

from wave_orchestrator.errors import StoreError, WaveNotFoundError
from wave_orchestrator.models import MigrationTask, WaveProgress
from wave_orchestrator.storage import SqlAlchemyExecutor, SqlTaskStore, ensure_schema


def _store(tmp_path: Path, **schema_kwargs) -> SqlTaskStore:
    executor = SqlAlchemyExecutor.from_url(f"sqlite:///{tmp_path / 'store.db'}")
    ensure_schema(executor.engine, **schema_kwargs)
    return SqlTaskStore(executor)


def test_create_wave_seeds_pending_members(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a", "b", "a", " "], 7, "Clients", concurrency_limit=2)

    wave = store.get_wave(wave_id)
    assert wave is not None
    assert wave.member_ids == ["a", "b"]
    assert wave.batch_size == 2
    assert wave.progress.to_dict() == {"total": 2, "completed": 0, "failed": 0}

    tasks = store.get_tasks_for_wave(wave_id)
    assert [t.source_id for t in tasks] == ["a", "b"]
    assert all(t.status == "pending" for t in tasks)
    assert tasks[0].result["message"] == "Migration not started"


def test_create_wave_is_idempotent_for_same_id(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_wave("Wave A", ["a", "b"], 7, wave_id="1700000000_1111")
    store.create_wave("Wave A", ["a", "b"], 7, wave_id="1700000000_1111")

    rows = store.db.fetch_all("SELECT * FROM migrations WHERE wave_id = :w", {"w": "1700000000_1111"})
    assert len(rows) == 2
    assert len(store.list_waves()) == 1


def test_create_wave_rejects_empty_members(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        store.create_wave("Wave A", ["", "  "], 7)


def test_upsert_keeps_one_row_per_member(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)

    store.upsert_task_result("a", 101, wave_id, {"status": "in_progress", "message": "Migration started"})
    task = store.upsert_task_result("a", 101, wave_id, {"status": "success", "brizy_project_domain": "a.example"})

    rows = store.db.fetch_all("SELECT * FROM migrations WHERE mb_project_uuid = 'a'")
    assert len(rows) == 1
    assert task.status == "completed"
    assert task.target_id == 101
    assert task.target_domain == "a.example"
    assert task.completed_at


def test_upsert_with_error_payload_records_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)

    task = store.upsert_task_result("a", 101, wave_id, {"value": {"error": {"code": 9}}})

    assert task.status == "error"
    assert json.loads(task.error) == {"code": 9}


def test_target_id_is_not_replaced(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)
    store.upsert_task_result("a", 101, wave_id, {"status": "in_progress"})

    task = store.upsert_task_result("a", 999, wave_id, {"status": "error", "error": "boom"})

    assert task.target_id == 101


def test_rows_of_other_waves_are_left_alone(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create_wave("First", ["a"], 7, wave_id="1700000000_1000")
    second = store.create_wave("Second", ["a"], 7, wave_id="1700000001_2000")
    store.upsert_task_result("a", 101, first, {"status": "success"})

    store.upsert_task_result("a", 101, second, {"status": "in_progress"})

    assert store.get_task("a", first).status == "completed"
    assert store.get_task("a", second).status == "in_progress"


def test_reset_task_clears_error_and_timestamps(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)
    store.upsert_task_result("a", 101, wave_id, {"status": "error", "error": "boom", "started_at": "2024-01-01"})

    assert store.reset_task("a", 101, wave_id) is True

    task = store.get_task("a", wave_id)
    assert task.status == "pending"
    assert task.error is None
    assert task.started_at is None
    assert task.completed_at is None
    assert store.reset_task("missing", 5) is False


def test_reset_wave_resets_members_and_wave(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a", "b"], 7)
    store.upsert_task_result("a", 101, wave_id, {"status": "success"})
    store.upsert_task_result("b", 102, wave_id, {"status": "error", "error": "x"})
    store.update_wave_progress(wave_id, WaveProgress(2, 1, 1), new_status="error")

    assert store.reset_wave(wave_id) == 2

    wave = store.get_wave(wave_id)
    assert wave.status == "pending"
    assert wave.completed_at is None
    assert wave.progress.to_dict() == {"total": 2, "completed": 0, "failed": 0}
    assert {t.status for t in store.get_tasks_for_wave(wave_id)} == {"pending"}


def test_list_waves_promotes_finished_progress(tmp_path: Path) -> None:
    store = _store(tmp_path)
    done = store.create_wave("Done", ["a"], 7, wave_id="1700000000_1000")
    running = store.create_wave("Running", ["b", "c"], 7, wave_id="1700000001_1000")
    store.update_wave_progress(done, WaveProgress(1, 1, 0), new_status="in_progress")
    store.update_wave_progress(running, WaveProgress(2, 1, 0), new_status="pending")

    statuses = {w.wave_id: w.status for w in store.list_waves()}

    assert statuses[done] == "completed"
    assert statuses[running] == "in_progress"


def test_update_progress_of_unknown_wave_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(WaveNotFoundError):
        store.update_wave_progress("1_1", WaveProgress(1))


def test_legacy_mapping_fallback_without_waves_table(tmp_path: Path) -> None:
    store = _store(tmp_path, include_waves=False)
    wave_id = store.create_wave("Legacy", ["a", "b"], 7, "Clients", enable_cloning=True)

    row = store.db.fetch_one(
        "SELECT * FROM migrations_mapping WHERE mb_project_uuid = :key", {"key": f"wave_{wave_id}"}
    )
    assert row is not None
    assert row["brz_project_id"] == 0

    wave = store.get_wave(wave_id)
    assert wave.name == "Legacy"
    assert wave.enable_cloning is True
    assert wave.member_ids == ["a", "b"]

    store.upsert_task_result("a", 101, wave_id, {"status": "success"})
    tasks = store.get_tasks_for_wave(wave_id)
    store.update_wave_progress(wave_id, WaveProgress(2, 1, 0), member_statuses=tasks, new_status="in_progress")

    wave = store.get_wave(wave_id)
    assert wave.status == "in_progress"
    assert wave.progress.completed == 1
    changes = json.loads(
        store.db.fetch_one(
            "SELECT changes_json FROM migrations_mapping WHERE mb_project_uuid = :key", {"key": f"wave_{wave_id}"}
        )["changes_json"]
    )
    assert changes["migrations"][0] == {"mb_project_uuid": "a", "brz_project_id": 101, "status": "completed"}
    assert [w.wave_id for w in store.list_waves()] == [wave_id]


def test_result_list_fills_in_missing_task_rows(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a", "b"], 7)
    store.db.execute(
        "INSERT INTO migration_result_list (migration_uuid, mb_project_uuid, brz_project_id, "
        "brizy_project_domain, result_json, created_at, updated_at) "
        "VALUES (:w, 'z', 303, 'z.example', :r, '2030-01-01', '2030-01-01')",
        {"w": wave_id, "r": json.dumps({"value": {"status": "success"}})},
    )

    tasks = {t.source_id: t for t in store.get_tasks_for_wave(wave_id)}

    assert tasks["z"].status == "completed"
    assert tasks["z"].target_id == 303
    assert tasks["z"].target_domain == "z.example"


def test_cloning_flag_is_stored_per_target(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)
    store.upsert_task_result("a", 101, wave_id, {"status": "success"})

    assert store.set_cloning_enabled(101, True) is True
    assert store.set_cloning_enabled(555, True) is False

    task = store.get_tasks_for_wave(wave_id)[0]
    assert task.cloning_enabled is True


def test_save_task_overwrites_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)
    store.upsert_task_result("a", 101, wave_id, {"status": "error", "error": "boom"})

    saved = store.save_task(MigrationTask(source_id="a", target_id=101, wave_id=wave_id, status="in_progress"))

    assert saved.status == "in_progress"
    assert saved.error is None


def test_missing_result_list_falls_back_to_task_rows(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a", "b"], 7)
    store.upsert_task_result("a", 101, wave_id, {"status": "in_progress"})
    assert len(store.get_tasks_for_wave(wave_id)) == 2
    store.db.execute("DROP TABLE migration_result_list")
    messages: list[str] = []
    sink = logger.add(lambda message: messages.append(str(message)), level="WARNING")
    try:
        store.upsert_task_result("a", 101, wave_id, {"status": "success"})
        tasks = {t.source_id: t for t in store.get_tasks_for_wave(wave_id)}
        store.update_wave_progress(wave_id, WaveProgress(2, 1, 0), member_statuses=list(tasks.values()))
    finally:
        logger.remove(sink)

    assert tasks["a"].status == "completed"
    assert tasks["b"].status == "pending"
    assert store.get_wave(wave_id).progress.to_dict() == {"total": 2, "completed": 1, "failed": 0}
    assert any("migration_result_list" in m for m in messages)


def test_primary_table_failure_raises_store_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    wave_id = store.create_wave("Wave A", ["a"], 7)
    store.db.execute("DROP TABLE migrations")

    with pytest.raises(StoreError):
        store.get_tasks_for_wave(wave_id)


def test_concurrent_progress_and_result_writes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    members = [f"m{i}" for i in range(6)]
    wave_id = store.create_wave("Wave A", members, 7)
    errors: list[BaseException] = []

    def write_result(index: int, source: str) -> None:
        try:
            store.upsert_task_result(source, 100 + index, wave_id, {"status": "in_progress"})
            store.upsert_task_result(source, 100 + index, wave_id, {"status": "success"})
        except BaseException as exc:
            errors.append(exc)

    def write_progress() -> None:
        try:
            for completed in range(len(members) + 1):
                store.update_wave_progress(wave_id, WaveProgress(len(members), completed, 0))
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=write_result, args=(i, s)) for i, s in enumerate(members)]
    threads.append(threading.Thread(target=write_progress))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    rows = store.db.fetch_all("SELECT mb_project_uuid FROM migrations WHERE wave_id = :w", {"w": wave_id})
    assert sorted(r["mb_project_uuid"] for r in rows) == members
    tasks = store.get_tasks_for_wave(wave_id)
    assert {t.status for t in tasks} == {"completed"}
    assert {t.target_id for t in tasks} == {100 + i for i in range(len(members))}
    assert store.get_wave(wave_id).progress.completed == len(members)
