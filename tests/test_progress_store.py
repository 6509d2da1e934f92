from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mechanicscope import PackageError, ProgressStore, RepairLog, StorageFailure
from mechanicscope.storage import atomic_write_text, safe_component


def _log(procedure_id: str, equipment_name: str, minutes: int, finished: datetime, **extra: object) -> RepairLog:
    return RepairLog(
        procedure_id=procedure_id,
        equipment_id="mower",
        equipment_name=equipment_name,
        started_at=finished - timedelta(minutes=minutes),
        completed_at=finished,
        **extra,
    )


def test_missing_record_reads_as_empty(progress_store: ProgressStore) -> None:
    assert progress_store.get_completed_steps("mower", "oil") == set()
    assert progress_store.get_record("mower", "oil") is None
    assert progress_store.has_progress("mower", "oil") is False


def test_set_and_get_completed_steps(progress_store: ProgressStore) -> None:
    record = progress_store.set_completed_steps("mower", "oil", [3, 1, 3])

    assert record.completed_step_ids == [1, 3]
    assert record.key == "mower_oil"
    assert progress_store.get_completed_steps("mower", "oil") == {1, 3}
    assert progress_store.has_progress("mower", "oil") is True


def test_progress_survives_a_new_store_instance(tmp_path: Path) -> None:
    ProgressStore(tmp_path / "progress").set_completed_steps("mower", "oil", {1, 2})
    assert ProgressStore(tmp_path / "progress").get_completed_steps("mower", "oil") == {1, 2}


def test_keys_are_independent(progress_store: ProgressStore) -> None:
    progress_store.set_completed_steps("mower", "oil", {1})
    progress_store.set_completed_steps("mower", "blade", {1, 2})
    progress_store.set_completed_steps("tractor", "oil", {5})

    progress_store.clear_progress("mower", "oil")

    assert progress_store.get_completed_steps("mower", "oil") == set()
    assert progress_store.get_completed_steps("mower", "blade") == {1, 2}
    assert progress_store.get_completed_steps("tractor", "oil") == {5}


def test_clear_missing_record_is_a_no_op(progress_store: ProgressStore) -> None:
    progress_store.clear_progress("mower", "never-started")
    assert progress_store.get_record("mower", "never-started") is None


def test_corrupt_record_raises_storage_failure(progress_store: ProgressStore) -> None:
    path = progress_store.record_path("mower", "oil")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{\"completed_step_ids\": ", encoding="utf-8")

    with pytest.raises(StorageFailure):
        progress_store.get_completed_steps("mower", "oil")


def test_list_progress_skips_empty_and_corrupt_records(progress_store: ProgressStore) -> None:
    progress_store.set_completed_steps("mower", "oil", {1})
    progress_store.set_completed_steps("mower", "blade", set())
    progress_store.set_completed_steps("tractor", "belt", {1, 2, 3})
    corrupt = progress_store.record_path("tractor", "broken")
    corrupt.write_text("garbage", encoding="utf-8")

    summaries = progress_store.list_progress()

    assert [(s.equipment_id, s.procedure_id) for s in summaries] == [("tractor", "belt"), ("mower", "oil")]
    assert summaries[0].completed_step_count == 3


def test_concurrent_writers_to_different_keys(progress_store: ProgressStore) -> None:
    def worker(index: int) -> None:
        for step_count in range(1, 6):
            progress_store.set_completed_steps("mower", f"proc-{index}", range(1, step_count + 1))

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for index in range(4):
        assert progress_store.get_completed_steps("mower", f"proc-{index}") == {1, 2, 3, 4, 5}


def test_repair_history_is_newest_first_and_filterable(progress_store: ProgressStore) -> None:
    now = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
    older = progress_store.log_completion(_log("oil", "Mower", 30, now - timedelta(days=2)))
    newer = progress_store.log_completion(_log("blade", "Mower", 45, now))
    other = progress_store.log_completion(_log("oil", "Tractor", 20, now - timedelta(days=1)))

    assert [entry.id for entry in progress_store.get_repair_history()] == [newer.id, other.id, older.id]
    assert [entry.id for entry in progress_store.get_repair_history("Mower")] == [newer.id, older.id]
    assert [entry.id for entry in progress_store.get_repair_history(limit=1)] == [newer.id]
    with pytest.raises(ValueError):
        progress_store.get_repair_history(limit=0)


def test_history_skips_malformed_lines(progress_store: ProgressStore) -> None:
    entry = progress_store.log_completion(_log("oil", "Mower", 10, datetime.now(UTC)))
    with progress_store.history_path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")

    assert [item.id for item in progress_store.get_repair_history()] == [entry.id]


def test_delete_repair_log(progress_store: ProgressStore) -> None:
    keep = progress_store.log_completion(_log("oil", "Mower", 10, datetime.now(UTC)))
    drop = progress_store.log_completion(_log("oil", "Mower", 12, datetime.now(UTC)))

    assert progress_store.delete_repair_log(drop.id) is True
    assert progress_store.delete_repair_log(drop.id) is False
    assert [entry.id for entry in progress_store.get_repair_history()] == [keep.id]


def test_statistics_are_derived_from_history(progress_store: ProgressStore) -> None:
    now = datetime(2026, 5, 1, tzinfo=UTC)
    progress_store.log_completion(_log("oil", "Mower", 30, now - timedelta(days=3)))
    progress_store.log_completion(_log("oil", "Mower", 50, now))
    progress_store.log_completion(_log("blade", "Mower", 90, now))

    stats = progress_store.get_statistics("oil", "mower")

    assert stats is not None
    assert stats.times_completed == 2
    assert stats.total_duration_minutes == 80
    assert stats.average_duration_minutes == 40.0
    assert stats.last_completed_at == now
    assert progress_store.get_statistics("air-filter", "mower") is None


def test_repair_log_rating_is_bounded() -> None:
    with pytest.raises(ValueError):
        _log("oil", "Mower", 5, datetime.now(UTC), rating=6)


def test_preferences_round_trip_typed_values(progress_store: ProgressStore) -> None:
    progress_store.set_preference("units", "metric")
    progress_store.set_preference("show_torque", True)
    progress_store.set_preference("font_size", 14)
    progress_store.set_preference("volume", 0.5)

    assert progress_store.get_preference("units") == "metric"
    assert progress_store.get_preference_bool("show_torque") is True
    assert progress_store.get_preference_int("font_size") == 14
    assert progress_store.get_preference_float("volume") == 0.5
    assert progress_store.get_preference("missing", "default") == "default"
    assert progress_store.get_preference_int("units", 7) == 7

    progress_store.delete_preference("units")
    assert "units" not in progress_store.get_all_preferences()


def test_export_and_import_merge_local_data_wins(tmp_path: Path) -> None:
    source = ProgressStore(tmp_path / "source")
    source.set_completed_steps("mower", "oil", {1, 2})
    source.set_completed_steps("mower", "blade", {1})
    shared = source.log_completion(_log("oil", "Mower", 25, datetime(2026, 4, 1, tzinfo=UTC)))
    source.set_preference("units", "imperial")
    exported = source.export_data()
    assert json.loads(exported)["version"] == 1

    target = ProgressStore(tmp_path / "target")
    target.set_completed_steps("mower", "oil", {1})
    target.log_completion(shared)
    target.set_preference("units", "metric")

    assert target.import_data(exported) == (1, 0)
    assert target.get_completed_steps("mower", "oil") == {1}
    assert target.get_completed_steps("mower", "blade") == {1}
    assert len(target.get_repair_history()) == 1
    assert target.get_preference("units") == "metric"


def test_import_rejects_malformed_export(progress_store: ProgressStore) -> None:
    with pytest.raises(PackageError):
        progress_store.import_data('{"procedure_progress": "nope"}')


def test_clear_all_data(progress_store: ProgressStore) -> None:
    progress_store.set_completed_steps("mower", "oil", {1})
    progress_store.log_completion(_log("oil", "Mower", 10, datetime.now(UTC)))
    progress_store.set_preference("units", "metric")

    progress_store.clear_all_data()

    assert progress_store.list_progress() == []
    assert progress_store.get_repair_history() == []
    assert progress_store.get_all_preferences() == {}


def test_safe_component_keeps_safe_ids_and_separates_the_rest() -> None:
    assert safe_component("lawnmower-x") == "lawnmower-x"
    assert safe_component("My Mower / 2024").startswith("My-Mower-2024~")
    assert safe_component("V8 A") != safe_component("V8-A")
    assert safe_component("V8 A") != safe_component("V8_A") != safe_component(" V8 A")
    assert safe_component("..") != ".."
    assert safe_component("///").startswith("~")
    assert len({safe_component("x" * 200), safe_component("x" * 201)}) == 2
    with pytest.raises(ValueError):
        safe_component("   ")


def test_keys_that_look_alike_do_not_share_a_record(progress_store: ProgressStore) -> None:
    progress_store.set_completed_steps("V8 A", "oil", {1, 2})
    assert progress_store.get_completed_steps("V8-A", "oil") == set()

    progress_store.set_completed_steps("V8-A", "oil", {7})

    assert progress_store.get_completed_steps("V8 A", "oil") == {1, 2}
    assert progress_store.get_completed_steps("V8-A", "oil") == {7}
    assert progress_store.record_path("V8 A", "oil") != progress_store.record_path("V8-A", "oil")


def test_record_filed_under_another_key_is_rejected(progress_store: ProgressStore) -> None:
    progress_store.set_completed_steps("mower", "oil", {1})
    foreign = progress_store.record_path("mower", "oil").read_text(encoding="utf-8")
    misplaced = progress_store.record_path("mower", "blade")
    misplaced.write_text(foreign, encoding="utf-8")

    with pytest.raises(StorageFailure):
        progress_store.get_completed_steps("mower", "blade")


def test_import_never_replaces_a_record_created_meanwhile(
    tmp_path: Path, progress_store: ProgressStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = ProgressStore(tmp_path / "source")
    source.set_completed_steps("mower", "oil", {1, 2, 3})
    exported = source.export_data()

    progress_store.set_completed_steps("mower", "oil", {9})
    monkeypatch.setattr(progress_store, "get_record", lambda *args: None)

    assert progress_store.import_data(exported) == (0, 0)
    monkeypatch.undo()
    assert progress_store.get_completed_steps("mower", "oil") == {9}


def test_failed_atomic_write_keeps_old_content_and_no_temp_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "doc.json"
    atomic_write_text(target, "old")

    def failing_replace(*args: object) -> None:
        raise OSError("rename refused")

    monkeypatch.setattr("mechanicscope.storage.os.replace", failing_replace)

    with pytest.raises(OSError):
        atomic_write_text(target, "new")
    assert target.read_text(encoding="utf-8") == "old"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["doc.json"]
