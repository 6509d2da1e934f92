from __future__ import annotations

import json
import logging
import shutil
import threading
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from pydantic import BaseModel, Field, ValidationError

from .canonical import to_canonical_json
from .errors import PackageError, StorageFailure
from .models import ProgressRecord, ProgressSummary, RepairLog, RepairStatistics, progress_key
from .settings import RuntimeSettings
from .storage import append_line, atomic_write_text, locked_file, read_text, safe_component

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1


class ProgressExport(BaseModel):
    """Shape of the document produced by ``export_data``."""

    version: int = EXPORT_FORMAT_VERSION
    procedure_progress: list[ProgressRecord] = Field(default_factory=list)
    repair_history: list[RepairLog] = Field(default_factory=list)
    preferences: dict[str, str] = Field(default_factory=dict)


@contextmanager
def _storage_guard(action: str) -> Iterator[None]:
    try:
        yield
    except (OSError, ValueError) as exc:
        logger.error("Progress store failed to %s: %s", action, exc)
        raise StorageFailure(f"failed to {action}: {exc}") from exc


class ProgressStore:
    """Filesystem-backed progress records, completion history and preferences.

    Every write is atomic (temp file + ``os.replace``) and has completed
    before the call returns. Writers to the same record are serialized by a
    per-key in-process lock plus an ``fcntl`` lock on a sidecar file, so
    separate sessions, threads or processes never interleave on one key.
    Different keys never contend with each other.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.records_dir = self.root / "records"
        self.history_path = self.root / "history.jsonl"
        self.preferences_path = self.root / "preferences.json"
        self.records_dir.mkdir(parents=True, exist_ok=True)
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._history_lock = threading.Lock()
        self._preferences_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, base: Path | None = None) -> "ProgressStore":
        return cls(settings.progress_path(base))

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def record_path(self, equipment_id: str, procedure_id: str) -> Path:
        return (
            self.records_dir
            / safe_component(equipment_id, label="equipment_id")
            / f"{safe_component(procedure_id, label='procedure_id')}.json"
        )

    # ------------------------------------------------------------------
    # Progress records
    # ------------------------------------------------------------------

    def get_record(self, equipment_id: str, procedure_id: str) -> ProgressRecord | None:
        path = self.record_path(equipment_id, procedure_id)
        key = progress_key(equipment_id, procedure_id)
        with self._lock_for(key), _storage_guard(f"read progress {key}"):
            with locked_file(path):
                if not path.is_file():
                    return None
                return _parse_record(path, equipment_id, procedure_id)

    def get_completed_steps(self, equipment_id: str, procedure_id: str) -> set[int]:
        """Completed step ids for the key; empty when no record exists."""
        record = self.get_record(equipment_id, procedure_id)
        return set(record.completed_step_ids) if record is not None else set()

    def set_completed_steps(self, equipment_id: str, procedure_id: str, step_ids: Iterable[int]) -> ProgressRecord:
        """Replace the completed set for the key and persist it before returning."""
        record = ProgressRecord(
            equipment_id=equipment_id,
            procedure_id=procedure_id,
            completed_step_ids=list(step_ids),
            last_updated=datetime.now(UTC),
        )
        path = self.record_path(equipment_id, procedure_id)
        with self._lock_for(record.key), _storage_guard(f"write progress {record.key}"):
            with locked_file(path):
                atomic_write_text(path, record.model_dump_json(indent=2))
        logger.debug("Saved progress %s: %s", record.key, record.completed_step_ids)
        return record

    def clear_progress(self, equipment_id: str, procedure_id: str) -> None:
        path = self.record_path(equipment_id, procedure_id)
        key = progress_key(equipment_id, procedure_id)
        with self._lock_for(key), _storage_guard(f"clear progress {key}"):
            with locked_file(path):
                path.unlink(missing_ok=True)
        logger.debug("Cleared progress %s", key)

    def has_progress(self, equipment_id: str, procedure_id: str) -> bool:
        record = self.get_record(equipment_id, procedure_id)
        return record is not None and bool(record.completed_step_ids)

    def list_progress(self) -> list[ProgressSummary]:
        """Summaries of every non-empty record, most recently updated first."""
        summaries: list[ProgressSummary] = []
        with _storage_guard("list progress"):
            for path in sorted(self.records_dir.rglob("*.json")):
                try:
                    record = _parse_record(path)
                except ValueError as exc:
                    logger.warning("Skipping unreadable progress record %s: %s", path, exc)
                    continue
                if not record.completed_step_ids:
                    continue
                summaries.append(
                    ProgressSummary(
                        equipment_id=record.equipment_id,
                        procedure_id=record.procedure_id,
                        completed_step_count=len(record.completed_step_ids),
                        last_updated=record.last_updated,
                    )
                )
        summaries.sort(key=lambda summary: summary.last_updated, reverse=True)
        return summaries

    def _all_records(self) -> list[ProgressRecord]:
        return [_parse_record(path) for path in sorted(self.records_dir.rglob("*.json"))]

    # ------------------------------------------------------------------
    # Completion history (append-only)
    # ------------------------------------------------------------------

    def log_completion(self, entry: RepairLog) -> RepairLog:
        with self._history_lock, _storage_guard("append repair history"):
            with locked_file(self.history_path):
                append_line(self.history_path, entry.model_dump_json())
        logger.info("Logged completion of %s on %s (%s)", entry.procedure_id, entry.equipment_name, entry.id)
        return entry

    def _read_history(self) -> list[RepairLog]:
        if not self.history_path.is_file():
            return []
        entries: list[RepairLog] = []
        for line_no, line in enumerate(self.history_path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(RepairLog.model_validate_json(line))
            except ValidationError as exc:
                logger.warning("Skipping malformed history line %d in %s: %s", line_no, self.history_path, exc)
        return entries

    def get_repair_history(self, equipment_name: str | None = None, limit: int | None = None) -> list[RepairLog]:
        """History entries newest first, optionally filtered by equipment name."""
        if limit is not None and limit <= 0:
            raise ValueError("limit must be > 0")
        with self._history_lock, _storage_guard("read repair history"):
            with locked_file(self.history_path):
                entries = self._read_history()
        if equipment_name:
            entries = [entry for entry in entries if entry.equipment_name == equipment_name]
        entries.sort(key=lambda entry: entry.completed_at, reverse=True)
        return entries[:limit] if limit is not None else entries

    def delete_repair_log(self, log_id: str) -> bool:
        with self._history_lock, _storage_guard("delete repair history entry"):
            with locked_file(self.history_path):
                entries = self._read_history()
                kept = [entry for entry in entries if entry.id != log_id]
                if len(kept) == len(entries):
                    return False
                atomic_write_text(self.history_path, "".join(entry.model_dump_json() + "\n" for entry in kept))
        logger.info("Deleted repair history entry %s", log_id)
        return True

    def get_statistics(self, procedure_id: str, equipment_id: str) -> RepairStatistics | None:
        entries = [
            entry
            for entry in self.get_repair_history()
            if entry.procedure_id == procedure_id and entry.equipment_id == equipment_id
        ]
        if not entries:
            return None
        total = sum(entry.duration_minutes for entry in entries)
        return RepairStatistics(
            procedure_id=procedure_id,
            equipment_id=equipment_id,
            times_completed=len(entries),
            total_duration_minutes=total,
            average_duration_minutes=total / len(entries),
            last_completed_at=max(entry.completed_at for entry in entries),
        )

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def _read_preferences(self) -> dict[str, str]:
        if not self.preferences_path.is_file():
            return {}
        payload = json.loads(read_text(self.preferences_path, "preferences"))
        if not isinstance(payload, dict):
            raise ValueError(f"preferences at {self.preferences_path} must be a JSON object")
        return {str(key): str(value) for key, value in payload.items()}

    def _update_preferences(self, action: str, mutate: Callable[[dict[str, str]], object]) -> None:
        with self._preferences_lock, _storage_guard(action):
            with locked_file(self.preferences_path):
                preferences = self._read_preferences()
                mutate(preferences)
                atomic_write_text(self.preferences_path, json.dumps(preferences, indent=2, sort_keys=True))

    def set_preference(self, key: str, value: str | bool | int | float) -> None:
        if isinstance(value, bool):
            stored = "true" if value else "false"
        else:
            stored = str(value)
        self._update_preferences(f"set preference {key}", lambda prefs: prefs.__setitem__(key, stored))

    def delete_preference(self, key: str) -> None:
        self._update_preferences(f"delete preference {key}", lambda prefs: prefs.pop(key, None))

    def get_all_preferences(self) -> dict[str, str]:
        with self._preferences_lock, _storage_guard("read preferences"):
            with locked_file(self.preferences_path):
                return self._read_preferences()

    def get_preference(self, key: str, default: str | None = None) -> str | None:
        return self.get_all_preferences().get(key, default)

    def get_preference_bool(self, key: str, default: bool = False) -> bool:
        value = self.get_preference(key)
        if not value:
            return default
        return value.lower() == "true" or value == "1"

    def get_preference_int(self, key: str, default: int = 0) -> int:
        value = self.get_preference(key)
        if not value:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    def get_preference_float(self, key: str, default: float = 0.0) -> float:
        value = self.get_preference(key)
        if not value:
            return default
        try:
            return float(value)
        except ValueError:
            return default

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def clear_all_data(self) -> None:
        """Remove every progress record, history entry and preference."""
        with self._history_lock, self._preferences_lock, _storage_guard("clear all data"):
            if self.records_dir.exists():
                shutil.rmtree(self.records_dir)
            self.records_dir.mkdir(parents=True, exist_ok=True)
            self.history_path.unlink(missing_ok=True)
            self.preferences_path.unlink(missing_ok=True)
        logger.info("Cleared all progress data under %s", self.root)

    def export_data(self) -> str:
        """Canonical JSON of every record, history entry and preference."""
        with _storage_guard("export progress data"):
            export = ProgressExport(
                procedure_progress=self._all_records(),
                repair_history=self.get_repair_history(),
                preferences=self.get_all_preferences(),
            )
        return to_canonical_json(export)

    def import_data(self, text: str) -> tuple[int, int]:
        """Merge an ``export_data`` document into this store.

        Progress records are added only for keys with no local record and
        history entries only for ids not already present; local data always
        wins. Preferences are not imported.

        Returns:
            ``(records_added, history_entries_added)``.

        Raises:
            PackageError: If the document is not a valid progress export.
        """
        try:
            imported = ProgressExport.model_validate_json(text)
        except ValidationError as exc:
            raise PackageError(f"progress export failed validation: {exc}") from exc

        records_added = 0
        for record in imported.procedure_progress:
            path = self.record_path(record.equipment_id, record.procedure_id)
            with self._lock_for(record.key), _storage_guard(f"import progress {record.key}"):
                with locked_file(path):
                    if path.exists():
                        continue
                    atomic_write_text(path, record.model_dump_json(indent=2))
            records_added += 1

        known_ids = {entry.id for entry in self.get_repair_history()}
        history_added = 0
        for entry in imported.repair_history:
            if entry.id in known_ids:
                continue
            self.log_completion(entry)
            known_ids.add(entry.id)
            history_added += 1

        logger.info("Imported %d progress records and %d history entries", records_added, history_added)
        return records_added, history_added


def _parse_record(path: Path, equipment_id: str | None = None, procedure_id: str | None = None) -> ProgressRecord:
    text = read_text(path, "progress record")
    try:
        record = ProgressRecord.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"progress record at {path} failed validation: {exc}") from exc
    if equipment_id is not None and (record.equipment_id, record.procedure_id) != (equipment_id, procedure_id):
        raise ValueError(
            f"progress record at {path} belongs to {record.key}, not {progress_key(equipment_id, procedure_id)}"
        )
    return record
