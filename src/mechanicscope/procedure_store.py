from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from .errors import ProcedureNotFound, ProcedureParseError, StorageFailure
from .graph import validate_procedure
from .models import Procedure, ProcedureSummary
from .settings import RuntimeSettings
from .storage import atomic_write_text, locked_file, read_text, safe_component

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcedureLocation:
    """One storage root holding ``<equipment_id>/procedures/*.json`` documents."""

    root: Path
    writable: bool = False

    def procedures_dir(self, equipment_id: str) -> Path:
        return self.root / safe_component(equipment_id, label="equipment_id") / "procedures"

    def media_dir(self, equipment_id: str) -> Path:
        return self.procedures_dir(equipment_id) / "media"


def parse_procedure(text: str, source: str) -> Procedure:
    """Decode and schema-check one procedure document.

    Raises:
        ProcedureParseError: If the text is not JSON or does not match the schema.
    """
    try:
        return Procedure.model_validate_json(text)
    except ValidationError as exc:
        raise ProcedureParseError(f"procedure at {source} failed validation: {exc}") from exc


class ProcedureStore:
    """Resolves equipment ids to procedure graphs across ordered storage locations.

    Locations are searched in the order given; when the same procedure id
    appears in more than one, the first wins, so the user-writable location
    belongs at the front. Listings are cached per equipment id until
    ``invalidate_cache`` is called.
    """

    def __init__(self, locations: Sequence[ProcedureLocation]) -> None:
        if not locations:
            raise ValueError("ProcedureStore requires at least one location")
        self.locations = list(locations)
        self._cache: dict[str, list[ProcedureSummary]] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, base: Path | None = None) -> "ProcedureStore":
        locations = [ProcedureLocation(settings.user_procedures_path(base), writable=True)]
        locations.extend(ProcedureLocation(path) for path in settings.bundled_paths())
        return cls(locations)

    @property
    def user_location(self) -> ProcedureLocation | None:
        return next((location for location in self.locations if location.writable), None)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_procedures(self, equipment_id: str) -> list[ProcedureSummary]:
        with self._cache_lock:
            cached = self._cache.get(equipment_id)
        if cached is not None:
            return list(cached)

        summaries: list[ProcedureSummary] = []
        seen: set[str] = set()
        for location in self.locations:
            directory = _procedures_dir(location, equipment_id)
            if directory is None or not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.json")):
                try:
                    procedure = self._read_document(path, equipment_id)
                except (ProcedureParseError, StorageFailure) as exc:
                    logger.warning("Skipping procedure file %s: %s", path, exc)
                    continue
                if procedure.id in seen:
                    logger.debug("Procedure %s at %s is shadowed by an earlier location", procedure.id, path)
                    continue
                seen.add(procedure.id)
                summaries.append(
                    ProcedureSummary(
                        procedure_id=procedure.id,
                        name=procedure.name,
                        equipment_id=procedure.equipment_id,
                        description=procedure.description,
                        difficulty=procedure.difficulty,
                        estimated_time=procedure.estimated_time,
                        step_count=len(procedure.steps),
                        path=path,
                        writable=location.writable,
                    )
                )

        with self._cache_lock:
            self._cache[equipment_id] = summaries
        logger.debug("Indexed %d procedures for equipment %s", len(summaries), equipment_id)
        return list(summaries)

    def invalidate_cache(self, equipment_id: str | None = None) -> None:
        """Drop the cached listing for one equipment id, or for all when ``None``."""
        with self._cache_lock:
            if equipment_id is None:
                self._cache.clear()
            else:
                self._cache.pop(equipment_id, None)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_procedure(self, equipment_id: str, procedure_id: str) -> Procedure:
        """Return one parsed and invariant-checked procedure.

        Raises:
            ProcedureNotFound: If no location holds the procedure.
            ProcedureParseError: If the matching document is malformed.
            InvariantViolation: If the graph is cyclic, dangling, has
                duplicate ids or no entry step.
            StorageFailure: If the document cannot be read.
        """
        summary = self._find_summary(equipment_id, procedure_id)
        if summary is not None and not summary.path.is_file():
            logger.info("Procedure file %s disappeared since it was indexed; re-indexing", summary.path)
            self.invalidate_cache(equipment_id)
            summary = self._find_summary(equipment_id, procedure_id)
        if summary is not None and summary.path.is_file():
            procedure = self._read_document(summary.path, equipment_id)
            if procedure.id == procedure_id:
                validate_procedure(procedure)
                return procedure
            logger.warning("Procedure file %s changed id to %s since it was indexed", summary.path, procedure.id)

        # Documents skipped by the listing (malformed) are still resolvable by
        # file name so the caller sees the parse error instead of NotFound.
        try:
            file_name = f"{safe_component(procedure_id, label='procedure_id')}.json"
        except ValueError:
            raise ProcedureNotFound(equipment_id, procedure_id) from None
        for location in self.locations:
            directory = _procedures_dir(location, equipment_id)
            if directory is None or not (directory / file_name).is_file():
                continue
            path = directory / file_name
            procedure = self._read_document(path, equipment_id)
            if procedure.id == procedure_id:
                validate_procedure(procedure)
                return procedure

        raise ProcedureNotFound(equipment_id, procedure_id)

    def _find_summary(self, equipment_id: str, procedure_id: str) -> ProcedureSummary | None:
        return next(
            (summary for summary in self.list_procedures(equipment_id) if summary.procedure_id == procedure_id),
            None,
        )

    def _read_document(self, path: Path, equipment_id: str) -> Procedure:
        try:
            text = read_text(path, "procedure")
        except ValueError as exc:
            raise ProcedureParseError(str(exc)) from exc
        except OSError as exc:
            raise StorageFailure(f"failed to read procedure {path}: {exc}") from exc
        procedure = parse_procedure(text, str(path))
        if not procedure.equipment_id:
            procedure = procedure.model_copy(update={"equipment_id": equipment_id})
        return procedure

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def save_procedure(self, procedure: Procedure, equipment_id: str | None = None) -> Path:
        """Validate and write a procedure into the user-writable location.

        Raises:
            InvariantViolation: If the graph is invalid; nothing is written.
            StorageFailure: If no writable location exists or the write fails.
        """
        target = (equipment_id or procedure.equipment_id).strip()
        if not target:
            raise ValueError(f"procedure {procedure.id} has no equipment id to store it under")
        if procedure.equipment_id != target:
            procedure = procedure.model_copy(update={"equipment_id": target})

        validate_procedure(procedure)

        location = self.user_location
        if location is None:
            raise StorageFailure("no writable procedure location is configured")

        path = location.procedures_dir(target) / f"{safe_component(procedure.id, label='procedure_id')}.json"
        try:
            with locked_file(path):
                atomic_write_text(path, procedure.to_json())
        except OSError as exc:
            logger.error("Failed to save procedure %s to %s: %s", procedure.id, path, exc)
            raise StorageFailure(f"failed to save procedure {procedure.id}: {exc}") from exc

        self.invalidate_cache(target)
        logger.info("Saved procedure %s for equipment %s to %s", procedure.id, target, path)
        return path

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def find_media(self, equipment_id: str, name: str) -> Path | None:
        """Locate a referenced media file, searching locations in priority order."""
        file_name = Path(name).name
        if not file_name:
            return None
        for location in self.locations:
            candidate = location.media_dir(equipment_id) / file_name
            if candidate.is_file():
                return candidate
        return None

    def user_media_dir(self, equipment_id: str) -> Path:
        location = self.user_location
        if location is None:
            raise StorageFailure("no writable procedure location is configured")
        return location.media_dir(equipment_id)


def _procedures_dir(location: ProcedureLocation, equipment_id: str) -> Path | None:
    """``location.procedures_dir``, or ``None`` for an id that cannot name a directory."""
    try:
        return location.procedures_dir(equipment_id)
    except ValueError:
        logger.debug("Equipment id %r cannot name a procedure directory", equipment_id)
        return None
