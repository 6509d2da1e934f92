from __future__ import annotations

import base64
import binascii
import logging
import re
import shutil
import zipfile
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import PackageError, ProcedureParseError, StorageFailure
from .graph import validate_procedure
from .models import PackageInfo, Procedure
from .procedure_store import ProcedureStore, parse_procedure
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

SHARE_CODE_PREFIX = "MS1:"
PACKAGE_FORMAT_VERSION = 1
_PROCEDURE_ENTRY = "procedure.json"
_INFO_ENTRY = "package.json"
_MEDIA_PREFIX = "media/"


def sanitize_file_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._ -]+", "_", name).strip(" .")
    return cleaned or "procedure"


class ProcedureSharing:
    """Exports procedures as portable ZIP packages and compact share codes.

    A package holds ``procedure.json``, ``package.json`` metadata and any
    media files the steps reference. Imported procedures pass the same
    invariant checks as procedures loaded from disk before they are saved.
    """

    def __init__(
        self,
        procedure_store: ProcedureStore,
        export_dir: Path,
        *,
        package_extension: str = ".msproc",
        include_media: bool = True,
        author: str = "",
    ) -> None:
        self.procedure_store = procedure_store
        self.export_dir = export_dir
        self.package_extension = package_extension
        self.include_media = include_media
        self.author = author

    @classmethod
    def from_settings(
        cls, procedure_store: ProcedureStore, settings: RuntimeSettings, base: Path | None = None
    ) -> "ProcedureSharing":
        return cls(
            procedure_store,
            settings.exports_path(base),
            package_extension=settings.package_extension,
            include_media=settings.include_media,
        )

    # ------------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------------

    def export_package(self, procedure: Procedure, *, include_media: bool | None = None) -> Path:
        """Write ``procedure`` to ``<export_dir>/<name>_<YYYYMMDD><ext>``, replacing any existing file."""
        info = PackageInfo(
            version=PACKAGE_FORMAT_VERSION,
            procedure_id=procedure.id,
            procedure_name=procedure.name,
            equipment_id=procedure.equipment_id,
            export_date=datetime.now(UTC),
            author=self.author,
            description=procedure.description,
        )
        stem = sanitize_file_name(f"{procedure.name or procedure.id}_{info.export_date:%Y%m%d}")
        output_path = self.export_dir / f"{stem}{self.package_extension}"
        with_media = self.include_media if include_media is None else include_media

        tmp_path = output_path.with_name(f".{output_path.name}.tmp")
        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                archive.writestr(_PROCEDURE_ENTRY, procedure.to_json())
                archive.writestr(_INFO_ENTRY, info.model_dump_json(by_alias=True, indent=2))
                if with_media:
                    for name, source in self._media_sources(procedure):
                        archive.write(source, f"{_MEDIA_PREFIX}{name}")
            tmp_path.replace(output_path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            logger.error("Failed to export procedure %s: %s", procedure.id, exc)
            raise StorageFailure(f"failed to export procedure {procedure.id}: {exc}") from exc

        logger.info("Exported procedure %s to %s", procedure.id, output_path)
        return output_path

    def _media_sources(self, procedure: Procedure) -> list[tuple[str, Path]]:
        sources: dict[str, Path] = {}
        for step in procedure.steps:
            if step.media is None:
                continue
            for name in step.media.files():
                file_name = Path(name).name
                if file_name in sources:
                    continue
                source = self.procedure_store.find_media(procedure.equipment_id, name)
                if source is None:
                    logger.warning("Media %s referenced by step %s of %s not found", name, step.id, procedure.id)
                    continue
                sources[file_name] = source
        return sorted(sources.items())

    def read_package_info(self, package_path: Path) -> PackageInfo | None:
        """Metadata of a package without importing it; ``None`` when absent or unreadable."""
        try:
            with zipfile.ZipFile(package_path) as archive:
                if _INFO_ENTRY not in archive.namelist():
                    return None
                return PackageInfo.model_validate_json(archive.read(_INFO_ENTRY))
        except (OSError, zipfile.BadZipFile, ValidationError) as exc:
            logger.warning("Cannot read package info from %s: %s", package_path, exc)
            return None

    def import_package(self, package_path: Path, target_equipment_id: str | None = None) -> Procedure:
        """Validate a package's procedure, save it to the user location, then copy its media.

        Raises:
            PackageError: If the file is not a package or lacks ``procedure.json``.
            ProcedureParseError: If the procedure document is malformed.
            InvariantViolation: If the procedure graph is invalid.
            StorageFailure: If the package cannot be read or the procedure saved.
        """
        if not package_path.is_file():
            raise PackageError(f"package file not found: {package_path}")

        try:
            with zipfile.ZipFile(package_path) as archive:
                names = archive.namelist()
                if _PROCEDURE_ENTRY not in names:
                    raise PackageError(f"package {package_path} is missing {_PROCEDURE_ENTRY}")
                procedure_text = archive.read(_PROCEDURE_ENTRY).decode("utf-8")
                info = None
                if _INFO_ENTRY in names:
                    try:
                        info = PackageInfo.model_validate_json(archive.read(_INFO_ENTRY))
                    except ValidationError as exc:
                        logger.warning("Ignoring malformed %s in %s: %s", _INFO_ENTRY, package_path, exc)
                procedure = parse_procedure(procedure_text, f"{package_path}!{_PROCEDURE_ENTRY}")

                equipment_id = target_equipment_id or procedure.equipment_id or (info.equipment_id if info else "")
                if not equipment_id:
                    raise PackageError(f"package {package_path} does not name an equipment id; pass one explicitly")
                if procedure.equipment_id != equipment_id:
                    procedure = procedure.model_copy(update={"equipment_id": equipment_id})
                validate_procedure(procedure)
                self.procedure_store.save_procedure(procedure)

                media_entries = [name for name in names if name.startswith(_MEDIA_PREFIX) and not name.endswith("/")]
                if media_entries:
                    media_dir = self.procedure_store.user_media_dir(equipment_id)
                    media_dir.mkdir(parents=True, exist_ok=True)
                    for entry in media_entries:
                        file_name = Path(entry).name
                        if not file_name:
                            continue
                        with archive.open(entry) as source, (media_dir / file_name).open("wb") as target:
                            shutil.copyfileobj(source, target)
        except zipfile.BadZipFile as exc:
            raise PackageError(f"{package_path} is not a valid procedure package: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise ProcedureParseError(f"{_PROCEDURE_ENTRY} in {package_path} is not UTF-8") from exc
        except OSError as exc:
            raise StorageFailure(f"failed to import package {package_path}: {exc}") from exc

        logger.info("Imported procedure %s for %s from %s", procedure.id, equipment_id, package_path)
        return procedure

    def list_exported_packages(self) -> list[Path]:
        if not self.export_dir.is_dir():
            return []
        return sorted(self.export_dir.glob(f"*{self.package_extension}"))

    # ------------------------------------------------------------------
    # Share codes
    # ------------------------------------------------------------------

    def generate_share_code(self, procedure: Procedure) -> str:
        payload = to_canonical_json(procedure.to_document()).encode("utf-8")
        return SHARE_CODE_PREFIX + base64.b64encode(payload).decode("ascii")

    def import_share_code(self, share_code: str) -> Procedure:
        """Decode and validate a share code. The procedure is returned, not saved.

        Raises:
            PackageError: If the code has the wrong prefix or is not base64.
            ProcedureParseError: If the decoded document is malformed.
            InvariantViolation: If the procedure graph is invalid.
        """
        code = share_code.strip()
        if not code.startswith(SHARE_CODE_PREFIX):
            raise PackageError("invalid share code format")
        try:
            raw = base64.b64decode(code[len(SHARE_CODE_PREFIX):], validate=True)
            text = raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise PackageError(f"share code payload is not valid: {exc}") from exc
        procedure = parse_procedure(text, "share code")
        validate_procedure(procedure)
        return procedure
