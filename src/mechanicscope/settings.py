from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    data_root: str = "mechanicscope_data"
    bundled_roots: tuple[str, ...] = ()
    history_limit: int = 50
    package_extension: str = ".msproc"
    include_media: bool = True

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            data_root=os.getenv("MECHSCOPE_DATA_ROOT", "mechanicscope_data"),
            bundled_roots=_get_env_paths("MECHSCOPE_BUNDLED_ROOTS"),
            history_limit=_get_env_int("MECHSCOPE_HISTORY_LIMIT", default=50, minimum=1, maximum=10_000),
            package_extension=os.getenv("MECHSCOPE_PACKAGE_EXTENSION", ".msproc"),
            include_media=_get_env_bool("MECHSCOPE_INCLUDE_MEDIA", default=True),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        data_root = self.data_root.strip()
        if not data_root:
            raise ValueError("MECHSCOPE_DATA_ROOT must be non-empty")

        extension = self.package_extension.strip()
        if len(extension) < 2 or not extension.startswith("."):
            raise ValueError(
                f"MECHSCOPE_PACKAGE_EXTENSION must start with '.' and name a suffix, got: {self.package_extension!r}"
            )
        if any(sep in extension for sep in ("/", "\\")):
            raise ValueError(f"MECHSCOPE_PACKAGE_EXTENSION must not contain path separators, got: {extension!r}")

        if not 1 <= self.history_limit <= 10_000:
            raise ValueError(f"MECHSCOPE_HISTORY_LIMIT must be within [1, 10000], got: {self.history_limit}")

        return RuntimeSettings(
            data_root=data_root,
            bundled_roots=tuple(root.strip() for root in self.bundled_roots if root.strip()),
            history_limit=self.history_limit,
            package_extension=extension,
            include_media=self.include_media,
        )

    def data_root_path(self, base: Path | None = None) -> Path:
        path = Path(self.data_root)
        if path.is_absolute():
            return path
        return (base if base is not None else Path.cwd()) / path

    def user_procedures_path(self, base: Path | None = None) -> Path:
        return self.data_root_path(base) / "procedures"

    def progress_path(self, base: Path | None = None) -> Path:
        return self.data_root_path(base) / "progress"

    def exports_path(self, base: Path | None = None) -> Path:
        return self.data_root_path(base) / "exports"

    def bundled_paths(self) -> list[Path]:
        return [Path(root) for root in self.bundled_roots]


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")


def _get_env_paths(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part for part in raw.split(os.pathsep) if part.strip())
