from __future__ import annotations

import hashlib
import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .canonical import to_canonical_json


class StepStatus(str, Enum):
    BLOCKED = "blocked"
    AVAILABLE = "available"
    COMPLETED = "completed"


class EngineState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    ACTIVE = "active"
    STEPPING = "stepping"
    COMPLETED = "completed"


class EngineEvent(str, Enum):
    LOADED = "loaded"
    STEP_COMPLETED = "step_completed"
    STEP_UNCOMPLETED = "step_uncompleted"
    ACTIVE_CHANGED = "active_changed"
    PROCEDURE_COMPLETED = "procedure_completed"
    RESET = "reset"
    UNLOADED = "unloaded"


class _Document(BaseModel):
    """Base for on-disk procedure documents: camelCase keys, unknown keys preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )


def _none_to_empty(value: object) -> object:
    return () if value is None else value


class TorqueSpec(_Document):
    value: float
    unit: str = ""
    note: str | None = None

    def __str__(self) -> str:
        result = f"{self.value:g} {self.unit}".strip()
        if self.note:
            result += f" ({self.note})"
        return result


class StepMedia(_Document):
    image: str | None = None
    video: str | None = None

    def files(self) -> list[str]:
        return [name for name in (self.image, self.video) if name]


class Step(_Document):
    """One node of a procedure graph.

    Only ``id`` and ``requires`` carry meaning for the engine; every other
    field is display payload handed through to the caller untouched.
    """

    id: int = Field(gt=0)
    action: str
    details: str = ""
    part_ref: str | None = Field(
        default=None,
        validation_alias=AliasChoices("partRef", "partId", "part_ref"),
        serialization_alias="partRef",
    )
    tools: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    requires: tuple[int, ...] = ()
    torque_spec: TorqueSpec | None = None
    media: StepMedia | None = None

    @field_validator("tools", "warnings", "requires", mode="before")
    @classmethod
    def empty_when_null(cls, value: object) -> object:
        return _none_to_empty(value)

    @property
    def is_entry(self) -> bool:
        return not self.requires


class Procedure(_Document):
    """Immutable procedure graph as stored in a ``<procedure_id>.json`` document."""

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    equipment_id: str = Field(
        default="",
        validation_alias=AliasChoices("equipmentId", "engineId", "equipment_id"),
        serialization_alias="equipmentId",
    )
    estimated_time: str | None = None
    difficulty: str | None = None
    tools: tuple[str, ...] = ()
    steps: tuple[Step, ...] = ()
    reinstall_notes: str | None = None

    @field_validator("tools", "steps", mode="before")
    @classmethod
    def empty_when_null(cls, value: object) -> object:
        return _none_to_empty(value)

    @property
    def step_ids(self) -> frozenset[int]:
        return frozenset(step.id for step in self.steps)

    def get_step(self, step_id: int) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_document(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @property
    def fingerprint(self) -> str:
        canonical = to_canonical_json(self.to_document())
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ProcedureSummary(BaseModel):
    """Listing entry for one procedure document found in a storage location."""

    model_config = ConfigDict(frozen=True)

    procedure_id: str
    name: str
    equipment_id: str
    description: str = ""
    difficulty: str | None = None
    estimated_time: str | None = None
    step_count: int
    path: Path
    writable: bool


class ProgressRecord(BaseModel):
    equipment_id: str
    procedure_id: str
    completed_step_ids: list[int] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("completed_step_ids")
    @classmethod
    def sorted_unique(cls, value: list[int]) -> list[int]:
        return sorted(set(value))

    @property
    def key(self) -> str:
        return progress_key(self.equipment_id, self.procedure_id)


class ProgressSummary(BaseModel):
    equipment_id: str
    procedure_id: str
    completed_step_count: int
    last_updated: datetime


class RepairLog(BaseModel):
    """Immutable completion-history entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    procedure_id: str
    procedure_name: str = ""
    equipment_id: str = ""
    equipment_name: str = ""
    started_at: datetime
    completed_at: datetime
    notes: str | None = None
    rating: int | None = Field(default=None, ge=1, le=5)

    @property
    def duration_minutes(self) -> int:
        return max(0, int((self.completed_at - self.started_at).total_seconds() // 60))


class RepairStatistics(BaseModel):
    procedure_id: str
    equipment_id: str
    times_completed: int
    total_duration_minutes: int
    average_duration_minutes: float
    last_completed_at: datetime | None = None


class PackageInfo(_Document):
    """Metadata written as ``package.json`` inside an exported procedure package."""

    version: int = 1
    procedure_id: str
    procedure_name: str = ""
    equipment_id: str = Field(
        default="",
        validation_alias=AliasChoices("equipmentId", "engineId", "equipment_id"),
        serialization_alias="equipmentId",
    )
    export_date: datetime
    author: str = ""
    description: str = ""
    tags: tuple[str, ...] = ()

    @field_validator("tags", mode="before")
    @classmethod
    def empty_when_null(cls, value: object) -> object:
        return _none_to_empty(value)


def progress_key(equipment_id: str, procedure_id: str) -> str:
    """Composite storage key for one (equipment, procedure) progress record."""
    return f"{equipment_id}_{procedure_id}"
