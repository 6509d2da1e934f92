from __future__ import annotations

from collections.abc import Iterable


class MechanicScopeError(Exception):
    """Base class for every error raised by the procedure engine and its stores."""


class ProcedureNotFound(MechanicScopeError, LookupError):
    def __init__(self, equipment_id: str, procedure_id: str) -> None:
        self.equipment_id = equipment_id
        self.procedure_id = procedure_id
        super().__init__(f"Procedure '{procedure_id}' not found for equipment '{equipment_id}'")


class ProcedureParseError(MechanicScopeError, ValueError):
    """A procedure document could not be decoded or failed schema validation."""


class InvariantViolation(MechanicScopeError, ValueError):
    """A parsed procedure breaks one of the graph invariants.

    ``issues`` holds one human-readable line per problem and ``step_ids`` the
    sorted union of every step id named by those problems.
    """

    def __init__(self, procedure_id: str, issues: list[str], step_ids: Iterable[int]) -> None:
        self.procedure_id = procedure_id
        self.issues = list(issues)
        self.step_ids = sorted(set(step_ids))
        detail = "; ".join(self.issues)
        super().__init__(f"Procedure '{procedure_id}' is invalid: {detail}")


class StepNotAvailable(MechanicScopeError, ValueError):
    def __init__(self, step_id: int, reason: str, missing: Iterable[int] = ()) -> None:
        self.step_id = step_id
        self.reason = reason
        self.missing = sorted(missing)
        message = f"Step {step_id} is not available ({reason})"
        if self.missing:
            message += f"; waiting on steps {self.missing}"
        super().__init__(message)


class StepNotCompleted(MechanicScopeError, ValueError):
    def __init__(self, step_id: int) -> None:
        self.step_id = step_id
        super().__init__(f"Step {step_id} is not completed")


class DependentsExist(MechanicScopeError, ValueError):
    def __init__(self, step_id: int, dependents: Iterable[int]) -> None:
        self.step_id = step_id
        self.dependents = sorted(dependents)
        super().__init__(f"Cannot uncomplete step {step_id}: completed steps {self.dependents} depend on it")


class StorageFailure(MechanicScopeError, RuntimeError):
    """Wraps a failed read or write against durable storage."""


class EngineStateError(MechanicScopeError, RuntimeError):
    """The operation is not valid in the engine's current state."""


class PackageError(MechanicScopeError, ValueError):
    """An exported package, share code or progress export is malformed."""
