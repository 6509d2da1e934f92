"""Dependency engine: which steps of a loaded procedure can be performed now.

One engine instance drives one session at a time. Session state is the
completed-step set; the available set and the active step are derived from it
and the graph after every mutation. Each mutation is written to the progress
store before the in-memory state changes, so a failed write leaves both sides
exactly as they were before the call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import (
    DependentsExist,
    EngineStateError,
    StepNotAvailable,
    StepNotCompleted,
)
from .graph import compute_available, completed_dependents, missing_requirements, validate_procedure
from .models import EngineEvent, EngineState, Procedure, RepairLog, Step, StepStatus
from .procedure_store import ProcedureStore, parse_procedure
from .progress_store import ProgressStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSnapshot:
    """Immutable view of a session, for polling or for observers."""

    state: EngineState
    equipment_id: str | None
    procedure_id: str | None
    completed: frozenset[int]
    available: tuple[int, ...]
    active: int | None
    highlighted_parts: tuple[str, ...]
    available_part_refs: tuple[str, ...]
    progress_percentage: float

    @property
    def is_completed(self) -> bool:
        return self.state is EngineState.COMPLETED


EngineObserver = Callable[[EngineEvent, EngineSnapshot], None]


class Subscription:
    """Handle returned by ``DependencyEngine.subscribe``.

    ``unsubscribe`` may be called any number of times. The handle also works
    as a context manager that unsubscribes on exit.
    """

    def __init__(self, engine: "DependencyEngine", callback: EngineObserver) -> None:
        self._engine = engine
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._engine._remove_subscription(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class DependencyEngine:
    """Tracks completed, available and active steps for one procedure session.

    States: ``UNLOADED -> LOADED -> ACTIVE <-> STEPPING -> COMPLETED``.
    ``STEPPING`` is held only while a mutation is being persisted.
    ``COMPLETED`` is terminal for step mutations; ``reset`` or a new ``load``
    starts a fresh session.
    """

    def __init__(self, procedure_store: ProcedureStore, progress_store: ProgressStore) -> None:
        self.procedure_store = procedure_store
        self.progress_store = progress_store
        self._procedure: Procedure | None = None
        self._equipment_id: str | None = None
        self._completed: set[int] = set()
        self._available: list[Step] = []
        self._active: Step | None = None
        self._state = EngineState.UNLOADED
        self._subscriptions: list[Subscription] = []
        self.started_at: datetime | None = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def procedure(self) -> Procedure | None:
        return self._procedure

    @property
    def equipment_id(self) -> str | None:
        return self._equipment_id

    @property
    def is_loaded(self) -> bool:
        return self._procedure is not None

    @property
    def is_completed(self) -> bool:
        return self._state is EngineState.COMPLETED

    @property
    def completed(self) -> frozenset[int]:
        return frozenset(self._completed)

    @property
    def available(self) -> tuple[Step, ...]:
        return tuple(self._available)

    @property
    def available_ids(self) -> tuple[int, ...]:
        return tuple(step.id for step in self._available)

    @property
    def active(self) -> Step | None:
        return self._active

    @property
    def progress_percentage(self) -> float:
        """Share of steps completed, for display. Completion itself is decided per id."""
        if self._procedure is None or not self._procedure.steps:
            return 0.0
        return len(self._completed) / len(self._procedure.steps) * 100.0

    def get_step(self, step_id: int) -> Step | None:
        return self._procedure.get_step(step_id) if self._procedure is not None else None

    def is_step_completed(self, step_id: int) -> bool:
        return step_id in self._completed

    def is_step_available(self, step_id: int) -> bool:
        return any(step.id == step_id for step in self._available)

    def get_step_status(self, step_id: int) -> StepStatus:
        procedure = self._require_procedure()
        if procedure.get_step(step_id) is None:
            raise KeyError(f"procedure {procedure.id} has no step {step_id}")
        if step_id in self._completed:
            return StepStatus.COMPLETED
        if self.is_step_available(step_id):
            return StepStatus.AVAILABLE
        return StepStatus.BLOCKED

    def highlighted_parts(self) -> list[str]:
        """Part reference of the active step, if it has one."""
        if self._active is not None and self._active.part_ref:
            return [self._active.part_ref]
        return []

    def available_part_refs(self) -> list[str]:
        refs: list[str] = []
        for step in self._available:
            if step.part_ref and step.part_ref not in refs:
                refs.append(step.part_ref)
        return refs

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            state=self._state,
            equipment_id=self._equipment_id,
            procedure_id=self._procedure.id if self._procedure is not None else None,
            completed=frozenset(self._completed),
            available=self.available_ids,
            active=self._active.id if self._active is not None else None,
            highlighted_parts=tuple(self.highlighted_parts()),
            available_part_refs=tuple(self.available_part_refs()),
            progress_percentage=self.progress_percentage,
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: EngineObserver) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        self._subscriptions = [item for item in self._subscriptions if item is not subscription]

    def _notify(self, event: EngineEvent) -> None:
        if not self._subscriptions:
            return
        snapshot = self.snapshot()
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.callback(event, snapshot)
            except Exception:
                logger.exception("Engine observer %r failed while handling %s", subscription.callback, event.value)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def load(self, procedure_id: str, equipment_id: str) -> EngineSnapshot:
        """Start a new session for ``procedure_id`` on ``equipment_id``.

        Raises:
            ProcedureNotFound, ProcedureParseError, InvariantViolation: From
                the procedure store.
            StorageFailure: If progress cannot be read or reconciled.
        """
        procedure = self.procedure_store.load_procedure(equipment_id, procedure_id)
        return self.load_procedure(procedure, equipment_id)

    def load_json(self, text: str, equipment_id: str, source: str = "procedure JSON") -> EngineSnapshot:
        """Start a session from a procedure document that is not in any store location."""
        return self.load_procedure(parse_procedure(text, source), equipment_id)

    def load_procedure(self, procedure: Procedure, equipment_id: str) -> EngineSnapshot:
        """Start a new session on an already parsed procedure, e.g. one decoded from a share code.

        The graph is validated here, so callers need not have done it.
        Completed ids persisted for steps that no longer exist in the graph
        are dropped, and the pruned set is written back. Nothing about the
        current session changes unless validation, the read and the write
        all succeed.

        Raises:
            InvariantViolation: If the graph is invalid.
            StorageFailure: If progress cannot be read or reconciled.
        """
        validate_procedure(procedure)
        procedure_id = procedure.id
        prior = self.progress_store.get_completed_steps(equipment_id, procedure_id)

        step_ids = procedure.step_ids
        completed = prior & step_ids
        stale = prior - step_ids
        if stale:
            logger.info(
                "Dropping completed ids %s no longer present in procedure %s",
                sorted(stale),
                procedure_id,
            )
            self.progress_store.set_completed_steps(equipment_id, procedure_id, completed)

        self._procedure = procedure
        self._equipment_id = equipment_id
        self._state = EngineState.LOADED
        self._completed = completed
        self._available = compute_available(procedure, self._completed)
        self.started_at = datetime.now(UTC)
        self._settle(preferred=None)

        logger.info(
            "Loaded procedure %s for %s: %d/%d steps completed",
            procedure_id,
            equipment_id,
            len(self._completed),
            len(procedure.steps),
        )
        self._notify(EngineEvent.LOADED)
        if self._state is EngineState.COMPLETED:
            self._notify(EngineEvent.PROCEDURE_COMPLETED)
        return self.snapshot()

    def unload(self) -> None:
        was_loaded = self._procedure is not None
        self._procedure = None
        self._equipment_id = None
        self._completed = set()
        self._available = []
        self._active = None
        self._state = EngineState.UNLOADED
        self.started_at = None
        if was_loaded:
            self._notify(EngineEvent.UNLOADED)

    def reset(self) -> EngineSnapshot:
        """Clear all progress for the loaded procedure without re-reading the graph."""
        procedure = self._require_procedure()
        equipment_id = self._require_equipment()

        self.progress_store.clear_progress(equipment_id, procedure.id)
        self._completed = set()
        self._available = compute_available(procedure, self._completed)
        self.started_at = datetime.now(UTC)
        self._settle(preferred=None)

        logger.info("Reset procedure %s for %s", procedure.id, equipment_id)
        self._notify(EngineEvent.RESET)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def complete(self, step_id: int) -> EngineSnapshot:
        """Mark an available step completed and persist the new set.

        Raises:
            StepNotAvailable: If the step is unknown, blocked or already completed.
            StorageFailure: If the write fails; the session is left unchanged.
        """
        procedure = self._require_procedure()
        equipment_id = self._require_equipment()

        step = procedure.get_step(step_id)
        if step is None:
            logger.warning("Cannot complete step %s: not part of procedure %s", step_id, procedure.id)
            raise StepNotAvailable(step_id, "unknown")
        if not self.is_step_available(step_id):
            if step_id in self._completed:
                error = StepNotAvailable(step_id, "completed")
            else:
                error = StepNotAvailable(step_id, "blocked", missing_requirements(step, self._completed))
            logger.warning("Cannot complete step %s: %s", step_id, error)
            raise error

        completed = self._completed | {step_id}
        self._persist(procedure, equipment_id, completed)
        self._completed = completed
        self._available = compute_available(procedure, self._completed)
        self._settle(preferred=None)

        logger.debug("Completed step %s of %s; available now %s", step_id, procedure.id, self.available_ids)
        self._notify(EngineEvent.STEP_COMPLETED)
        if self._state is EngineState.COMPLETED:
            logger.info("Procedure %s completed for %s", procedure.id, equipment_id)
            self._notify(EngineEvent.PROCEDURE_COMPLETED)
        return self.snapshot()

    def uncomplete(self, step_id: int) -> EngineSnapshot:
        """Reopen a completed step and make it the active step.

        Raises:
            EngineStateError: If the session has already reached ``COMPLETED``.
            StepNotCompleted: If the step is not in the completed set.
            DependentsExist: If another completed step requires it.
            StorageFailure: If the write fails; the session is left unchanged.
        """
        procedure = self._require_procedure()
        equipment_id = self._require_equipment()
        if self._state is EngineState.COMPLETED:
            raise EngineStateError(
                f"procedure {procedure.id} is completed; reset or load it again to change progress"
            )

        if step_id not in self._completed:
            logger.warning("Cannot uncomplete step %s: not completed", step_id)
            raise StepNotCompleted(step_id)
        dependents = completed_dependents(procedure, step_id, self._completed)
        if dependents:
            logger.warning("Cannot uncomplete step %s: completed steps %s depend on it", step_id, dependents)
            raise DependentsExist(step_id, dependents)

        completed = self._completed - {step_id}
        self._persist(procedure, equipment_id, completed)
        self._completed = completed
        self._available = compute_available(procedure, self._completed)
        self._settle(preferred=step_id)

        logger.debug("Uncompleted step %s of %s", step_id, procedure.id)
        self._notify(EngineEvent.STEP_UNCOMPLETED)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def set_active(self, step_id: int) -> bool:
        """Present a different available step. Returns False, changing nothing, otherwise."""
        self._require_procedure()
        step = next((item for item in self._available if item.id == step_id), None)
        if step is None:
            logger.debug("Ignoring set_active(%s): step is not available", step_id)
            return False
        if self._active is not step:
            self._active = step
            self._notify(EngineEvent.ACTIVE_CHANGED)
        return True

    def next(self) -> bool:
        return self._step_active(1)

    def previous(self) -> bool:
        return self._step_active(-1)

    def _step_active(self, offset: int) -> bool:
        self._require_procedure()
        if self._active is None or not self._available:
            return False
        index = self._available.index(self._active) + offset
        if not 0 <= index < len(self._available):
            return False
        self._active = self._available[index]
        self._notify(EngineEvent.ACTIVE_CHANGED)
        return True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def build_repair_log(
        self,
        *,
        equipment_name: str | None = None,
        notes: str | None = None,
        rating: int | None = None,
        completed_at: datetime | None = None,
    ) -> RepairLog:
        """History entry for the current session, ready for ``ProgressStore.log_completion``."""
        procedure = self._require_procedure()
        equipment_id = self._require_equipment()
        finished = completed_at or datetime.now(UTC)
        return RepairLog(
            procedure_id=procedure.id,
            procedure_name=procedure.name,
            equipment_id=equipment_id,
            equipment_name=equipment_name or equipment_id,
            started_at=self.started_at or finished,
            completed_at=finished,
            notes=notes,
            rating=rating,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persist(self, procedure: Procedure, equipment_id: str, completed: Iterable[int]) -> None:
        previous = self._state
        self._state = EngineState.STEPPING
        try:
            self.progress_store.set_completed_steps(equipment_id, procedure.id, completed)
        finally:
            self._state = previous

    def _settle(self, preferred: int | None) -> None:
        """Pick the active step and state after ``_available`` was recomputed."""
        procedure = self._require_procedure()
        if procedure.step_ids <= self._completed:
            self._active = None
            self._state = EngineState.COMPLETED
            return

        self._state = EngineState.ACTIVE
        chosen = None
        if preferred is not None:
            chosen = next((step for step in self._available if step.id == preferred), None)
        if chosen is None and self._available:
            chosen = self._available[0]
        self._active = chosen
        if chosen is None:
            logger.warning(
                "Procedure %s has no available steps but is not complete; completed=%s",
                procedure.id,
                sorted(self._completed),
            )

    def _require_procedure(self) -> Procedure:
        if self._procedure is None:
            raise EngineStateError("no procedure is loaded")
        return self._procedure

    def _require_equipment(self) -> str:
        if self._equipment_id is None:
            raise EngineStateError("no procedure is loaded")
        return self._equipment_id
