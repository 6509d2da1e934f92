"""Graph invariants and availability derivation for procedure documents."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict, deque
from collections.abc import Collection

from .errors import InvariantViolation
from .models import Procedure, Step

logger = logging.getLogger(__name__)


def find_cycle_members(procedure: Procedure) -> set[int]:
    """Return ids of steps that sit on, or depend on, a ``requires`` cycle.

    Kahn's algorithm over the prerequisite edges: whatever never reaches
    indegree zero cannot be ordered. Dangling requirements are ignored here;
    they are reported separately.
    """
    step_ids = procedure.step_ids
    indegree = {step_id: 0 for step_id in step_ids}
    edges: dict[int, list[int]] = defaultdict(list)

    for step in procedure.steps:
        for dep in set(step.requires):
            if dep not in step_ids:
                continue
            indegree[step.id] += 1
            edges[dep].append(step.id)

    queue = deque(sorted(step_id for step_id, degree in indegree.items() if degree == 0))
    ordered: set[int] = set()
    while queue:
        current = queue.popleft()
        ordered.add(current)
        for nxt in sorted(edges[current]):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    return set(step_ids) - ordered


def validate_procedure(procedure: Procedure) -> None:
    """Check every load-time invariant and raise one error naming all offenders.

    Raises:
        InvariantViolation: On duplicate step ids, dangling ``requires``
            references, a missing entry step, or a ``requires`` cycle.
    """
    issues: list[str] = []
    offenders: set[int] = set()

    counts = Counter(step.id for step in procedure.steps)
    duplicates = sorted(step_id for step_id, count in counts.items() if count > 1)
    if duplicates:
        issues.append(f"duplicate step ids {duplicates}")
        offenders.update(duplicates)

    step_ids = procedure.step_ids
    for step in procedure.steps:
        dangling = sorted(set(step.requires) - step_ids)
        if dangling:
            issues.append(f"step {step.id} requires unknown steps {dangling}")
            offenders.add(step.id)
            offenders.update(dangling)

    if not any(step.is_entry for step in procedure.steps):
        issues.append("no entry step (every step has prerequisites)")

    cyclic = find_cycle_members(procedure)
    if cyclic:
        issues.append(f"requires cycle through steps {sorted(cyclic)}")
        offenders.update(cyclic)

    if issues:
        logger.debug("procedure %s failed validation: %s", procedure.id, issues)
        raise InvariantViolation(procedure.id, issues, offenders)


def compute_available(procedure: Procedure, completed: Collection[int]) -> list[Step]:
    """Steps not yet completed whose every prerequisite is completed, in document order."""
    return [
        step
        for step in procedure.steps
        if step.id not in completed and all(dep in completed for dep in step.requires)
    ]


def completed_dependents(procedure: Procedure, step_id: int, completed: Collection[int]) -> list[int]:
    """Completed steps that list ``step_id`` among their prerequisites."""
    return sorted(
        step.id
        for step in procedure.steps
        if step.id != step_id and step.id in completed and step_id in step.requires
    )


def missing_requirements(step: Step, completed: Collection[int]) -> list[int]:
    return sorted(dep for dep in set(step.requires) if dep not in completed)
