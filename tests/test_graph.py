from __future__ import annotations

import pytest

from mechanicscope import InvariantViolation, Procedure, compute_available, to_canonical_json, validate_procedure
from mechanicscope.graph import completed_dependents, find_cycle_members, missing_requirements

from conftest import DIAMOND, procedure_document, step


def _procedure(steps: list[dict]) -> Procedure:
    return Procedure.model_validate(procedure_document("graph", steps))


def test_valid_diamond_passes_validation() -> None:
    validate_procedure(_procedure(DIAMOND))


def test_available_is_document_order_and_excludes_completed() -> None:
    procedure = _procedure(DIAMOND)
    assert [s.id for s in compute_available(procedure, set())] == [1]
    assert [s.id for s in compute_available(procedure, {1})] == [2, 3]
    assert [s.id for s in compute_available(procedure, {1, 3})] == [2]
    assert [s.id for s in compute_available(procedure, {1, 2, 3})] == [4]
    assert compute_available(procedure, {1, 2, 3, 4, 5}) == []


def test_available_follows_document_order_not_id_order() -> None:
    procedure = _procedure([step(10), step(3), step(7, 10)])
    assert [s.id for s in compute_available(procedure, set())] == [10, 3]


def test_cycle_is_rejected_and_names_members() -> None:
    procedure = _procedure([step(1), step(2, 1, 3), step(3, 2), step(4, 3)])
    assert find_cycle_members(procedure) == {2, 3, 4}
    with pytest.raises(InvariantViolation) as excinfo:
        validate_procedure(procedure)
    assert {2, 3}.issubset(excinfo.value.step_ids)
    assert any("cycle" in issue for issue in excinfo.value.issues)


def test_self_requirement_is_a_cycle() -> None:
    with pytest.raises(InvariantViolation) as excinfo:
        validate_procedure(_procedure([step(1), step(2, 2)]))
    assert 2 in excinfo.value.step_ids


def test_dangling_requirement_is_rejected() -> None:
    with pytest.raises(InvariantViolation) as excinfo:
        validate_procedure(_procedure([step(1), step(2, 1, 99)]))
    assert excinfo.value.step_ids == [2, 99]
    assert "requires unknown steps [99]" in str(excinfo.value)


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(InvariantViolation) as excinfo:
        validate_procedure(_procedure([step(1), step(2, 1), step(2)]))
    assert excinfo.value.step_ids == [2]


def test_missing_entry_step_is_rejected() -> None:
    with pytest.raises(InvariantViolation) as excinfo:
        validate_procedure(_procedure([step(1, 2), step(2, 1)]))
    assert any("no entry step" in issue for issue in excinfo.value.issues)


def test_all_problems_reported_in_one_error() -> None:
    with pytest.raises(InvariantViolation) as excinfo:
        validate_procedure(_procedure([step(1), step(1), step(2, 42), step(3, 4), step(4, 3)]))
    assert len(excinfo.value.issues) == 3
    assert excinfo.value.step_ids == [1, 2, 3, 4, 42]


def test_dependents_and_missing_requirements() -> None:
    procedure = _procedure(DIAMOND)
    assert completed_dependents(procedure, 1, {1, 2, 3}) == [2, 3]
    assert completed_dependents(procedure, 2, {1, 2}) == []
    assert missing_requirements(procedure.get_step(4), {1, 2}) == [3]


def test_document_aliases_and_unknown_keys_are_preserved() -> None:
    procedure = Procedure.model_validate(
        {
            "id": "legacy",
            "engineId": "old-engine",
            "steps": [{"id": 1, "action": "Open", "partId": "cover", "requires": None, "customField": "x"}],
        }
    )
    assert procedure.equipment_id == "old-engine"
    first = procedure.steps[0]
    assert first.part_ref == "cover"
    assert first.requires == ()
    document = procedure.to_document()
    assert document["equipmentId"] == "old-engine"
    assert document["steps"][0]["partRef"] == "cover"
    assert document["steps"][0]["customField"] == "x"


def test_fingerprint_ignores_key_order() -> None:
    left = Procedure.model_validate(procedure_document("fp", [step(1), step(2, 1)]))
    right = Procedure.model_validate({"steps": [step(1), step(2, 1)], "equipmentId": "lawnmower-x", "name": "Fp", "id": "fp"})
    assert left.fingerprint == right.fingerprint
    assert to_canonical_json({"b": 1, "a": {2, 1}}) == '{"a":[1,2],"b":1}'
