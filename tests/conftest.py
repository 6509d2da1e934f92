from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from mechanicscope.procedure_store import ProcedureLocation, ProcedureStore
from mechanicscope.progress_store import ProgressStore

EQUIPMENT = "lawnmower-x"


def step(step_id: int, *requires: int, **extra: Any) -> dict[str, Any]:
    document: dict[str, Any] = {"id": step_id, "action": f"Step {step_id}", "requires": list(requires)}
    document.update(extra)
    return document


def procedure_document(procedure_id: str, steps: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    document: dict[str, Any] = {
        "id": procedure_id,
        "name": procedure_id.replace("-", " ").title(),
        "equipmentId": EQUIPMENT,
        "steps": steps,
    }
    document.update(extra)
    return document


def write_procedure(root: Path, document: dict[str, Any], equipment_id: str = EQUIPMENT) -> Path:
    directory = root / equipment_id / "procedures"
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{document['id']}.json"
    path.write_text(json.dumps(document, indent=2), encoding="utf-8")
    return path


# Shared example graph: 1 -> {2, 3}; 4 needs 2 and 3; 5 needs 4.
DIAMOND = [
    step(1, partRef="air_filter_cover"),
    step(2, 1, partRef="air_filter"),
    step(3, 1),
    step(4, 2, 3, partRef="spark_plug", torqueSpec={"value": 25, "unit": "Nm", "note": "hand tight"}),
    step(5, 4),
]


@pytest.fixture
def user_root(tmp_path: Path) -> Path:
    return tmp_path / "user"


@pytest.fixture
def bundled_root(tmp_path: Path) -> Path:
    return tmp_path / "bundled"


@pytest.fixture
def procedure_store(user_root: Path, bundled_root: Path) -> ProcedureStore:
    return ProcedureStore(
        [ProcedureLocation(user_root, writable=True), ProcedureLocation(bundled_root)]
    )


@pytest.fixture
def progress_store(tmp_path: Path) -> ProgressStore:
    return ProgressStore(tmp_path / "progress")
