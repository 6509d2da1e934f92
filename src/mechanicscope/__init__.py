from importlib.metadata import version

from .canonical import to_canonical_json
from .engine import DependencyEngine, EngineObserver, EngineSnapshot, Subscription
from .errors import (
    DependentsExist,
    EngineStateError,
    InvariantViolation,
    MechanicScopeError,
    PackageError,
    ProcedureNotFound,
    ProcedureParseError,
    StepNotAvailable,
    StepNotCompleted,
    StorageFailure,
)
from .graph import compute_available, validate_procedure
from .models import (
    EngineEvent,
    EngineState,
    PackageInfo,
    Procedure,
    ProcedureSummary,
    ProgressRecord,
    ProgressSummary,
    RepairLog,
    RepairStatistics,
    Step,
    StepMedia,
    StepStatus,
    TorqueSpec,
)
from .procedure_store import ProcedureLocation, ProcedureStore, parse_procedure
from .progress_store import ProgressStore
from .settings import RuntimeSettings
from .sharing import ProcedureSharing


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "DependencyEngine",
    "DependentsExist",
    "EngineEvent",
    "EngineObserver",
    "EngineSnapshot",
    "EngineState",
    "EngineStateError",
    "InvariantViolation",
    "MechanicScopeError",
    "PackageError",
    "PackageInfo",
    "Procedure",
    "ProcedureLocation",
    "ProcedureNotFound",
    "ProcedureParseError",
    "ProcedureSharing",
    "ProcedureStore",
    "ProcedureSummary",
    "ProgressRecord",
    "ProgressStore",
    "ProgressSummary",
    "RepairLog",
    "RepairStatistics",
    "RuntimeSettings",
    "Step",
    "StepMedia",
    "StepNotAvailable",
    "StepNotCompleted",
    "StepStatus",
    "StorageFailure",
    "Subscription",
    "TorqueSpec",
    "compute_available",
    "get_version",
    "parse_procedure",
    "to_canonical_json",
    "validate_procedure",
]
