from importlib.metadata import PackageNotFoundError, version

from .discovery import DefaultContractPolicy, PolicyDecision, Reconciler, build_contract_snapshot
from .engine import MissionEngine
from .errors import (
    AppendOnlyViolation,
    ConflictingWriteAttempt,
    CyclicDependency,
    DuplicateMission,
    IllegalTransition,
    OrchestrationError,
    PhaseGateFailed,
    StaleUnit,
    UnknownDependency,
)
from .executors import CallableExecutor, Executor, ExecutorRegistry
from .graph import DependencyGraph, derive_blocks, resolve
from .models import (
    CompatibilityPolicy,
    ContractEvent,
    ContractSnapshot,
    DecisionAction,
    Discovery,
    DiscoveryCategory,
    DiscoveryStatus,
    GateResult,
    Mission,
    MissionSpec,
    MissionStatus,
    Phase,
    ReportedDiscovery,
    Request,
    RequestSubmission,
    UnitBounds,
    UnitOutcome,
    UnitStatus,
    WorkItem,
    WorkUnit,
    WorkUnitPayload,
    WorkUnitReport,
)
from .phases import PhaseMachine
from .recovery import GitChangeEvidence, RecoveryManager
from .scheduler import Scheduler, partition_phase
from .settings import RuntimeSettings
from .state_store import MissionStateStore, Writer
from .status import StatusSnapshot
from .validation import CommandGateValidator, GateValidator


def get_version() -> str:
    try:
        return version("mission-engine")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AppendOnlyViolation",
    "CallableExecutor",
    "CommandGateValidator",
    "CompatibilityPolicy",
    "ConflictingWriteAttempt",
    "ContractEvent",
    "ContractSnapshot",
    "CyclicDependency",
    "DecisionAction",
    "DefaultContractPolicy",
    "DependencyGraph",
    "Discovery",
    "DiscoveryCategory",
    "DiscoveryStatus",
    "DuplicateMission",
    "Executor",
    "ExecutorRegistry",
    "GateResult",
    "GateValidator",
    "GitChangeEvidence",
    "IllegalTransition",
    "Mission",
    "MissionEngine",
    "MissionSpec",
    "MissionStateStore",
    "MissionStatus",
    "OrchestrationError",
    "Phase",
    "PhaseGateFailed",
    "PhaseMachine",
    "PolicyDecision",
    "Reconciler",
    "RecoveryManager",
    "ReportedDiscovery",
    "Request",
    "RequestSubmission",
    "RuntimeSettings",
    "Scheduler",
    "StaleUnit",
    "StatusSnapshot",
    "UnitBounds",
    "UnitOutcome",
    "UnitStatus",
    "UnknownDependency",
    "WorkItem",
    "WorkUnit",
    "WorkUnitPayload",
    "WorkUnitReport",
    "Writer",
    "build_contract_snapshot",
    "derive_blocks",
    "get_version",
    "partition_phase",
    "resolve",
]
