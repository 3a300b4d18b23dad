from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class CompatibilityPolicy(str, Enum):
    REQUIRED = "REQUIRED"
    NOT_REQUIRED = "NOT_REQUIRED"
    UNSPECIFIED = "UNSPECIFIED"


class RequestStatus(str, Enum):
    OPEN = "open"
    ESCALATED = "escalated"
    COMPLETED = "completed"


class MissionStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES: frozenset[MissionStatus] = frozenset({MissionStatus.COMPLETED, MissionStatus.ABANDONED})
# Statuses in which a new failure is recorded on the mission.
ESCALATABLE_STATUSES: frozenset[MissionStatus] = frozenset({MissionStatus.IN_PROGRESS, MissionStatus.ESCALATED})

MISSION_STATUS_TRANSITIONS: dict[MissionStatus, frozenset[MissionStatus]] = {
    MissionStatus.PLANNED: frozenset(
        {MissionStatus.IN_PROGRESS, MissionStatus.BLOCKED, MissionStatus.ABANDONED}
    ),
    MissionStatus.IN_PROGRESS: frozenset(
        {
            MissionStatus.BLOCKED,
            MissionStatus.ESCALATED,
            MissionStatus.COMPLETED,
            MissionStatus.ABANDONED,
        }
    ),
    MissionStatus.BLOCKED: frozenset({MissionStatus.IN_PROGRESS, MissionStatus.ABANDONED}),
    MissionStatus.ESCALATED: frozenset({MissionStatus.IN_PROGRESS, MissionStatus.ABANDONED}),
    MissionStatus.COMPLETED: frozenset(),
    MissionStatus.ABANDONED: frozenset(),
}


class Phase(str, Enum):
    RESEARCH = "research"
    CONTRACT = "contract"
    STUB = "stub"
    TEST = "test"
    IMPLEMENT = "implement"
    VALIDATE = "validate"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.RESEARCH,
    Phase.CONTRACT,
    Phase.STUB,
    Phase.TEST,
    Phase.IMPLEMENT,
    Phase.VALIDATE,
)


class DiscoveryCategory(str, Enum):
    CONTRACT_GAP = "contract_gap"
    ARCHITECTURAL_DECISION = "architectural_decision"
    DEPENDENCY_MISSING = "dependency_missing"
    AMBIGUOUS_REQUIREMENT = "ambiguous_requirement"
    OBSERVATION = "observation"


class DiscoveryStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    PROCESSED = "processed"
    ESCALATED = "escalated"


DISCOVERY_STATUS_TRANSITIONS: dict[DiscoveryStatus, frozenset[DiscoveryStatus]] = {
    DiscoveryStatus.PENDING_REVIEW: frozenset({DiscoveryStatus.PROCESSED, DiscoveryStatus.ESCALATED}),
    DiscoveryStatus.PROCESSED: frozenset(),
    DiscoveryStatus.ESCALATED: frozenset(),
}


class UnitStatus(str, Enum):
    OFFERED = "offered"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    INCOMPLETE = "incomplete"


UNIT_STATUS_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.OFFERED: frozenset({UnitStatus.IN_PROGRESS}),
    UnitStatus.IN_PROGRESS: frozenset({UnitStatus.COMPLETED, UnitStatus.FAILED, UnitStatus.INCOMPLETE}),
    UnitStatus.INCOMPLETE: frozenset({UnitStatus.IN_PROGRESS, UnitStatus.OFFERED}),
    UnitStatus.FAILED: frozenset({UnitStatus.OFFERED}),
    UnitStatus.COMPLETED: frozenset(),
}

DISPATCHABLE_UNIT_STATUSES: frozenset[UnitStatus] = frozenset({UnitStatus.OFFERED, UnitStatus.INCOMPLETE})


class UnitOutcome(str, Enum):
    TERMINAL = "terminal"
    PARTIAL = "partial"


class EscalationReason(str, Enum):
    GATE_FAILED = "gate_failed"
    UNIT_FAILED = "unit_failed"
    STALE_UNIT = "stale_unit"
    DISCOVERY_ESCALATED = "discovery_escalated"


class DecisionAction(str, Enum):
    RETRY = "retry"
    REWORK_PHASE = "rework_phase"
    ABANDON = "abandon"


ESCALATION_OPTIONS: tuple[str, ...] = tuple(action.value for action in DecisionAction)


class ValidationErrorDetail(BaseModel):
    """One structured error reported by the validation collaborator."""

    model_config = ConfigDict(frozen=True)

    message: str
    location: str = ""
    command: str | None = None


class GateResult(BaseModel):
    passed: bool
    errors: list[ValidationErrorDetail] = Field(default_factory=list)

    @classmethod
    def ok(cls) -> "GateResult":
        return cls(passed=True)

    @classmethod
    def failed(cls, *messages: str) -> "GateResult":
        return cls(passed=False, errors=[ValidationErrorDetail(message=message) for message in messages])


class WorkItem(BaseModel):
    """A slice of planned phase work: one file (or none) plus its size estimate."""

    file: str | None = None
    estimated_lines: int = Field(default=0, ge=0)
    functions: list[str] = Field(default_factory=list)
    capability: str | None = None


class UnitBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_files: int = Field(default=1, ge=1)
    max_lines: int = Field(default=150, ge=1)
    max_functions: int = Field(default=3, ge=1)


class Discovery(BaseModel):
    discovery_id: str
    mission_id: str
    unit_id: str
    executor_id: str
    reported_at: datetime
    sequence: int = Field(default=0, ge=0)
    category: DiscoveryCategory
    payload: dict[str, Any] = Field(default_factory=dict)
    status: DiscoveryStatus = DiscoveryStatus.PENDING_REVIEW
    processed_at: datetime | None = None
    contract_event_id: str | None = None

    @property
    def contract_id(self) -> str | None:
        value = self.payload.get("contract_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @property
    def arrival_key(self) -> tuple[datetime, str, int]:
        return (self.reported_at, self.unit_id, self.sequence)


# Fields of a discovery that the reconciler may change after it is written.
DISCOVERY_MUTABLE_FIELDS: frozenset[str] = frozenset({"status", "processed_at", "contract_event_id"})


class ContractEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    recorded_at: datetime
    contract_id: str
    version: int = Field(ge=1)
    description: str
    affected_missions: list[str] = Field(default_factory=list)
    rollback_phase: Phase | None = None
    source_discovery_ids: list[str] = Field(default_factory=list)


class ContractVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    contract_id: str
    version: int
    description: str
    event_id: str


class ContractSnapshot(BaseModel):
    """Frozen view of every contract's latest version, handed to a work unit."""

    model_config = ConfigDict(frozen=True)

    contracts: dict[str, ContractVersion] = Field(default_factory=dict)
    fingerprint: str

    def version_of(self, contract_id: str) -> int:
        entry = self.contracts.get(contract_id)
        return entry.version if entry is not None else 0


class Escalation(BaseModel):
    mission_id: str
    phase: Phase | None
    reason: EscalationReason
    errors: list[ValidationErrorDetail] = Field(default_factory=list)
    options: list[str] = Field(default_factory=lambda: list(ESCALATION_OPTIONS))
    unit_id: str | None = None
    raised_at: datetime = Field(default_factory=utc_now)


class MissionSpec(BaseModel):
    """Planning-collaborator description of one mission."""

    mission_id: str
    title: str = ""
    blocked_by: list[str] = Field(default_factory=list)
    parallel: bool = True
    contracts: list[str] = Field(default_factory=list)
    work_plan: dict[Phase, list[WorkItem]] = Field(default_factory=dict)
    capabilities: dict[Phase, str] = Field(default_factory=dict)

    @field_validator("mission_id")
    @classmethod
    def _mission_id_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("mission_id must be non-empty")
        return value

    @field_validator("blocked_by", "contracts")
    @classmethod
    def _as_sorted_set(cls, values: list[str]) -> list[str]:
        return sorted({value.strip() for value in values if value.strip()})


class Mission(BaseModel):
    mission_id: str
    request_id: str
    title: str = ""
    status: MissionStatus = MissionStatus.PLANNED
    current_phase: Phase | None = Phase.RESEARCH
    phases_completed: list[Phase] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    parallel: bool = True
    contracts: list[str] = Field(default_factory=list)
    work_plan: dict[Phase, list[WorkItem]] = Field(default_factory=dict)
    capabilities: dict[Phase, str] = Field(default_factory=dict)
    assignments: dict[str, str] = Field(default_factory=dict)
    discoveries: list[Discovery] = Field(default_factory=list)
    contract_events: list[ContractEvent] = Field(default_factory=list)
    phase_generation: int = Field(default=0, ge=0)
    pending_rollback: Phase | None = None
    abandon_requested: bool = False
    escalation: Escalation | None = None
    last_checkpoint: datetime = Field(default_factory=utc_now)
    archived_at: datetime | None = None

    @field_validator("blocked_by", "contracts")
    @classmethod
    def _as_sorted_set(cls, values: list[str]) -> list[str]:
        return sorted(set(values))

    @classmethod
    def from_spec(cls, spec: MissionSpec, *, request_id: str) -> "Mission":
        return cls(
            mission_id=spec.mission_id,
            request_id=request_id,
            title=spec.title,
            blocked_by=list(spec.blocked_by),
            parallel=spec.parallel,
            contracts=list(spec.contracts),
            work_plan={phase: [item.model_copy() for item in items] for phase, items in spec.work_plan.items()},
            capabilities=dict(spec.capabilities),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def pending_discoveries(self) -> list[Discovery]:
        return [entry for entry in self.discoveries if entry.status == DiscoveryStatus.PENDING_REVIEW]

    def capability_for(self, phase: Phase, item: WorkItem | None = None) -> str:
        if item is not None and item.capability:
            return item.capability
        return self.capabilities.get(phase, phase.value)


class Request(BaseModel):
    request_id: str
    scope: str
    mission_ids: list[str] = Field(default_factory=list)
    compatibility: CompatibilityPolicy = CompatibilityPolicy.UNSPECIFIED
    status: RequestStatus = RequestStatus.OPEN
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    archived_at: datetime | None = None


class RequestSubmission(BaseModel):
    request_id: str
    scope: str
    compatibility: CompatibilityPolicy = CompatibilityPolicy.UNSPECIFIED
    missions: list[MissionSpec]

    @field_validator("request_id")
    @classmethod
    def _request_id_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("request_id must be non-empty")
        return value


class WorkUnit(BaseModel):
    unit_id: str
    mission_id: str
    phase: Phase
    generation: int = 0
    index: int = 0
    file_scope: list[str] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)
    estimated_lines: int = 0
    capability: str
    status: UnitStatus = UnitStatus.OFFERED
    attempt: int = 0
    executor_id: str | None = None
    contract_fingerprint: str | None = None
    dispatched_at: datetime | None = None
    finished_at: datetime | None = None
    modified_files: list[str] = Field(default_factory=list)
    failure_detail: str | None = None

    def overlaps(self, files: set[str]) -> bool:
        return bool(files.intersection(self.file_scope))


class WorkUnitPayload(BaseModel):
    """Dispatch payload handed to an executor."""

    model_config = ConfigDict(frozen=True)

    unit_id: str
    mission_id: str
    phase: Phase
    attempt: int
    capability: str
    file_scope: list[str]
    functions: list[str]
    estimated_lines: int
    contract_snapshot: ContractSnapshot
    bounds: UnitBounds


class ReportedDiscovery(BaseModel):
    category: DiscoveryCategory
    payload: dict[str, Any] = Field(default_factory=dict)
    reported_at: datetime = Field(default_factory=utc_now)


class WorkUnitReport(BaseModel):
    """Completion report returned by an executor."""

    unit_id: str
    executor_id: str
    modified_files: list[str] = Field(default_factory=list)
    validation_passed: bool = True
    validation_output: str = ""
    discoveries: list[ReportedDiscovery] = Field(default_factory=list)
    outcome: UnitOutcome = UnitOutcome.TERMINAL


class DecisionEvent(BaseModel):
    mission_id: str
    action: DecisionAction
    rationale: str = ""
    decided_at: datetime = Field(default_factory=utc_now)


class RecoveryEntry(BaseModel):
    entry_id: str
    recorded_at: datetime = Field(default_factory=utc_now)
    kind: str
    mission_id: str
    unit_id: str | None = None
    detail: str
    evidence: list[str] = Field(default_factory=list)
