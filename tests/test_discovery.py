from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from conftest import RecordingValidator
from mission_engine.discovery import (
    DefaultContractPolicy,
    PolicyDecision,
    Reconciler,
    build_contract_snapshot,
    order_by_arrival,
)
from mission_engine.errors import ConflictingWriteAttempt
from mission_engine.models import (
    ContractEvent,
    Discovery,
    DiscoveryCategory,
    DiscoveryStatus,
    EscalationReason,
    Mission,
    MissionSpec,
    MissionStatus,
    Phase,
    UnitStatus,
    WorkUnit,
    utc_now,
)
from mission_engine.phases import PhaseMachine
from mission_engine.state_store import MissionStateStore, Writer

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def found(
    discovery_id: str,
    *,
    mission_id: str = "M",
    at: datetime = T0,
    unit_id: str = "M.test.g0.00",
    sequence: int = 0,
    category: DiscoveryCategory = DiscoveryCategory.OBSERVATION,
    contract_id: str | None = None,
) -> Discovery:
    payload = {"description": f"finding {discovery_id}"}
    if contract_id is not None:
        payload["contract_id"] = contract_id
    return Discovery(
        discovery_id=discovery_id,
        mission_id=mission_id,
        unit_id=unit_id,
        executor_id="e1",
        reported_at=at,
        sequence=sequence,
        category=category,
        payload=payload,
    )


def report(store: MissionStateStore, mission_id: str, *entries: Discovery) -> None:
    mission = store.read_mission(mission_id)
    mission.discoveries = [*mission.discoveries, *entries]
    store.write_mission(mission, writer=Writer.EXECUTOR)


def unit_in_flight(store: MissionStateStore, mission_id: str, phase: Phase) -> None:
    store.write_unit(
        WorkUnit(
            unit_id=f"{mission_id}.{phase.value}.g0.00",
            mission_id=mission_id,
            phase=phase,
            capability=phase.value,
            status=UnitStatus.IN_PROGRESS,
            attempt=1,
            dispatched_at=utc_now(),
        ),
        writer=Writer.SCHEDULER,
    )


class RecordingPolicy:
    def __init__(self) -> None:
        self.seen: list[str] = []

    def decide(self, discovery: Discovery, mission: Mission) -> PolicyDecision:
        self.seen.append(discovery.discovery_id)
        return PolicyDecision.NO_CHANGE


@pytest.fixture
def missions(seed, put_state):
    seed(
        MissionSpec(mission_id="M", contracts=["api"]),
        MissionSpec(mission_id="N", contracts=["api"]),
        MissionSpec(mission_id="O"),
    )
    put_state(
        "M",
        status=MissionStatus.IN_PROGRESS,
        current_phase=Phase.TEST,
        phases_completed=[Phase.RESEARCH, Phase.CONTRACT, Phase.STUB],
    )
    put_state("O", status=MissionStatus.IN_PROGRESS)


def test_discoveries_are_drained_in_arrival_order_not_delivery_order(store, missions) -> None:
    d1 = found("d1", at=T0)
    d2 = found("d2", at=T0 + timedelta(seconds=5))
    d3 = found("d3", at=T0 + timedelta(seconds=9))
    report(store, "M", d3)
    report(store, "M", d1, d2)

    policy = RecordingPolicy()
    result = Reconciler(store, PhaseMachine(RecordingValidator()), policy).reconcile("M")

    assert policy.seen == ["d1", "d2", "d3"]
    assert sorted(result.processed) == ["d1", "d2", "d3"]
    stored = store.read_mission("M").discoveries
    assert all(entry.status == DiscoveryStatus.PROCESSED and entry.processed_at is not None for entry in stored)
    assert [entry.discovery_id for entry in stored] == ["d3", "d1", "d2"]


def test_arrival_ties_break_on_unit_then_sequence() -> None:
    entries = [
        found("b1", unit_id="M.test.g0.01", sequence=0),
        found("a1", unit_id="M.test.g0.00", sequence=1),
        found("a0", unit_id="M.test.g0.00", sequence=0),
    ]
    assert [entry.discovery_id for entry in order_by_arrival(entries)] == ["a0", "a1", "b1"]


def test_contract_changes_collapse_into_one_event_per_contract(store, missions) -> None:
    report(
        store,
        "M",
        found("d1", category=DiscoveryCategory.CONTRACT_GAP, contract_id="api"),
        found("d2", at=T0 + timedelta(seconds=1), category=DiscoveryCategory.CONTRACT_GAP, contract_id="api"),
        found("d3", at=T0 + timedelta(seconds=2), category=DiscoveryCategory.ARCHITECTURAL_DECISION, contract_id="db"),
    )

    result = Reconciler(store, PhaseMachine(RecordingValidator())).reconcile("M")

    events = store.read_contract_events()
    assert [(e.contract_id, e.version) for e in events] == [("api", 1), ("db", 1)]
    api, db = events
    assert api.source_discovery_ids == ["d1", "d2"]
    assert api.affected_missions == ["M", "N"]
    assert db.affected_missions == ["M"]
    assert api.rollback_phase == Phase.CONTRACT
    assert result.contract_events == events

    by_id = {entry.discovery_id: entry for entry in store.read_mission("M").discoveries}
    assert by_id["d1"].contract_event_id == api.event_id
    assert by_id["d2"].contract_event_id == api.event_id
    assert by_id["d3"].contract_event_id == db.event_id

    report(store, "M", found("d4", category=DiscoveryCategory.CONTRACT_GAP, contract_id="api"))
    Reconciler(store, PhaseMachine(RecordingValidator())).reconcile("M")
    assert store.next_contract_version("api") == 3


def test_contract_change_rolls_back_missions_past_the_contract_phase(store, missions, put_state) -> None:
    put_state(
        "N",
        status=MissionStatus.IN_PROGRESS,
        current_phase=Phase.STUB,
        phases_completed=[Phase.RESEARCH, Phase.CONTRACT],
    )
    unit_in_flight(store, "N", Phase.STUB)
    report(store, "M", found("d1", category=DiscoveryCategory.CONTRACT_GAP, contract_id="api"))

    result = Reconciler(store, PhaseMachine(RecordingValidator())).reconcile("M")

    m = store.read_mission("M")
    assert m.current_phase == Phase.CONTRACT
    assert m.phases_completed == [Phase.RESEARCH]
    assert m.phase_generation == 1
    assert result.rolled_back == ["M"]

    n = store.read_mission("N")
    assert n.pending_rollback == Phase.CONTRACT
    assert n.current_phase == Phase.STUB
    assert len(n.contract_events) == 1
    assert result.deferred_rollbacks == ["N"]

    o = store.read_mission("O")
    assert o.contract_events == []


def test_missions_before_the_contract_phase_only_record_the_event(store, missions) -> None:
    report(store, "M", found("d1", category=DiscoveryCategory.CONTRACT_GAP, contract_id="api"))
    Reconciler(store, PhaseMachine(RecordingValidator())).reconcile("M")

    n = store.read_mission("N")
    assert n.current_phase == Phase.RESEARCH
    assert n.pending_rollback is None
    assert [e.contract_id for e in n.contract_events] == ["api"]


def test_ambiguous_requirement_escalates_the_mission(store, missions) -> None:
    report(
        store,
        "M",
        found("d1", category=DiscoveryCategory.AMBIGUOUS_REQUIREMENT),
        found("d2", at=T0 + timedelta(seconds=1)),
    )

    result = Reconciler(store, PhaseMachine(RecordingValidator())).reconcile("M")

    assert result.escalated == ["d1"]
    assert result.processed == ["d2"]
    mission = store.read_mission("M")
    assert mission.status == MissionStatus.ESCALATED
    assert mission.escalation.reason == EscalationReason.DISCOVERY_ESCALATED
    assert mission.escalation.errors[0].location == "d1"
    statuses = {entry.discovery_id: entry.status for entry in mission.discoveries}
    assert statuses == {"d1": DiscoveryStatus.ESCALATED, "d2": DiscoveryStatus.PROCESSED}


def test_contract_gap_without_contract_id_changes_nothing(store, missions) -> None:
    report(store, "M", found("d1", category=DiscoveryCategory.CONTRACT_GAP))
    result = Reconciler(store, PhaseMachine(RecordingValidator())).reconcile("M")
    assert result.processed == ["d1"]
    assert store.read_contract_events() == []
    assert store.read_mission("M").current_phase == Phase.TEST


def test_reconciliation_is_refused_while_a_unit_is_in_flight(store, missions) -> None:
    unit_in_flight(store, "M", Phase.TEST)
    report(store, "M", found("d1", category=DiscoveryCategory.CONTRACT_GAP, contract_id="api"))
    reconciler = Reconciler(store, PhaseMachine(RecordingValidator()))

    with pytest.raises(ConflictingWriteAttempt):
        reconciler.reconcile("M")
    assert reconciler.reconcile_all() == []
    assert store.read_mission("M").discoveries[0].status == DiscoveryStatus.PENDING_REVIEW
    assert store.read_contract_events() == []


def test_default_policy() -> None:
    policy = DefaultContractPolicy()
    mission = Mission(mission_id="M", request_id="R1")
    gap = found("d1", category=DiscoveryCategory.CONTRACT_GAP, contract_id="api")
    assert policy.decide(gap, mission) == PolicyDecision.CONTRACT_CHANGE
    assert policy.decide(found("d2", category=DiscoveryCategory.DEPENDENCY_MISSING), mission) == PolicyDecision.ESCALATE
    assert policy.decide(found("d3"), mission) == PolicyDecision.NO_CHANGE


def test_contract_snapshot_tracks_latest_versions() -> None:
    def event(contract_id: str, version: int) -> ContractEvent:
        return ContractEvent(
            event_id=f"{contract_id}-{version}",
            recorded_at=T0,
            contract_id=contract_id,
            version=version,
            description=f"{contract_id} v{version}",
        )

    first = build_contract_snapshot([event("api", 1), event("db", 1)])
    again = build_contract_snapshot([event("db", 1), event("api", 1)])
    later = build_contract_snapshot([event("api", 1), event("db", 1), event("api", 2)])

    assert first.version_of("api") == 1
    assert first.version_of("missing") == 0
    assert first.fingerprint == again.fingerprint
    assert later.version_of("api") == 2
    assert later.contracts["api"].event_id == "api-2"
    assert later.fingerprint != first.fingerprint
