from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from conftest import RecordingValidator
from mission_engine.__main__ import main
from mission_engine.engine import MissionEngine
from mission_engine.errors import CyclicDependency, DuplicateMission, UnknownDependency
from mission_engine.executors import CallableExecutor
from mission_engine.models import (
    PHASE_ORDER,
    DecisionAction,
    EscalationReason,
    MissionSpec,
    MissionStatus,
    Phase,
    RequestStatus,
    RequestSubmission,
    UnitStatus,
    WorkUnitPayload,
    WorkUnitReport,
)
from mission_engine.settings import RuntimeSettings
from mission_engine.state_store import Writer

ALL_PHASES = frozenset(phase.value for phase in PHASE_ORDER)


def finish(payload: WorkUnitPayload) -> WorkUnitReport:
    return WorkUnitReport(unit_id=payload.unit_id, executor_id="local", modified_files=list(payload.file_scope))


def submission(*specs: MissionSpec, request_id: str = "R1") -> RequestSubmission:
    return RequestSubmission(request_id=request_id, scope="add a billing export", missions=list(specs))


@pytest.fixture
def validator() -> RecordingValidator:
    return RecordingValidator()


@pytest.fixture
def engine(tmp_path: Path, validator: RecordingValidator):  # noqa: ANN201
    with MissionEngine(settings=RuntimeSettings(), store_root=tmp_path / "store", validator=validator) as built:
        yield built


def test_cyclic_submission_is_rejected_without_writing(engine: MissionEngine) -> None:
    with pytest.raises(CyclicDependency) as excinfo:
        engine.submit_request(
            submission(MissionSpec(mission_id="A", blocked_by=["B"]), MissionSpec(mission_id="B", blocked_by=["A"]))
        )
    assert excinfo.value.cycle == ["A", "B", "A"]
    assert engine.store.list_requests() == []
    assert engine.store.list_missions() == []


def test_unknown_dependency_is_rejected_without_writing(engine: MissionEngine) -> None:
    with pytest.raises(UnknownDependency):
        engine.submit_request(submission(MissionSpec(mission_id="A", blocked_by=["ghost"])))
    assert engine.store.list_missions() == []


def test_mission_ids_are_unique_across_requests(engine: MissionEngine) -> None:
    engine.submit_request(submission(MissionSpec(mission_id="M")))
    with pytest.raises(DuplicateMission):
        engine.submit_request(submission(MissionSpec(mission_id="M"), request_id="R2"))
    with pytest.raises(DuplicateMission):
        engine.submit_request(submission(MissionSpec(mission_id="N"), MissionSpec(mission_id="N"), request_id="R3"))
    assert [request.request_id for request in engine.store.list_requests()] == ["R1"]


def test_missions_can_be_appended_to_an_open_request(engine: MissionEngine) -> None:
    engine.submit_request(submission(MissionSpec(mission_id="M")))

    request = engine.append_missions("R1", [MissionSpec(mission_id="N", blocked_by=["M"])])
    assert request.mission_ids == ["M", "N"]
    assert engine.store.read_mission("N").blocked_by == ["M"]

    with pytest.raises(UnknownDependency):
        engine.append_missions("R1", [MissionSpec(mission_id="O", blocked_by=["ghost"])])

    request.status = RequestStatus.COMPLETED
    engine.store.write_request(request, writer=Writer.SCHEDULER)
    with pytest.raises(ValueError):
        engine.append_missions("R1", [MissionSpec(mission_id="P")])


def test_status_snapshot_shows_blocking_and_units(engine: MissionEngine) -> None:
    engine.submit_request(submission(MissionSpec(mission_id="X"), MissionSpec(mission_id="Y", blocked_by=["X"])))
    engine.scheduler.tick()

    snapshot = engine.status()

    x, y = snapshot.mission("X"), snapshot.mission("Y")
    assert x.status == MissionStatus.IN_PROGRESS
    assert x.blocks == ["Y"]
    assert x.units == {"offered": 1}
    assert y.status == MissionStatus.BLOCKED
    assert y.blocked_by == ["X"]
    assert snapshot.requests[0].status == RequestStatus.OPEN
    assert snapshot.escalated == []
    with pytest.raises(KeyError):
        snapshot.mission("Z")


def test_run_drives_dependent_missions_to_completion(engine: MissionEngine, validator: RecordingValidator) -> None:
    engine.submit_request(submission(MissionSpec(mission_id="X"), MissionSpec(mission_id="Y", blocked_by=["X"])))
    engine.register_executor(CallableExecutor("local", ALL_PHASES, finish))

    state = engine.run()

    assert [mission_id for mission_id, _, _ in validator.calls] == ["X"] * 6 + ["Y"] * 6
    assert len(state["dispatched"]) == 12
    assert state["in_flight"] == []
    snapshot = engine.status()
    assert {view.mission_id: view.status for view in snapshot.missions} == {
        "X": MissionStatus.COMPLETED,
        "Y": MissionStatus.COMPLETED,
    }
    assert snapshot.requests[0].status == RequestStatus.COMPLETED
    assert engine.loop.checkpoint_path.is_file()


def test_escalated_mission_resumes_after_a_retry(engine: MissionEngine, validator: RecordingValidator) -> None:
    validator.failing.add(Phase.STUB)
    engine.submit_request(submission(MissionSpec(mission_id="X")))
    engine.register_executor(CallableExecutor("local", ALL_PHASES, finish))

    engine.run()
    snapshot = engine.status()
    assert [view.mission_id for view in snapshot.escalated] == ["X"]
    assert snapshot.mission("X").current_phase == Phase.STUB
    assert snapshot.requests[0].status == RequestStatus.ESCALATED

    validator.failing.clear()
    engine.decide("X", DecisionAction.RETRY, "gate flake")
    engine.run()

    assert engine.store.read_mission("X").status == MissionStatus.COMPLETED
    assert [d.rationale for d in engine.store.read_decisions("X")] == ["gate flake"]


def test_recover_on_a_fresh_store_changes_nothing(engine: MissionEngine) -> None:
    engine.submit_request(submission(MissionSpec(mission_id="X")))
    assert not engine.recover().changed


def hanging_first_attempt(unblock: threading.Event, attempts: list[tuple[str, int]]):  # noqa: ANN201
    def handler(payload: WorkUnitPayload) -> WorkUnitReport:
        attempts.append((payload.unit_id, payload.attempt))
        if payload.unit_id == "X.research.g0.00" and payload.attempt == 1:
            unblock.wait(timeout=30)
        return finish(payload)

    return handler


def test_unit_that_never_reports_is_expired_and_offered_again(tmp_path: Path, validator: RecordingValidator) -> None:
    unblock = threading.Event()
    attempts: list[tuple[str, int]] = []
    settings = RuntimeSettings(staleness_threshold_seconds=1)
    with MissionEngine(settings=settings, store_root=tmp_path / "store", validator=validator) as engine:
        engine.submit_request(submission(MissionSpec(mission_id="X")))
        engine.register_executor(CallableExecutor("local", ALL_PHASES, hanging_first_attempt(unblock, attempts)))
        try:
            state = engine.run()
        finally:
            unblock.set()

    assert state["expired"] == ["X.research.g0.00"]
    assert ("X.research.g0.00", 2) in attempts
    unit = engine.store.read_unit("X", "X.research.g0.00")
    assert unit.status == UnitStatus.COMPLETED
    assert unit.attempt == 2
    assert engine.store.read_mission("X").status == MissionStatus.COMPLETED
    assert [entry.kind for entry in engine.store.read_recovery_log()] == ["stale_unit"]


def test_unit_expired_at_the_retry_ceiling_escalates(tmp_path: Path, validator: RecordingValidator) -> None:
    unblock = threading.Event()
    settings = RuntimeSettings(staleness_threshold_seconds=1, stale_retry_ceiling=1)
    with MissionEngine(settings=settings, store_root=tmp_path / "store", validator=validator) as engine:
        engine.submit_request(submission(MissionSpec(mission_id="X")))
        engine.register_executor(CallableExecutor("local", ALL_PHASES, hanging_first_attempt(unblock, [])))
        try:
            state = engine.run()
        finally:
            unblock.set()

    assert state["expired"] == ["X.research.g0.00"]
    assert state["in_flight"] == []
    mission = engine.store.read_mission("X")
    assert mission.status == MissionStatus.ESCALATED
    assert mission.escalation.reason == EscalationReason.STALE_UNIT
    assert engine.store.read_unit("X", "X.research.g0.00").status == UnitStatus.INCOMPLETE
    assert engine.store.read_request("R1").status == RequestStatus.ESCALATED


# -- command line ------------------------------------------------------------


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MISSION_STATE_STORE_ROOT",
        "MISSION_MAX_PARALLEL_UNITS",
        "MISSION_GATE_COMMANDS_JSON",
        "MISSION_CHECKPOINT_DB",
        "MISSION_WORKSPACE_ROOT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_cli_submit_status_and_abandon(tmp_path: Path, capsys: pytest.CaptureFixture[str], clean_env) -> None:
    root = tmp_path / "store"
    request_file = tmp_path / "request.json"
    request_file.write_text(
        json.dumps(
            {
                "request_id": "R1",
                "scope": "add a billing export",
                "missions": [{"mission_id": "M"}, {"mission_id": "N", "blocked_by": ["M"]}],
            }
        ),
        encoding="utf-8",
    )

    assert main(["--state-store-root", str(root), "submit", "--request-file", str(request_file)]) == 0
    assert json.loads(capsys.readouterr().out)["mission_ids"] == ["M", "N"]

    assert main(["--state-store-root", str(root), "status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert [mission["mission_id"] for mission in status["missions"]] == ["M", "N"]

    assert main(["--state-store-root", str(root), "decide", "M", "retry"]) == 1

    assert main(["--state-store-root", str(root), "abandon", "N"]) == 0
    assert "N abandon=abandoned" in capsys.readouterr().out


def test_cli_reports_bad_input(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, clean_env) -> None:
    root = tmp_path / "store"
    assert main(["--state-store-root", str(root), "submit", "--request-file", str(tmp_path / "missing.json")]) == 1

    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"request_id": "R1", "missions": []}), encoding="utf-8")
    assert main(["--state-store-root", str(root), "submit", "--request-file", str(invalid)]) == 1

    monkeypatch.setenv("MISSION_MAX_PARALLEL_UNITS", "many")
    assert main(["--state-store-root", str(root), "status"]) == 2
