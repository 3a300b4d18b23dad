from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from mission_engine.models import GateResult, Mission, MissionSpec, Phase, Request
from mission_engine.state_store import MissionStateStore, Writer


class RecordingValidator:
    """Gate validator that passes every phase except those listed in ``failing``."""

    def __init__(self, failing: Iterable[Phase] = ()) -> None:
        self.failing = set(failing)
        self.calls: list[tuple[str, Phase, list[str]]] = []

    def validate(self, mission: Mission, phase: Phase, artifacts) -> GateResult:  # noqa: ANN001
        self.calls.append((mission.mission_id, phase, list(artifacts)))
        if phase in self.failing:
            return GateResult.failed(f"{phase.value} gate rejected")
        return GateResult.ok()


@pytest.fixture
def validator() -> RecordingValidator:
    return RecordingValidator()


@pytest.fixture
def store(tmp_path: Path) -> MissionStateStore:
    return MissionStateStore(tmp_path / "store")


@pytest.fixture
def seed(store: MissionStateStore) -> Callable[..., list[Mission]]:
    """Persist missions built from specs under one request, as the planner would."""

    def _seed(*specs: MissionSpec, request_id: str = "R1") -> list[Mission]:
        missions = [Mission.from_spec(spec, request_id=request_id) for spec in specs]
        store.create_request(Request(request_id=request_id, scope="test request"), missions, writer=Writer.PLANNER)
        return missions

    return _seed


@pytest.fixture
def put_state(store: MissionStateStore) -> Callable[..., Mission]:
    """Overwrite scheduler-owned mission fields directly, bypassing the lifecycle."""

    def _put(mission_id: str, **updates: object) -> Mission:
        mission = store.read_mission(mission_id)
        for name, value in updates.items():
            setattr(mission, name, value)
        return store.write_mission(mission, writer=Writer.SCHEDULER)

    return _put
