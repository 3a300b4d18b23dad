from __future__ import annotations

import pytest

from mission_engine.errors import CyclicDependency, UnknownDependency
from mission_engine.graph import derive_blocks, resolve
from mission_engine.models import Mission, MissionSpec, MissionStatus


def spec(mission_id: str, *blocked_by: str) -> MissionSpec:
    return MissionSpec(mission_id=mission_id, blocked_by=list(blocked_by))


def mission(mission_id: str, *blocked_by: str, status: MissionStatus = MissionStatus.PLANNED) -> Mission:
    built = Mission.from_spec(spec(mission_id, *blocked_by), request_id="R1")
    built.status = status
    return built


def test_dependency_is_ordered_first_and_dependent_waits_for_completion() -> None:
    graph = resolve([spec("Y", "X"), spec("X")])
    assert graph.order == ("X", "Y")

    x, y = mission("X"), mission("Y", "X")
    assert [m.mission_id for m in graph.ready_missions([x, y])] == ["X"]

    x.status = MissionStatus.IN_PROGRESS
    assert graph.ready_missions([x, y]) == []

    x.status = MissionStatus.COMPLETED
    assert [m.mission_id for m in graph.ready_missions([x, y])] == ["Y"]


def test_two_mission_cycle_is_rejected_with_full_cycle() -> None:
    with pytest.raises(CyclicDependency) as excinfo:
        resolve([spec("A", "B"), spec("B", "A")])
    assert excinfo.value.members == frozenset({"A", "B"})
    assert excinfo.value.cycle == ["A", "B", "A"]
    assert "A -> B -> A" in str(excinfo.value)


def test_self_loop_is_a_cycle() -> None:
    with pytest.raises(CyclicDependency) as excinfo:
        resolve([spec("A", "A")])
    assert excinfo.value.cycle == ["A", "A"]


def test_cycle_report_excludes_missions_merely_downstream_of_it() -> None:
    with pytest.raises(CyclicDependency) as excinfo:
        resolve([spec("A", "B"), spec("B", "C"), spec("C", "A"), spec("D", "A"), spec("E")])
    assert excinfo.value.members == frozenset({"A", "B", "C"})
    assert excinfo.value.cycle == ["A", "B", "C", "A"]


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependency) as excinfo:
        resolve([spec("A", "ghost")])
    assert excinfo.value.mission_id == "A"
    assert excinfo.value.dependency == "ghost"


def test_ties_are_broken_by_mission_id() -> None:
    graph = resolve([spec("c"), spec("b", "a"), spec("a")])
    assert graph.order == ("a", "b", "c")


def test_blocks_is_derived_without_mutating_input() -> None:
    specs = [spec("X"), spec("Y", "X"), spec("Z", "X")]
    blocks = derive_blocks(specs)
    assert blocks["X"] == frozenset({"Y", "Z"})
    assert blocks["Y"] == frozenset()
    assert derive_blocks(specs) == blocks
    assert [s.blocked_by for s in specs] == [[], ["X"], ["X"]]
    assert resolve(specs).blocks == blocks


def test_blocked_mission_becomes_ready_once_dependencies_complete() -> None:
    graph = resolve([spec("X"), spec("Y", "X")])
    x = mission("X", status=MissionStatus.COMPLETED)
    y = mission("Y", "X", status=MissionStatus.BLOCKED)
    assert graph.ready_missions([x, y]) == [y]

    y.status = MissionStatus.ESCALATED
    assert graph.ready_missions([x, y]) == []
