"""Work-unit scheduling.

The scheduler is the only component that dispatches work.  Each ``tick``
activates ready missions, partitions the current phase of every in-progress
mission into bounded units, and hands dispatchable units to capable
executors on a thread pool.  ``collect`` then folds completion reports back
into the store and, once a mission has nothing in flight, reconciles its
discoveries and asks the phase machine to advance.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime

from .discovery import Reconciler
from .errors import IllegalTransition, PhaseGateFailed
from .executors import ExecutorRegistry
from .graph import resolve
from .models import (
    DISPATCHABLE_UNIT_STATUSES,
    ESCALATABLE_STATUSES,
    DecisionAction,
    DecisionEvent,
    Discovery,
    EscalationReason,
    Mission,
    MissionStatus,
    Phase,
    RequestStatus,
    UnitBounds,
    UnitOutcome,
    UnitStatus,
    ValidationErrorDetail,
    WorkItem,
    WorkUnit,
    WorkUnitPayload,
    WorkUnitReport,
    utc_now,
)
from .phases import PhaseMachine, transition_status
from .state_store import MissionStateStore, Writer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Partitioning
# ---------------------------------------------------------------------------


def unit_id_for(mission_id: str, phase: Phase, generation: int, index: int) -> str:
    return f"{mission_id}.{phase.value}.g{generation}.{index:02d}"


def _split_item(item: WorkItem, bounds: UnitBounds) -> list[WorkItem]:
    """Split one work item so that every piece fits the line and function bounds."""
    pieces = max(
        1,
        math.ceil(len(item.functions) / bounds.max_functions),
        math.ceil(item.estimated_lines / bounds.max_lines),
    )
    if pieces == 1:
        return [item]
    chunk = math.ceil(len(item.functions) / pieces) if item.functions else 0
    base_lines, extra_lines = divmod(item.estimated_lines, pieces)
    split = []
    for position in range(pieces):
        functions = item.functions[position * chunk : (position + 1) * chunk] if chunk else []
        split.append(
            WorkItem(
                file=item.file,
                estimated_lines=base_lines + (1 if position < extra_lines else 0),
                functions=functions,
                capability=item.capability,
            )
        )
    return split


def partition_phase(mission: Mission, phase: Phase, bounds: UnitBounds) -> list[WorkUnit]:
    """Break the planned work of *phase* into units within *bounds*.

    Items are split first, then packed greedily in plan order.  A unit never
    mixes capabilities.  A phase with no planned items still yields one unit
    with an empty file scope.
    """
    generation = mission.phase_generation
    pieces = [piece for item in mission.work_plan.get(phase, []) for piece in _split_item(item, bounds)]
    if not pieces:
        return [
            WorkUnit(
                unit_id=unit_id_for(mission.mission_id, phase, generation, 0),
                mission_id=mission.mission_id,
                phase=phase,
                generation=generation,
                index=0,
                capability=mission.capability_for(phase),
            )
        ]

    groups: list[tuple[str, list[WorkItem]]] = []
    for piece in pieces:
        capability = mission.capability_for(phase, piece)
        if groups:
            group_capability, group = groups[-1]
            files = {entry.file for entry in group if entry.file} | ({piece.file} if piece.file else set())
            fits = (
                group_capability == capability
                and len(files) <= bounds.max_files
                and sum(entry.estimated_lines for entry in group) + piece.estimated_lines <= bounds.max_lines
                and sum(len(entry.functions) for entry in group) + len(piece.functions) <= bounds.max_functions
            )
            if fits:
                group.append(piece)
                continue
        groups.append((capability, [piece]))

    units = []
    for index, (capability, group) in enumerate(groups):
        units.append(
            WorkUnit(
                unit_id=unit_id_for(mission.mission_id, phase, generation, index),
                mission_id=mission.mission_id,
                phase=phase,
                generation=generation,
                index=index,
                file_scope=sorted({entry.file for entry in group if entry.file}),
                functions=[name for entry in group for name in entry.functions],
                estimated_lines=sum(entry.estimated_lines for entry in group),
                capability=capability,
            )
        )
    return units


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TickResult:
    activated: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)
    waiting: list[str] = field(default_factory=list)
    advanced: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.activated
            or self.blocked
            or self.dispatched
            or self.advanced
            or self.escalated
            or self.abandoned
            or self.rolled_back
        )


@dataclass
class CompletionResult:
    unit_id: str
    mission_id: str
    status: UnitStatus
    discoveries: list[str] = field(default_factory=list)
    boundary: TickResult | None = None


@dataclass
class _Dispatch:
    unit: WorkUnit
    executor_id: str
    future: Future


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    def __init__(
        self,
        store: MissionStateStore,
        registry: ExecutorRegistry,
        phases: PhaseMachine,
        reconciler: Reconciler,
        *,
        bounds: UnitBounds | None = None,
        max_parallel_units: int = 4,
    ) -> None:
        if max_parallel_units < 1:
            raise ValueError("max_parallel_units must be >= 1")
        self.store = store
        self.registry = registry
        self.phases = phases
        self.reconciler = reconciler
        self.bounds = bounds or UnitBounds()
        self.max_parallel_units = max_parallel_units
        self._pool = ThreadPoolExecutor(max_workers=max_parallel_units, thread_name_prefix="mission-unit")
        self._in_flight: dict[str, _Dispatch] = {}

    # -- in-flight bookkeeping --------------------------------------------

    @property
    def in_flight_unit_ids(self) -> list[str]:
        return sorted(self._in_flight)

    def has_in_flight(self) -> bool:
        return bool(self._in_flight)

    def mission_busy(self, mission_id: str) -> bool:
        if any(dispatch.unit.mission_id == mission_id for dispatch in self._in_flight.values()):
            return True
        return self.reconciler.has_unit_in_flight(mission_id)

    def overdue_units(self, now: datetime, threshold_seconds: float) -> list[WorkUnit]:
        """In-flight units whose executor has been running for at least *threshold_seconds*."""
        overdue = []
        for unit_id in sorted(self._in_flight):
            dispatch = self._in_flight[unit_id]
            started = dispatch.unit.dispatched_at
            if dispatch.future.done() or started is None:
                continue
            if (now - started).total_seconds() >= threshold_seconds:
                overdue.append(dispatch.unit)
        return overdue

    def release(self, unit_id: str) -> None:
        """Stop waiting on *unit_id*; a report it sends later is discarded."""
        dispatch = self._in_flight.pop(unit_id, None)
        if dispatch is None:
            return
        dispatch.future.cancel()
        logger.warning("Stopped waiting on %s from %s", unit_id, dispatch.executor_id)

    def shutdown(self, wait_for_units: bool = True) -> None:
        self._pool.shutdown(wait=wait_for_units)

    # -- tick ----------------------------------------------------------------

    def tick(self) -> TickResult:
        """Run one scheduling pass and dispatch whatever can run now."""
        result = TickResult()
        missions = {mission.mission_id: mission for mission in self.store.list_missions()}
        graph = resolve(missions.values())
        statuses = {mission_id: mission.status for mission_id, mission in missions.items()}

        for mission_id in graph.order:
            mission = missions[mission_id]
            if mission.status not in (MissionStatus.PLANNED, MissionStatus.BLOCKED) or mission.abandon_requested:
                continue
            if graph.is_ready(mission, statuses):
                transition_status(mission, MissionStatus.IN_PROGRESS)
                result.activated.append(mission_id)
            elif mission.status == MissionStatus.PLANNED:
                transition_status(mission, MissionStatus.BLOCKED)
                result.blocked.append(mission_id)
            else:
                continue
            missions[mission_id] = self.store.write_mission(mission, writer=Writer.SCHEDULER)
            logger.info("Mission %s -> %s", mission_id, mission.status.value)

        current_units: dict[str, list[WorkUnit]] = {}
        for mission_id in sorted(missions):
            mission = missions[mission_id]
            if mission.is_terminal:
                continue
            if not self.mission_busy(mission_id):
                mission = self._apply_boundary_actions(mission, result)
                missions[mission_id] = mission
            if mission.status != MissionStatus.IN_PROGRESS or mission.current_phase is None:
                continue
            units = self._ensure_units(mission)
            if not self.mission_busy(mission_id) and all(unit.status == UnitStatus.COMPLETED for unit in units):
                missions[mission_id] = self._advance(mission, units, result)
                continue
            current_units[mission_id] = units

        self._dispatch_ready(missions, current_units, result)
        if result.changed:
            self.refresh_requests()
        return result

    def _apply_boundary_actions(self, mission: Mission, result: TickResult) -> Mission:
        """Apply a deferred abandon or rollback now that nothing of *mission* is in flight."""
        if mission.is_terminal:
            return mission
        if mission.abandon_requested:
            transition_status(mission, MissionStatus.ABANDONED)
            mission.abandon_requested = False
            mission.pending_rollback = None
            result.abandoned.append(mission.mission_id)
            logger.warning("Mission %s abandoned", mission.mission_id)
            return self.store.write_mission(mission, writer=Writer.SCHEDULER)
        if mission.pending_rollback is not None:
            self.phases.rollback(mission, mission.pending_rollback)
            result.rolled_back.append(mission.mission_id)
            return self.store.write_mission(mission, writer=Writer.SCHEDULER)
        return mission

    def _ensure_units(self, mission: Mission) -> list[WorkUnit]:
        phase = mission.current_phase
        existing = [
            unit
            for unit in self.store.list_units(mission.mission_id)
            if unit.phase == phase and unit.generation == mission.phase_generation
        ]
        if existing:
            return sorted(existing, key=lambda unit: unit.index)
        units = partition_phase(mission, phase, self.bounds)
        for unit in units:
            self.store.write_unit(unit, writer=Writer.SCHEDULER)
        logger.info(
            "Partitioned %s/%s (generation %d) into %d units",
            mission.mission_id,
            phase.value,
            mission.phase_generation,
            len(units),
        )
        return units

    def _advance(self, mission: Mission, units: list[WorkUnit], result: TickResult) -> Mission:
        artifacts = sorted({path for unit in units for path in (unit.modified_files or unit.file_scope)})
        try:
            self.phases.advance(mission, artifacts)
        except PhaseGateFailed as exc:
            logger.warning("%s", exc)
            result.escalated.append(mission.mission_id)
        else:
            result.advanced.append(mission.mission_id)
        return self.store.write_mission(mission, writer=Writer.SCHEDULER)

    def _dispatch_ready(
        self,
        missions: dict[str, Mission],
        current_units: dict[str, list[WorkUnit]],
        result: TickResult,
    ) -> None:
        busy_files = {path for dispatch in self._in_flight.values() for path in dispatch.unit.file_scope}
        running = {dispatch.unit.mission_id for dispatch in self._in_flight.values()}
        busy_slots = Counter(dispatch.executor_id for dispatch in self._in_flight.values())
        snapshot = None

        for mission_id in sorted(current_units):
            mission = missions[mission_id]
            if mission.pending_discoveries() or mission.pending_rollback is not None or mission.abandon_requested:
                continue
            for unit in current_units[mission_id]:
                if unit.status not in DISPATCHABLE_UNIT_STATUSES:
                    continue
                if len(self._in_flight) >= self.max_parallel_units:
                    return
                if unit.overlaps(busy_files):
                    continue
                others = running - {mission_id}
                if others and (not mission.parallel or any(not missions[other].parallel for other in others)):
                    continue
                executor = self.registry.select(unit.capability, busy_slots)
                if executor is None:
                    result.waiting.append(unit.unit_id)
                    continue
                if snapshot is None:
                    snapshot = self.reconciler.snapshot()

                unit.status = UnitStatus.IN_PROGRESS
                unit.attempt += 1
                unit.executor_id = executor.executor_id
                unit.contract_fingerprint = snapshot.fingerprint
                unit.dispatched_at = utc_now()
                unit.finished_at = None
                unit.failure_detail = None
                self.store.write_unit(unit, writer=Writer.SCHEDULER)
                mission = self.store.read_mission(mission_id)
                mission.assignments = {**mission.assignments, unit.unit_id: executor.executor_id}
                missions[mission_id] = mission = self.store.write_mission(mission, writer=Writer.SCHEDULER)

                payload = WorkUnitPayload(
                    unit_id=unit.unit_id,
                    mission_id=mission_id,
                    phase=unit.phase,
                    attempt=unit.attempt,
                    capability=unit.capability,
                    file_scope=list(unit.file_scope),
                    functions=list(unit.functions),
                    estimated_lines=unit.estimated_lines,
                    contract_snapshot=snapshot,
                    bounds=self.bounds,
                )
                future = self._pool.submit(executor.execute, payload)
                self._in_flight[unit.unit_id] = _Dispatch(unit=unit, executor_id=executor.executor_id, future=future)
                busy_files.update(unit.file_scope)
                running.add(mission_id)
                busy_slots[executor.executor_id] += 1
                result.dispatched.append(unit.unit_id)
                logger.info(
                    "Dispatched %s to %s (attempt %d, files=%s)",
                    unit.unit_id,
                    executor.executor_id,
                    unit.attempt,
                    ",".join(unit.file_scope) or "-",
                )

    # -- completion ------------------------------------------------------

    def collect(self, timeout: float | None = None) -> list[CompletionResult]:
        """Wait for at least one in-flight unit to finish and fold in its report."""
        if not self._in_flight:
            return []
        futures = {dispatch.future: unit_id for unit_id, dispatch in self._in_flight.items()}
        done, _ = wait(futures, timeout=timeout, return_when=FIRST_COMPLETED)
        completions = []
        for unit_id in sorted(futures[future] for future in done):
            dispatch = self._in_flight.pop(unit_id)
            error = dispatch.future.exception()
            report = None if error is not None else dispatch.future.result()
            completions.append(self.handle_report(dispatch.unit, report, error=error))
        if completions:
            self.refresh_requests()
        return completions

    def handle_report(
        self,
        unit: WorkUnit,
        report: WorkUnitReport | None,
        *,
        error: BaseException | None = None,
    ) -> CompletionResult:
        unit = self.store.read_unit(unit.mission_id, unit.unit_id)
        mission = self.store.read_mission(unit.mission_id)
        executor_id = unit.executor_id or (report.executor_id if report is not None else "unknown")

        if report is None and error is None:
            error = ValueError(f"executor {executor_id} returned no report")
        if report is not None and report.unit_id != unit.unit_id:
            error = ValueError(f"report for {report.unit_id} returned for unit {unit.unit_id}")
            report = None

        new_discoveries: list[Discovery] = []
        if report is not None:
            for sequence, reported in enumerate(report.discoveries):
                new_discoveries.append(
                    Discovery(
                        discovery_id=f"{unit.unit_id}.a{unit.attempt}.d{sequence:02d}",
                        mission_id=unit.mission_id,
                        unit_id=unit.unit_id,
                        executor_id=report.executor_id,
                        reported_at=reported.reported_at,
                        sequence=sequence,
                        category=reported.category,
                        payload=dict(reported.payload),
                    )
                )

        if error is not None:
            unit.status = UnitStatus.FAILED
            unit.failure_detail = f"{type(error).__name__}: {error}"
        elif not report.validation_passed:
            unit.status = UnitStatus.FAILED
            unit.failure_detail = report.validation_output or "executor reported validation failure"
        elif report.outcome == UnitOutcome.PARTIAL:
            unit.status = UnitStatus.INCOMPLETE
        else:
            unit.status = UnitStatus.COMPLETED
        if report is not None:
            unit.modified_files = sorted(set(report.modified_files))
        unit.finished_at = utc_now()
        self.store.write_unit(unit, writer=Writer.SCHEDULER)
        logger.info("Unit %s reported %s by %s", unit.unit_id, unit.status.value, executor_id)

        mission.assignments = {**mission.assignments, unit.unit_id: executor_id}
        mission.discoveries = [*mission.discoveries, *new_discoveries]
        if unit.status == UnitStatus.FAILED and mission.status in ESCALATABLE_STATUSES:
            self.phases.escalate(
                mission,
                EscalationReason.UNIT_FAILED,
                errors=[ValidationErrorDetail(message=unit.failure_detail or "", location=unit.unit_id)],
                unit_id=unit.unit_id,
            )
        self.store.write_mission(mission, writer=Writer.SCHEDULER)

        completion = CompletionResult(
            unit_id=unit.unit_id,
            mission_id=unit.mission_id,
            status=unit.status,
            discoveries=[entry.discovery_id for entry in new_discoveries],
        )
        if not self.mission_busy(unit.mission_id):
            completion.boundary = self._at_unit_boundary(unit.mission_id)
        return completion

    def _at_unit_boundary(self, mission_id: str) -> TickResult:
        result = TickResult()
        reconciled = self.reconciler.reconcile(mission_id)
        result.rolled_back.extend(reconciled.rolled_back)
        mission = self._apply_boundary_actions(self.store.read_mission(mission_id), result)
        if mission.status == MissionStatus.ESCALATED and reconciled.escalated:
            result.escalated.append(mission_id)
        if mission.status == MissionStatus.IN_PROGRESS and mission.current_phase is not None:
            units = self._ensure_units(mission)
            if all(unit.status == UnitStatus.COMPLETED for unit in units):
                self._advance(mission, units, result)
        return result

    # -- requests ----------------------------------------------------------

    def refresh_requests(self) -> None:
        """Recompute each request's aggregate status from its missions."""
        missions = {mission.mission_id: mission for mission in self.store.list_missions()}
        for request in self.store.list_requests():
            if request.status == RequestStatus.COMPLETED:
                continue
            members = [missions[mission_id] for mission_id in request.mission_ids if mission_id in missions]
            if members and all(mission.is_terminal for mission in members):
                status = RequestStatus.COMPLETED
            elif any(mission.status == MissionStatus.ESCALATED for mission in members):
                status = RequestStatus.ESCALATED
            else:
                status = RequestStatus.OPEN
            if status == request.status:
                continue
            request.status = status
            request.updated_at = utc_now()
            if status == RequestStatus.COMPLETED:
                request.archived_at = request.updated_at
            self.store.write_request(request, writer=Writer.SCHEDULER)
            logger.info("Request %s -> %s", request.request_id, status.value)

    # -- external actions ------------------------------------------------

    def request_abandon(self, mission_id: str) -> Mission:
        """Abandon a mission now, or at its next unit boundary if a unit is in flight."""
        mission = self.store.read_mission(mission_id)
        if mission.is_terminal:
            raise IllegalTransition(f"Mission {mission_id} is already {mission.status.value}")
        if self.mission_busy(mission_id):
            mission.abandon_requested = True
            logger.info("Abandon of %s deferred until its in-flight units report", mission_id)
        else:
            transition_status(mission, MissionStatus.ABANDONED)
            mission.pending_rollback = None
            logger.warning("Mission %s abandoned", mission_id)
        mission = self.store.write_mission(mission, writer=Writer.SCHEDULER)
        self.refresh_requests()
        return mission

    def apply_decision(self, decision: DecisionEvent) -> Mission:
        """Resolve an escalation with an externally supplied decision.

        Raises:
            IllegalTransition: If the mission is not escalated (retry/rework) or is
                terminal, or if a unit of the mission is still in flight.
        """
        if decision.action == DecisionAction.ABANDON:
            mission = self.request_abandon(decision.mission_id)
            self.store.append_decision(decision)
            return mission

        mission = self.store.read_mission(decision.mission_id)
        if mission.status != MissionStatus.ESCALATED:
            raise IllegalTransition(
                f"Mission {mission.mission_id} is {mission.status.value}; only escalated missions accept "
                f"{decision.action.value}"
            )
        if self.mission_busy(mission.mission_id):
            raise IllegalTransition(f"Mission {mission.mission_id} still has a unit in flight")

        if decision.action == DecisionAction.RETRY:
            for unit in self.store.list_units(mission.mission_id):
                if (
                    unit.phase == mission.current_phase
                    and unit.generation == mission.phase_generation
                    and unit.status in (UnitStatus.FAILED, UnitStatus.INCOMPLETE)
                ):
                    unit.status = UnitStatus.OFFERED
                    unit.failure_detail = None
                    self.store.write_unit(unit, writer=Writer.SCHEDULER)
        else:
            mission.phase_generation += 1
        self.phases.resume(mission)
        self.store.append_decision(decision)
        mission = self.store.write_mission(mission, writer=Writer.SCHEDULER)
        logger.info("Decision %s applied to %s", decision.action.value, mission.mission_id)
        self.refresh_requests()
        return mission
