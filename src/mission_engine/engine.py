from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from .discovery import ContractPolicy, Reconciler
from .errors import DuplicateMission
from .executors import Executor, ExecutorRegistry
from .graph import resolve
from .loops import SchedulingLoop, SchedulingState
from .models import (
    DecisionAction,
    DecisionEvent,
    Mission,
    MissionSpec,
    Request,
    RequestStatus,
    RequestSubmission,
    utc_now,
)
from .phases import PhaseMachine
from .recovery import EvidenceSource, RecoveryManager, RecoveryReport
from .scheduler import Scheduler
from .settings import RuntimeSettings
from .state_store import MissionStateStore, Writer, path_component
from .status import StatusSnapshot, build_status_snapshot
from .validation import CommandGateValidator, GateValidator, parse_gate_commands

logger = logging.getLogger(__name__)


class MissionEngine:
    """Wires the store, resolver, phase machine, reconciler, scheduler and recovery together.

    This is the surface the planning collaborator, human decision makers and
    status observers talk to.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        store_root: Path | None = None,
        validator: GateValidator | None = None,
        policy: ContractPolicy | None = None,
        evidence: EvidenceSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        root = store_root if store_root is not None else self.settings.state_store_path(Path.cwd())
        self.store = MissionStateStore(root)
        if validator is None:
            validator = CommandGateValidator(
                parse_gate_commands(self.settings.gate_commands_json),
                cwd=self.settings.workspace_root_path,
                timeout_seconds=self.settings.gate_timeout_seconds,
            )
        self.phases = PhaseMachine(validator)
        self.registry = ExecutorRegistry()
        self.reconciler = Reconciler(self.store, self.phases, policy)
        self.scheduler = Scheduler(
            self.store,
            self.registry,
            self.phases,
            self.reconciler,
            bounds=self.settings.unit_bounds,
            max_parallel_units=self.settings.max_parallel_units,
        )
        self.recovery = RecoveryManager(
            self.store,
            self.phases,
            staleness_threshold_seconds=self.settings.staleness_threshold_seconds,
            stale_retry_ceiling=self.settings.stale_retry_ceiling,
            evidence=evidence,
            clock=clock,
        )
        self._loop: SchedulingLoop | None = None

    # -- planning interface ---------------------------------------------

    def _new_missions(self, request_id: str, specs: Iterable[MissionSpec]) -> list[Mission]:
        existing = self.store.list_missions()
        taken = {mission.mission_id for mission in existing}
        missions: list[Mission] = []
        for spec in specs:
            path_component(spec.mission_id)
            if spec.mission_id in taken:
                raise DuplicateMission(spec.mission_id)
            taken.add(spec.mission_id)
            missions.append(Mission.from_spec(spec, request_id=request_id))
        resolve([*existing, *missions])
        return missions

    def submit_request(self, submission: RequestSubmission) -> Request:
        """Validate and persist a new request with its missions.

        Nothing is written unless the combined mission graph resolves.

        Raises:
            UnknownDependency: If a mission is blocked by an id that does not exist.
            CyclicDependency: If the missions form a cycle.
            DuplicateMission: If a mission id is reused.
        """
        path_component(submission.request_id)
        missions = self._new_missions(submission.request_id, submission.missions)
        request = Request(
            request_id=submission.request_id,
            scope=submission.scope,
            compatibility=submission.compatibility,
        )
        return self.store.create_request(request, missions, writer=Writer.PLANNER)

    def append_missions(self, request_id: str, specs: Iterable[MissionSpec]) -> Request:
        request = self.store.read_request(request_id)
        if request.status == RequestStatus.COMPLETED:
            raise ValueError(f"Request {request_id} is archived; submit a new request instead")
        missions = self._new_missions(request_id, specs)
        return self.store.add_missions(request_id, missions, writer=Writer.PLANNER)

    # -- execution -------------------------------------------------------

    def register_executor(self, executor: Executor) -> None:
        self.registry.register(executor)

    @property
    def loop(self) -> SchedulingLoop:
        if self._loop is None:
            self._loop = SchedulingLoop(
                self.scheduler,
                self.reconciler,
                self.recovery,
                checkpoint_path=self.settings.checkpoint_path(self.store.root),
                recursion_limit=self.settings.recursion_limit,
                report_timeout_seconds=self.settings.report_timeout_seconds,
            )
        return self._loop

    def run(self) -> SchedulingState:
        """Drive every mission as far as it can go with the registered executors."""
        return self.loop.run()

    def recover(self) -> RecoveryReport:
        return self.recovery.run(live_unit_ids=self.scheduler.in_flight_unit_ids)

    # -- decision interface ----------------------------------------------

    def decide(self, mission_id: str, action: DecisionAction, rationale: str = "") -> Mission:
        decision = DecisionEvent(mission_id=mission_id, action=action, rationale=rationale)
        return self.scheduler.apply_decision(decision)

    def request_abandon(self, mission_id: str) -> Mission:
        return self.scheduler.request_abandon(mission_id)

    # -- status interface ------------------------------------------------

    def status(self) -> StatusSnapshot:
        return build_status_snapshot(self.store)

    def close(self) -> None:
        self.scheduler.shutdown()
        if self._loop is not None:
            self._loop.close()
            self._loop = None

    def __enter__(self) -> "MissionEngine":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()
