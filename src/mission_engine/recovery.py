"""Restart recovery.

The state store is authoritative.  Recovery only repairs what the store
itself shows to be inconsistent: units stuck in flight past the staleness
threshold, a current phase that disagrees with the completed-phase history,
and abandons that were deferred when the process stopped.  External
evidence (git history) is attached to recovery entries as corroboration and
never changes a decision.
"""

from __future__ import annotations

import logging
import subprocess
import uuid
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .errors import StaleUnit
from .models import (
    ESCALATABLE_STATUSES,
    PHASE_ORDER,
    EscalationReason,
    MissionStatus,
    RecoveryEntry,
    UnitStatus,
    ValidationErrorDetail,
    WorkUnit,
    utc_now,
)
from .phases import PhaseMachine, expected_current_phase, phases_consistent, transition_status
from .state_store import MissionStateStore, Writer

logger = logging.getLogger(__name__)


class EvidenceSource(Protocol):
    def changed_files(self, since: datetime) -> list[str]:
        ...


class GitChangeEvidence:
    """Files touched by commits since a point in time, read from ``git log``."""

    def __init__(self, repo_root: Path, *, timeout_seconds: int = 30) -> None:
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds

    def changed_files(self, since: datetime) -> list[str]:
        command = ["git", "log", f"--since={since.isoformat()}", "--name-only", "--pretty=format:"]
        try:
            completed = subprocess.run(
                command,
                cwd=str(self.repo_root),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("git evidence unavailable in %s: %s", self.repo_root, exc)
            return []
        if completed.returncode != 0:
            logger.warning("git log failed in %s: %s", self.repo_root, completed.stderr.strip())
            return []
        return sorted({line.strip() for line in completed.stdout.splitlines() if line.strip()})


@dataclass
class RecoveryReport:
    stale_units: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    phase_corrections: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    entries: list[RecoveryEntry] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.entries)


class RecoveryManager:
    def __init__(
        self,
        store: MissionStateStore,
        phases: PhaseMachine,
        *,
        staleness_threshold_seconds: int = 1_800,
        stale_retry_ceiling: int = 2,
        evidence: EvidenceSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.phases = phases
        self.staleness_threshold_seconds = staleness_threshold_seconds
        self.stale_retry_ceiling = stale_retry_ceiling
        self.evidence = evidence
        self.clock = clock

    def run(self, live_unit_ids: Collection[str] = ()) -> RecoveryReport:
        """Reconcile the store with itself; a consistent store produces no writes.

        Args:
            live_unit_ids: Units this process is still waiting on; never treated as stale.
        """
        report = RecoveryReport()
        now = self.clock()
        for unit in self.store.list_units():
            if unit.status != UnitStatus.IN_PROGRESS or unit.unit_id in live_unit_ids:
                continue
            age = (now - unit.dispatched_at).total_seconds() if unit.dispatched_at is not None else float("inf")
            if age >= self.staleness_threshold_seconds:
                self._recover_stale_unit(unit, age, report)

        for mission in self.store.list_missions():
            if mission.is_terminal:
                continue
            changed = False
            if not phases_consistent(mission):
                self._correct_phase(mission, report)
                changed = True
            if mission.abandon_requested and not self._has_unit_in_flight(mission.mission_id, live_unit_ids):
                transition_status(mission, MissionStatus.ABANDONED)
                mission.abandon_requested = False
                mission.pending_rollback = None
                report.abandoned.append(mission.mission_id)
                self._record(report, "abandon_applied", mission.mission_id, "deferred abandon applied")
                changed = True
            if changed:
                self.store.write_mission(mission, writer=Writer.RECONCILER)

        if report.changed:
            logger.warning("Recovery applied %d corrections", len(report.entries))
        return report

    def expire_units(self, units: Iterable[WorkUnit]) -> RecoveryReport:
        """Treat live dispatches whose executor has not reported in time as stale.

        The caller stops waiting on these units first, so a report that
        arrives later never reaches the store.
        """
        report = RecoveryReport()
        now = self.clock()
        for live in units:
            unit = self.store.read_unit(live.mission_id, live.unit_id)
            if unit.status != UnitStatus.IN_PROGRESS or unit.dispatched_at is None:
                continue
            age = (now - unit.dispatched_at).total_seconds()
            if age >= self.staleness_threshold_seconds:
                self._recover_stale_unit(unit, age, report)
        return report

    def _has_unit_in_flight(self, mission_id: str, live_unit_ids: Collection[str]) -> bool:
        return any(
            unit.status == UnitStatus.IN_PROGRESS or unit.unit_id in live_unit_ids
            for unit in self.store.list_units(mission_id)
        )

    def _recover_stale_unit(self, unit: WorkUnit, age: float, report: RecoveryReport) -> None:
        stale = StaleUnit(unit.mission_id, unit.unit_id, attempt=unit.attempt, age_seconds=min(age, 1e12))
        evidence: list[str] = []
        if self.evidence is not None and unit.dispatched_at is not None:
            scope = set(unit.file_scope)
            evidence = [path for path in self.evidence.changed_files(unit.dispatched_at) if path in scope]

        unit.status = UnitStatus.INCOMPLETE
        unit.failure_detail = str(stale)
        self.store.write_unit(unit, writer=Writer.RECONCILER)
        report.stale_units.append(unit.unit_id)
        self._record(report, "stale_unit", unit.mission_id, str(stale), unit_id=unit.unit_id, evidence=evidence)
        logger.warning("%s; re-offered", stale)

        if unit.attempt < self.stale_retry_ceiling:
            return
        mission = self.store.read_mission(unit.mission_id)
        if mission.status not in ESCALATABLE_STATUSES:
            return
        self.phases.escalate(
            mission,
            EscalationReason.STALE_UNIT,
            errors=[ValidationErrorDetail(message=str(stale), location=unit.unit_id)],
            unit_id=unit.unit_id,
        )
        self.store.write_mission(mission, writer=Writer.RECONCILER)
        report.escalated.append(mission.mission_id)
        self._record(
            report,
            "stale_unit_escalated",
            mission.mission_id,
            f"attempt {unit.attempt} reached stale retry ceiling {self.stale_retry_ceiling}",
            unit_id=unit.unit_id,
        )

    def _correct_phase(self, mission, report: RecoveryReport) -> None:
        completed = []
        for expected, phase in zip(PHASE_ORDER, mission.phases_completed):
            if expected != phase:
                break
            completed.append(phase)
        previous = mission.current_phase
        mission.phases_completed = completed
        mission.current_phase = expected_current_phase(completed)
        if mission.current_phase is None and mission.status == MissionStatus.IN_PROGRESS:
            transition_status(mission, MissionStatus.COMPLETED)
        report.phase_corrections.append(mission.mission_id)
        self._record(
            report,
            "phase_corrected",
            mission.mission_id,
            f"current phase {previous.value if previous else None} rebuilt as "
            f"{mission.current_phase.value if mission.current_phase else None} from completed phases",
        )

    def _record(
        self,
        report: RecoveryReport,
        kind: str,
        mission_id: str,
        detail: str,
        *,
        unit_id: str | None = None,
        evidence: list[str] | None = None,
    ) -> None:
        entry = RecoveryEntry(
            entry_id=f"rec-{uuid.uuid4().hex[:12]}",
            kind=kind,
            mission_id=mission_id,
            unit_id=unit_id,
            detail=detail,
            evidence=evidence or [],
        )
        self.store.append_recovery_entry(entry)
        report.entries.append(entry)
