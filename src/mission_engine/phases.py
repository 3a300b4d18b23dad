from __future__ import annotations

import logging
from collections.abc import Sequence

from .errors import IllegalTransition, PhaseGateFailed
from .models import (
    MISSION_STATUS_TRANSITIONS,
    PHASE_ORDER,
    Escalation,
    EscalationReason,
    Mission,
    MissionStatus,
    Phase,
    ValidationErrorDetail,
    utc_now,
)
from .validation import GateValidator

logger = logging.getLogger(__name__)


def transition_status(mission: Mission, target: MissionStatus) -> None:
    """Move *mission* to *target*, enforcing the lifecycle transition table.

    Raises:
        IllegalTransition: If the move is not listed in ``MISSION_STATUS_TRANSITIONS``.
    """
    if target == mission.status:
        return
    if target not in MISSION_STATUS_TRANSITIONS[mission.status]:
        raise IllegalTransition(
            f"Illegal mission status transition for {mission.mission_id}: "
            f"{mission.status.value} -> {target.value}"
        )
    mission.status = target
    if mission.is_terminal:
        mission.archived_at = utc_now()


def next_phase(phase: Phase) -> Phase | None:
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[index + 1] if index + 1 < len(PHASE_ORDER) else None


def expected_current_phase(phases_completed: Sequence[Phase]) -> Phase | None:
    """Phase a mission should be in given what it has completed (None once VALIDATE is done)."""
    completed = len(phases_completed)
    return PHASE_ORDER[completed] if completed < len(PHASE_ORDER) else None


def phases_consistent(mission: Mission) -> bool:
    completed = list(mission.phases_completed)
    if completed != list(PHASE_ORDER[: len(completed)]):
        return False
    if mission.status == MissionStatus.COMPLETED:
        return mission.current_phase is None and len(completed) == len(PHASE_ORDER)
    return mission.current_phase == expected_current_phase(completed)


class PhaseMachine:
    """Gate-checked phase progression.

    ``RESEARCH -> CONTRACT -> STUB -> TEST -> IMPLEMENT -> VALIDATE`` with no
    skipping.  Every forward move runs the gate for the phase being exited;
    the only backward move is a rollback backed by a recorded contract event.

    The machine mutates missions in place; callers persist them.
    """

    def __init__(self, validator: GateValidator) -> None:
        self.validator = validator

    def advance(self, mission: Mission, artifacts: Sequence[str]) -> Phase | None:
        """Exit the current phase through its gate.

        Args:
            mission: An in-progress mission.
            artifacts: Files produced by the phase's work units.

        Returns:
            The new current phase, or None when the mission completed.

        Raises:
            IllegalTransition: If the mission is not in progress or its phase history is inconsistent.
            PhaseGateFailed: If the gate rejects the phase. The mission is left escalated.
        """
        phase = mission.current_phase
        if mission.status != MissionStatus.IN_PROGRESS or phase is None:
            raise IllegalTransition(
                f"Mission {mission.mission_id} cannot advance from status {mission.status.value}"
            )
        if not phases_consistent(mission):
            raise IllegalTransition(
                f"Mission {mission.mission_id} phase history {[p.value for p in mission.phases_completed]} "
                f"does not lead to {phase.value}"
            )

        result = self.validator.validate(mission, phase, list(artifacts))
        if not result.passed:
            self.escalate(mission, EscalationReason.GATE_FAILED, errors=result.errors)
            logger.warning("Gate %s failed for mission %s", phase.value, mission.mission_id)
            raise PhaseGateFailed(mission.mission_id, phase, result.errors)

        mission.phases_completed = [*mission.phases_completed, phase]
        mission.current_phase = next_phase(phase)
        if mission.current_phase is None:
            transition_status(mission, MissionStatus.COMPLETED)
            logger.info("Mission %s completed", mission.mission_id)
        else:
            logger.info(
                "Mission %s advanced %s -> %s", mission.mission_id, phase.value, mission.current_phase.value
            )
        return mission.current_phase

    def rollback(self, mission: Mission, to_phase: Phase) -> None:
        """Return *mission* to *to_phase* after a contract change.

        Raises:
            IllegalTransition: If no recorded contract event invalidates *to_phase*,
                or the mission has not yet reached that phase.
        """
        if mission.is_terminal:
            raise IllegalTransition(f"Mission {mission.mission_id} is terminal and cannot roll back")
        if not any(event.rollback_phase == to_phase for event in mission.contract_events):
            raise IllegalTransition(
                f"Rollback of {mission.mission_id} to {to_phase.value} has no contract event"
            )
        target_index = PHASE_ORDER.index(to_phase)
        if target_index > len(mission.phases_completed):
            raise IllegalTransition(f"Mission {mission.mission_id} has not reached {to_phase.value}")
        mission.phases_completed = list(PHASE_ORDER[:target_index])
        mission.current_phase = to_phase
        mission.phase_generation += 1
        mission.pending_rollback = None
        logger.warning(
            "Mission %s rolled back to %s (generation %d)", mission.mission_id, to_phase.value, mission.phase_generation
        )

    def escalate(
        self,
        mission: Mission,
        reason: EscalationReason,
        *,
        errors: Sequence[ValidationErrorDetail] = (),
        unit_id: str | None = None,
    ) -> None:
        """Escalate *mission*; an already escalated mission keeps its record and gains *errors*."""
        if mission.status == MissionStatus.ESCALATED and mission.escalation is not None:
            mission.escalation = mission.escalation.model_copy(
                update={"errors": [*mission.escalation.errors, *errors]}
            )
            logger.warning("Mission %s escalation extended: %s", mission.mission_id, reason.value)
            return
        transition_status(mission, MissionStatus.ESCALATED)
        mission.escalation = Escalation(
            mission_id=mission.mission_id,
            phase=mission.current_phase,
            reason=reason,
            errors=list(errors),
            unit_id=unit_id,
        )
        logger.warning("Mission %s escalated: %s", mission.mission_id, reason.value)

    def resume(self, mission: Mission) -> None:
        """Clear an escalation and put the mission back in progress at its current phase."""
        transition_status(mission, MissionStatus.IN_PROGRESS)
        mission.escalation = None
