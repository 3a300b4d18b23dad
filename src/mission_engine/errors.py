"""Error taxonomy for the orchestration engine.

Graph-level errors (``UnknownDependency``, ``CyclicDependency``) block request
acceptance.  ``PhaseGateFailed`` is mission-level and leaves the mission
escalated.  ``StaleUnit`` describes an in-flight unit recovery gave up on.
``ConflictingWriteAttempt`` is a programming error: some component tried to
mutate state it does not own.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import Phase, ValidationErrorDetail


class OrchestrationError(Exception):
    """Base class for every engine error."""


class UnknownDependency(OrchestrationError, ValueError):
    def __init__(self, mission_id: str, dependency: str) -> None:
        self.mission_id = mission_id
        self.dependency = dependency
        super().__init__(f"Mission {mission_id} is blocked by unknown mission {dependency}")


class CyclicDependency(OrchestrationError, ValueError):
    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        self.members = frozenset(self.cycle)
        super().__init__(f"Mission dependency graph contains a cycle: {' -> '.join(self.cycle)}")


class DuplicateMission(OrchestrationError, ValueError):
    def __init__(self, mission_id: str) -> None:
        self.mission_id = mission_id
        super().__init__(f"Mission already exists: {mission_id}")


class IllegalTransition(OrchestrationError, ValueError):
    pass


class PhaseGateFailed(OrchestrationError):
    def __init__(self, mission_id: str, phase: Phase, errors: Sequence[ValidationErrorDetail]) -> None:
        self.mission_id = mission_id
        self.phase = phase
        self.errors = list(errors)
        summary = "; ".join(error.message for error in self.errors) or "no detail reported"
        super().__init__(f"Gate for phase {phase.value} failed on mission {mission_id}: {summary}")


class StaleUnit(OrchestrationError):
    def __init__(self, mission_id: str, unit_id: str, *, attempt: int, age_seconds: float) -> None:
        self.mission_id = mission_id
        self.unit_id = unit_id
        self.attempt = attempt
        self.age_seconds = age_seconds
        super().__init__(
            f"Unit {unit_id} of mission {mission_id} has been in flight for {age_seconds:.0f}s "
            f"without a completion report (attempt {attempt})"
        )


class ConflictingWriteAttempt(OrchestrationError, RuntimeError):
    def __init__(self, message: str, *, writer: str | None = None, target: str | None = None) -> None:
        self.writer = writer
        self.target = target
        super().__init__(message)


class AppendOnlyViolation(ConflictingWriteAttempt):
    pass
