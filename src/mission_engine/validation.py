"""Gate validators: the programmatic check run before every phase transition."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .models import GateResult, Phase, ValidationErrorDetail

if TYPE_CHECKING:
    from .models import Mission

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 2_000


class GateValidator(Protocol):
    def validate(self, mission: "Mission", phase: Phase, artifacts: Sequence[str]) -> GateResult:
        ...


def parse_gate_commands(raw_json: str) -> dict[Phase, list[str]]:
    """Parse ``{"phase": ["cmd", ...]}`` JSON into per-phase command lists.

    Raises:
        ValueError: If the JSON is malformed or names an unknown phase.
    """
    if not raw_json.strip():
        return {}
    try:
        payload = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise ValueError(f"MISSION_GATE_COMMANDS_JSON is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("MISSION_GATE_COMMANDS_JSON must be a JSON object keyed by phase")
    commands: dict[Phase, list[str]] = {}
    for key, value in payload.items():
        try:
            phase = Phase(str(key).lower())
        except ValueError as exc:
            raise ValueError(f"Unknown phase in gate commands: {key!r}") from exc
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
            raise ValueError(f"Gate commands for {phase.value} must be a list of non-empty strings")
        commands[phase] = list(value)
    return commands


class CommandGateValidator:
    """Run configured shell commands for a phase; every command must exit 0.

    Commands may reference ``{artifacts}``, ``{phase}`` and ``{mission_id}``.
    A phase with no configured commands passes.
    """

    def __init__(
        self,
        commands: Mapping[Phase, Sequence[str]],
        *,
        cwd: Path | None = None,
        timeout_seconds: int = 600,
    ) -> None:
        self.commands = {phase: list(items) for phase, items in commands.items()}
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def validate(self, mission: "Mission", phase: Phase, artifacts: Sequence[str]) -> GateResult:
        errors: list[ValidationErrorDetail] = []
        for template in self.commands.get(phase, []):
            command = template.format(
                artifacts=" ".join(shlex.quote(path) for path in sorted(artifacts)),
                phase=phase.value,
                mission_id=mission.mission_id,
            )
            logger.debug("Gate %s for %s: %s", phase.value, mission.mission_id, command)
            try:
                completed = subprocess.run(
                    shlex.split(command),
                    cwd=str(self.cwd) if self.cwd is not None else None,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired:
                errors.append(
                    ValidationErrorDetail(
                        message=f"timed out after {self.timeout_seconds}s",
                        location=phase.value,
                        command=command,
                    )
                )
                continue
            except OSError as exc:
                errors.append(ValidationErrorDetail(message=str(exc), location=phase.value, command=command))
                continue
            if completed.returncode != 0:
                output = (completed.stdout + completed.stderr).strip()
                errors.append(
                    ValidationErrorDetail(
                        message=f"exit code {completed.returncode}: {output[-_OUTPUT_TAIL_CHARS:]}",
                        location=phase.value,
                        command=command,
                    )
                )
        return GateResult(passed=not errors, errors=errors)
