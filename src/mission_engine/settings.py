from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import UnitBounds


@dataclass(frozen=True)
class RuntimeSettings:
    """Engine configuration, read from ``MISSION_*`` environment variables.

    ``from_env`` rejects out-of-range values at startup instead of letting a bad
    bound surface mid-run.
    """

    state_store_root: str = "state_store"
    max_files_per_unit: int = 1
    max_lines_per_unit: int = 150
    max_functions_per_unit: int = 3
    max_parallel_units: int = 4
    staleness_threshold_seconds: int = 1_800
    stale_retry_ceiling: int = 2
    recursion_limit: int = 10_000
    checkpoint_db: str = ""
    workspace_root: str = ""
    executor_model: str = "gpt-4o"
    gate_commands_json: str = ""
    gate_timeout_seconds: int = 600

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("MISSION_STATE_STORE_ROOT", "state_store"),
            max_files_per_unit=_get_env_int("MISSION_MAX_FILES_PER_UNIT", default=1, minimum=1, maximum=1_000),
            max_lines_per_unit=_get_env_int("MISSION_MAX_LINES_PER_UNIT", default=150, minimum=1),
            max_functions_per_unit=_get_env_int("MISSION_MAX_FUNCTIONS_PER_UNIT", default=3, minimum=1, maximum=1_000),
            max_parallel_units=_get_env_int("MISSION_MAX_PARALLEL_UNITS", default=4, minimum=1, maximum=256),
            staleness_threshold_seconds=_get_env_int(
                "MISSION_STALENESS_THRESHOLD_SECONDS", default=1_800, minimum=1
            ),
            stale_retry_ceiling=_get_env_int("MISSION_STALE_RETRY_CEILING", default=2, minimum=1, maximum=100),
            recursion_limit=_get_env_int("MISSION_RECURSION_LIMIT", default=10_000, minimum=100),
            checkpoint_db=os.getenv("MISSION_CHECKPOINT_DB", ""),
            workspace_root=os.getenv("MISSION_WORKSPACE_ROOT", ""),
            executor_model=os.getenv("MISSION_EXECUTOR_MODEL", "gpt-4o"),
            gate_commands_json=os.getenv("MISSION_GATE_COMMANDS_JSON", ""),
            gate_timeout_seconds=_get_env_int("MISSION_GATE_TIMEOUT_SECONDS", default=600, minimum=1),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    @property
    def unit_bounds(self) -> UnitBounds:
        return UnitBounds(
            max_files=self.max_files_per_unit,
            max_lines=self.max_lines_per_unit,
            max_functions=self.max_functions_per_unit,
        )

    @property
    def report_timeout_seconds(self) -> float:
        """How long the control loop blocks on reports before checking for overdue units."""
        return float(min(self.staleness_threshold_seconds, 60))

    def normalized(self) -> "RuntimeSettings":
        """Strip text fields and check numeric bounds; raises ValueError."""
        if not self.state_store_root.strip():
            raise ValueError("MISSION_STATE_STORE_ROOT must be non-empty")
        executor_model = self.executor_model.strip()
        if not executor_model:
            raise ValueError("MISSION_EXECUTOR_MODEL must be non-empty")
        for name, value in (
            ("max_files_per_unit", self.max_files_per_unit),
            ("max_lines_per_unit", self.max_lines_per_unit),
            ("max_functions_per_unit", self.max_functions_per_unit),
            ("max_parallel_units", self.max_parallel_units),
            ("stale_retry_ceiling", self.stale_retry_ceiling),
        ):
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got: {value}")
        if self.staleness_threshold_seconds < 1:
            raise ValueError(
                f"staleness_threshold_seconds must be >= 1, got: {self.staleness_threshold_seconds}"
            )
        return RuntimeSettings(
            state_store_root=self.state_store_root.strip(),
            max_files_per_unit=self.max_files_per_unit,
            max_lines_per_unit=self.max_lines_per_unit,
            max_functions_per_unit=self.max_functions_per_unit,
            max_parallel_units=self.max_parallel_units,
            staleness_threshold_seconds=self.staleness_threshold_seconds,
            stale_retry_ceiling=self.stale_retry_ceiling,
            recursion_limit=self.recursion_limit,
            checkpoint_db=self.checkpoint_db.strip(),
            workspace_root=self.workspace_root,
            executor_model=executor_model,
            gate_commands_json=self.gate_commands_json.strip(),
            gate_timeout_seconds=self.gate_timeout_seconds,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, store_root: Path) -> Path:
        if not self.checkpoint_db:
            return store_root / "checkpoints" / "scheduler.sqlite"
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else store_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read *name* as an integer in ``[minimum, maximum]``, or *default* when unset."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name}={raw!r} is not a whole number") from exc
    if not minimum <= value <= maximum:
        raise ValueError(f"{name}={value} is outside the allowed range {minimum}..{maximum}")
    return value
