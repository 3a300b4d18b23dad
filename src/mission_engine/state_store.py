from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from collections.abc import Iterable
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import AppendOnlyViolation, ConflictingWriteAttempt, DuplicateMission, IllegalTransition
from .models import (
    DISCOVERY_MUTABLE_FIELDS,
    DISCOVERY_STATUS_TRANSITIONS,
    UNIT_STATUS_TRANSITIONS,
    ContractEvent,
    DecisionEvent,
    DiscoveryStatus,
    Mission,
    RecoveryEntry,
    Request,
    WorkUnit,
    utc_now,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


class Writer(str, Enum):
    """Component identity presented on every store write."""

    PLANNER = "planner"
    SCHEDULER = "scheduler"
    RECONCILER = "reconciler"
    EXECUTOR = "executor"
    OBSERVER = "observer"


_CORE_WRITERS: frozenset[Writer] = frozenset({Writer.SCHEDULER, Writer.RECONCILER})
_NOBODY: frozenset[Writer] = frozenset()

MISSION_FIELD_OWNERS: dict[str, frozenset[Writer]] = {
    "mission_id": _NOBODY,
    "request_id": _NOBODY,
    "title": _NOBODY,
    "blocked_by": _NOBODY,
    "parallel": _NOBODY,
    "contracts": _NOBODY,
    "work_plan": _NOBODY,
    "capabilities": _NOBODY,
    "status": _CORE_WRITERS,
    "current_phase": _CORE_WRITERS,
    "phases_completed": _CORE_WRITERS,
    "phase_generation": _CORE_WRITERS,
    "pending_rollback": _CORE_WRITERS,
    "abandon_requested": _CORE_WRITERS,
    "escalation": _CORE_WRITERS,
    "archived_at": _CORE_WRITERS,
    "assignments": frozenset({Writer.SCHEDULER}),
}

DISCOVERY_APPENDERS: frozenset[Writer] = frozenset({Writer.EXECUTOR, Writer.SCHEDULER, Writer.RECONCILER})
DISCOVERY_MUTATORS: frozenset[Writer] = frozenset({Writer.RECONCILER})
CONTRACT_EVENT_WRITERS: frozenset[Writer] = frozenset({Writer.RECONCILER})
UNIT_WRITERS: frozenset[Writer] = _CORE_WRITERS

REQUEST_FIELD_OWNERS: dict[str, frozenset[Writer]] = {
    "request_id": _NOBODY,
    "scope": _NOBODY,
    "compatibility": _NOBODY,
    "created_at": _NOBODY,
    "mission_ids": frozenset({Writer.PLANNER}),
    "status": _CORE_WRITERS,
    "updated_at": frozenset({Writer.PLANNER, Writer.SCHEDULER, Writer.RECONCILER}),
    "archived_at": _CORE_WRITERS,
}


def _reject(message: str, *, writer: Writer, target: str, append_only: bool = False) -> None:
    logger.critical("Ownership violation by %s on %s: %s", writer.value, target, message)
    error_type = AppendOnlyViolation if append_only else ConflictingWriteAttempt
    raise error_type(message, writer=writer.value, target=target)


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_COMPONENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file itself be swapped with ``os.replace``
    while the lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a same-directory temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line.rstrip("\n") + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def _read_model(path: Path, model: type[ModelT], label: str) -> ModelT:
    """Read and validate one JSON record.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, not UTF-8, or fails validation.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


def _read_jsonl(path: Path, model: type[ModelT], label: str) -> list[ModelT]:
    if not path.is_file():
        return []
    records: list[ModelT] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(model.model_validate_json(line))
        except ValidationError as exc:
            raise ValueError(f"{label} line {line_no} at {path} failed validation: {exc}") from exc
    return records


def path_component(value: str) -> str:
    """Return *value* if it is usable as a single path component.

    Raises:
        ValueError: If the identifier is empty or contains unsafe characters.
    """
    if not value or not _SAFE_COMPONENT_RE.match(value) or value in {".", ".."}:
        raise ValueError(f"identifier is not filesystem-safe: {value!r}")
    return value


# ---------------------------------------------------------------------------
# MissionStateStore
# ---------------------------------------------------------------------------


class MissionStateStore:
    """Filesystem state store: the authoritative record of requests, missions and units.

    One JSON record per request, mission and work unit; append-only JSONL logs
    for contract events, decisions and recovery corrections.  Every write
    names the component making it and is checked against the ownership
    tables above, so only the scheduler/reconciler pair can move mission
    state and discovery/contract logs can only grow.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.requests_dir = self.root / "requests"
        self.missions_dir = self.root / "missions"
        self.units_dir = self.root / "units"
        self.contracts_dir = self.root / "contracts"
        self.recovery_dir = self.root / "recovery"
        self.checkpoints_dir = self.root / "checkpoints"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        """Create all required directories if they do not exist."""
        for directory in (
            self.root,
            self.requests_dir,
            self.missions_dir,
            self.units_dir,
            self.contracts_dir,
            self.recovery_dir,
            self.checkpoints_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def request_path(self, request_id: str) -> Path:
        return self.requests_dir / f"{path_component(request_id)}.json"

    def mission_path(self, mission_id: str) -> Path:
        return self.missions_dir / f"{path_component(mission_id)}.json"

    def unit_path(self, mission_id: str, unit_id: str) -> Path:
        return self.units_dir / path_component(mission_id) / f"{path_component(unit_id)}.json"

    @property
    def contract_log_path(self) -> Path:
        return self.contracts_dir / "events.jsonl"

    @property
    def decision_log_path(self) -> Path:
        return self.root / "decisions.jsonl"

    @property
    def recovery_log_path(self) -> Path:
        return self.recovery_dir / "log.jsonl"

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_request(self, request: Request, missions: Iterable[Mission], *, writer: Writer) -> Request:
        """Persist a new request together with its initial missions.

        Raises:
            ConflictingWriteAttempt: If *writer* is not the planner.
            ValueError: If the request already exists.
            DuplicateMission: If any mission id is already taken.
        """
        if writer != Writer.PLANNER:
            _reject("only the planner may create requests", writer=writer, target=request.request_id)
        missions = list(missions)
        path = self.request_path(request.request_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Request already exists: {request.request_id}")
            for mission in missions:
                if self.mission_path(mission.mission_id).exists():
                    raise DuplicateMission(mission.mission_id)
            for mission in missions:
                _atomic_write_text(self.mission_path(mission.mission_id), mission.model_dump_json(indent=2))
            stored = request.model_copy(update={"mission_ids": [mission.mission_id for mission in missions]})
            _atomic_write_text(path, stored.model_dump_json(indent=2))
        logger.info("Accepted request %s with %d missions", request.request_id, len(missions))
        return stored

    def add_missions(self, request_id: str, missions: Iterable[Mission], *, writer: Writer) -> Request:
        """Append new missions to an existing request."""
        if writer != Writer.PLANNER:
            _reject("only the planner may add missions", writer=writer, target=request_id)
        missions = list(missions)
        path = self.request_path(request_id)
        with _locked_file(path):
            request = _read_model(path, Request, "request")
            for mission in missions:
                if self.mission_path(mission.mission_id).exists():
                    raise DuplicateMission(mission.mission_id)
            for mission in missions:
                _atomic_write_text(self.mission_path(mission.mission_id), mission.model_dump_json(indent=2))
            request.mission_ids = request.mission_ids + [mission.mission_id for mission in missions]
            request.updated_at = utc_now()
            _atomic_write_text(path, request.model_dump_json(indent=2))
        return request

    def read_request(self, request_id: str) -> Request:
        return _read_model(self.request_path(request_id), Request, "request")

    def list_requests(self) -> list[Request]:
        return [_read_model(path, Request, "request") for path in sorted(self.requests_dir.glob("*.json"))]

    def write_request(self, request: Request, *, writer: Writer) -> Request:
        """Persist aggregate-status changes to a request, enforcing field ownership."""
        path = self.request_path(request.request_id)
        with _locked_file(path):
            current = _read_model(path, Request, "request")
            for field_name, owners in REQUEST_FIELD_OWNERS.items():
                if getattr(current, field_name) != getattr(request, field_name) and writer not in owners:
                    _reject(f"field {field_name} is not writable", writer=writer, target=request.request_id)
            if request.mission_ids[: len(current.mission_ids)] != current.mission_ids:
                _reject(
                    "request mission list is append-only",
                    writer=writer,
                    target=request.request_id,
                    append_only=True,
                )
            _atomic_write_text(path, request.model_dump_json(indent=2))
        return request

    # ------------------------------------------------------------------
    # Missions (locked - every write passes the ownership checks)
    # ------------------------------------------------------------------

    def read_mission(self, mission_id: str) -> Mission:
        return _read_model(self.mission_path(mission_id), Mission, f"mission {mission_id}")

    def list_missions(self) -> list[Mission]:
        """Return every stored mission, sorted by mission id."""
        missions = [_read_model(path, Mission, "mission") for path in self.missions_dir.glob("*.json")]
        return sorted(missions, key=lambda mission: mission.mission_id)

    def write_mission(self, mission: Mission, *, writer: Writer) -> Mission:
        """Persist *mission* after checking every changed field against its owners.

        Returns:
            The stored mission with a refreshed ``last_checkpoint``.

        Raises:
            FileNotFoundError: If the mission was never created by the planner.
            ConflictingWriteAttempt: If *writer* does not own a changed field.
            AppendOnlyViolation: If a discovery or contract event was rewritten or removed.
            IllegalTransition: If a discovery status moved outside its transition table.
        """
        path = self.mission_path(mission.mission_id)
        with _locked_file(path):
            current = _read_model(path, Mission, f"mission {mission.mission_id}")
            self._check_mission_write(current, mission, writer)
            stored = mission.model_copy(update={"last_checkpoint": utc_now()})
            _atomic_write_text(path, stored.model_dump_json(indent=2))
        return stored

    def _check_mission_write(self, current: Mission, proposed: Mission, writer: Writer) -> None:
        target = current.mission_id
        for field_name, owners in MISSION_FIELD_OWNERS.items():
            if getattr(current, field_name) != getattr(proposed, field_name) and writer not in owners:
                owned_by = sorted(owner.value for owner in owners) or "nobody"
                _reject(f"field {field_name} is owned by {owned_by}", writer=writer, target=target)

        old_entries = current.discoveries
        new_entries = proposed.discoveries
        if len(new_entries) < len(old_entries):
            _reject("discoveries cannot be removed", writer=writer, target=target, append_only=True)
        mutable = set(DISCOVERY_MUTABLE_FIELDS)
        for old, new in zip(old_entries, new_entries):
            if old.discovery_id != new.discovery_id:
                _reject("discoveries cannot be reordered or replaced", writer=writer, target=target, append_only=True)
            if old.model_dump(exclude=mutable) != new.model_dump(exclude=mutable):
                _reject(f"discovery {old.discovery_id} is immutable", writer=writer, target=target, append_only=True)
            if old.model_dump(include=mutable) == new.model_dump(include=mutable):
                continue
            if writer not in DISCOVERY_MUTATORS:
                _reject(f"discovery {old.discovery_id} status is owned by the reconciler", writer=writer, target=target)
            if new.status != old.status and new.status not in DISCOVERY_STATUS_TRANSITIONS[old.status]:
                raise IllegalTransition(
                    f"Illegal discovery status transition for {old.discovery_id}: "
                    f"{old.status.value} -> {new.status.value}"
                )
        appended = new_entries[len(old_entries):]
        if appended and writer not in DISCOVERY_APPENDERS:
            _reject("writer may not append discoveries", writer=writer, target=target)
        known_ids = {entry.discovery_id for entry in old_entries}
        for entry in appended:
            if entry.discovery_id in known_ids:
                _reject(f"duplicate discovery {entry.discovery_id}", writer=writer, target=target, append_only=True)
            known_ids.add(entry.discovery_id)
            if entry.status != DiscoveryStatus.PENDING_REVIEW or entry.mission_id != target:
                _reject(
                    f"discovery {entry.discovery_id} must be appended as pending_review for its own mission",
                    writer=writer,
                    target=target,
                )

        if proposed.contract_events[: len(current.contract_events)] != current.contract_events:
            _reject("contract events are append-only", writer=writer, target=target, append_only=True)
        if len(proposed.contract_events) > len(current.contract_events) and writer not in CONTRACT_EVENT_WRITERS:
            _reject("only the reconciler may record contract events", writer=writer, target=target)

    # ------------------------------------------------------------------
    # Work units
    # ------------------------------------------------------------------

    def write_unit(self, unit: WorkUnit, *, writer: Writer) -> WorkUnit:
        if writer not in UNIT_WRITERS:
            _reject("work unit state is owned by the scheduler", writer=writer, target=unit.unit_id)
        path = self.unit_path(unit.mission_id, unit.unit_id)
        with _locked_file(path):
            if path.is_file():
                current = _read_model(path, WorkUnit, f"work unit {unit.unit_id}")
                if unit.status != current.status and unit.status not in UNIT_STATUS_TRANSITIONS[current.status]:
                    raise IllegalTransition(
                        f"Illegal unit status transition for {unit.unit_id}: "
                        f"{current.status.value} -> {unit.status.value}"
                    )
            _atomic_write_text(path, unit.model_dump_json(indent=2))
        return unit

    def read_unit(self, mission_id: str, unit_id: str) -> WorkUnit:
        return _read_model(self.unit_path(mission_id, unit_id), WorkUnit, f"work unit {unit_id}")

    def list_units(self, mission_id: str | None = None) -> list[WorkUnit]:
        """Return stored work units ordered by (mission, phase generation, index)."""
        if mission_id is not None:
            paths = sorted((self.units_dir / path_component(mission_id)).glob("*.json"))
        else:
            paths = sorted(self.units_dir.glob("*/*.json"))
        units = [_read_model(path, WorkUnit, "work unit") for path in paths]
        return sorted(units, key=lambda unit: (unit.mission_id, unit.generation, unit.unit_id))

    # ------------------------------------------------------------------
    # Contract log (append-only, global version history)
    # ------------------------------------------------------------------

    def read_contract_events(self) -> list[ContractEvent]:
        return _read_jsonl(self.contract_log_path, ContractEvent, "contract event")

    def next_contract_version(self, contract_id: str) -> int:
        versions = [event.version for event in self.read_contract_events() if event.contract_id == contract_id]
        return max(versions, default=0) + 1

    def append_contract_event(self, event: ContractEvent, *, writer: Writer) -> ContractEvent:
        """Append *event* to the global contract log.

        Raises:
            ConflictingWriteAttempt: If *writer* is not the reconciler or the
                version does not immediately follow the latest one.
        """
        if writer not in CONTRACT_EVENT_WRITERS:
            _reject("only the reconciler may evolve contracts", writer=writer, target=event.contract_id)
        with _locked_file(self.contract_log_path):
            expected = self.next_contract_version(event.contract_id)
            if event.version != expected:
                _reject(
                    f"contract {event.contract_id} version {event.version} does not follow {expected - 1}",
                    writer=writer,
                    target=event.contract_id,
                )
            _append_line(self.contract_log_path, event.model_dump_json())
        logger.info("Contract %s evolved to version %d (%s)", event.contract_id, event.version, event.event_id)
        return event

    # ------------------------------------------------------------------
    # Decisions and recovery log
    # ------------------------------------------------------------------

    def append_decision(self, decision: DecisionEvent) -> DecisionEvent:
        with _locked_file(self.decision_log_path):
            _append_line(self.decision_log_path, decision.model_dump_json())
        return decision

    def read_decisions(self, mission_id: str | None = None) -> list[DecisionEvent]:
        decisions = _read_jsonl(self.decision_log_path, DecisionEvent, "decision")
        if mission_id is None:
            return decisions
        return [decision for decision in decisions if decision.mission_id == mission_id]

    def append_recovery_entry(self, entry: RecoveryEntry) -> RecoveryEntry:
        with _locked_file(self.recovery_log_path):
            _append_line(self.recovery_log_path, entry.model_dump_json())
        return entry

    def read_recovery_log(self) -> list[RecoveryEntry]:
        return _read_jsonl(self.recovery_log_path, RecoveryEntry, "recovery entry")
