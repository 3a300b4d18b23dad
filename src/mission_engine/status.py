from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import BaseModel, Field

from .discovery import build_contract_snapshot
from .graph import derive_blocks
from .models import Escalation, MissionStatus, Phase, RequestStatus, utc_now
from .state_store import MissionStateStore


class MissionStatusView(BaseModel):
    mission_id: str
    request_id: str
    title: str
    status: MissionStatus
    current_phase: Phase | None
    phases_completed: list[Phase]
    blocked_by: list[str]
    blocks: list[str]
    phase_generation: int
    units: dict[str, int] = Field(default_factory=dict)
    pending_discoveries: int = 0
    pending_rollback: Phase | None = None
    abandon_requested: bool = False
    escalation: Escalation | None = None


class RequestStatusView(BaseModel):
    request_id: str
    scope: str
    status: RequestStatus
    mission_ids: list[str]
    archived_at: datetime | None = None


class StatusSnapshot(BaseModel):
    """Read-only view of the store for status observers."""

    generated_at: datetime = Field(default_factory=utc_now)
    requests: list[RequestStatusView] = Field(default_factory=list)
    missions: list[MissionStatusView] = Field(default_factory=list)
    contracts: dict[str, int] = Field(default_factory=dict)

    @property
    def escalated(self) -> list[MissionStatusView]:
        return [view for view in self.missions if view.status == MissionStatus.ESCALATED]

    def mission(self, mission_id: str) -> MissionStatusView:
        for view in self.missions:
            if view.mission_id == mission_id:
                return view
        raise KeyError(f"Unknown mission: {mission_id}")


def build_status_snapshot(store: MissionStateStore) -> StatusSnapshot:
    missions = store.list_missions()
    blocks = derive_blocks(missions)
    unit_counts: dict[str, Counter[str]] = {}
    for unit in store.list_units():
        mission = next((m for m in missions if m.mission_id == unit.mission_id), None)
        if mission is None or unit.phase != mission.current_phase or unit.generation != mission.phase_generation:
            continue
        unit_counts.setdefault(unit.mission_id, Counter())[unit.status.value] += 1

    views = [
        MissionStatusView(
            mission_id=mission.mission_id,
            request_id=mission.request_id,
            title=mission.title,
            status=mission.status,
            current_phase=mission.current_phase,
            phases_completed=list(mission.phases_completed),
            blocked_by=list(mission.blocked_by),
            blocks=sorted(blocks.get(mission.mission_id, ())),
            phase_generation=mission.phase_generation,
            units=dict(sorted(unit_counts.get(mission.mission_id, Counter()).items())),
            pending_discoveries=len(mission.pending_discoveries()),
            pending_rollback=mission.pending_rollback,
            abandon_requested=mission.abandon_requested,
            escalation=mission.escalation,
        )
        for mission in missions
    ]
    requests = [
        RequestStatusView(
            request_id=request.request_id,
            scope=request.scope,
            status=request.status,
            mission_ids=list(request.mission_ids),
            archived_at=request.archived_at,
        )
        for request in store.list_requests()
    ]
    snapshot = build_contract_snapshot(store.read_contract_events())
    return StatusSnapshot(
        requests=requests,
        missions=views,
        contracts={contract_id: entry.version for contract_id, entry in snapshot.contracts.items()},
    )
