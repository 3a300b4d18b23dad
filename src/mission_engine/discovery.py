"""Discovery queue draining and contract evolution.

Executors only ever append discoveries.  This module is the single place
that decides what they mean: between work units it drains a mission's
pending discoveries in arrival order, folds contract changes into versioned
contract events, and rolls affected missions back to ``CONTRACT``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .canonical import fingerprint
from .errors import ConflictingWriteAttempt
from .models import (
    ESCALATABLE_STATUSES,
    ContractEvent,
    ContractSnapshot,
    ContractVersion,
    Discovery,
    DiscoveryCategory,
    DiscoveryStatus,
    EscalationReason,
    Mission,
    Phase,
    UnitStatus,
    ValidationErrorDetail,
    utc_now,
)
from .phases import PhaseMachine
from .state_store import MissionStateStore, Writer

logger = logging.getLogger(__name__)


class PolicyDecision(str, Enum):
    CONTRACT_CHANGE = "contract_change"
    NO_CHANGE = "no_change"
    ESCALATE = "escalate"


class ContractPolicy(Protocol):
    def decide(self, discovery: Discovery, mission: Mission) -> PolicyDecision:
        ...


class DefaultContractPolicy:
    """Contract gaps and architectural decisions naming a contract evolve it;
    ambiguity and missing dependencies need a human; the rest is informational."""

    contract_categories = frozenset({DiscoveryCategory.CONTRACT_GAP, DiscoveryCategory.ARCHITECTURAL_DECISION})
    escalate_categories = frozenset({DiscoveryCategory.AMBIGUOUS_REQUIREMENT, DiscoveryCategory.DEPENDENCY_MISSING})

    def decide(self, discovery: Discovery, mission: Mission) -> PolicyDecision:
        if discovery.category in self.contract_categories and discovery.contract_id is not None:
            return PolicyDecision.CONTRACT_CHANGE
        if discovery.category in self.escalate_categories:
            return PolicyDecision.ESCALATE
        return PolicyDecision.NO_CHANGE


def order_by_arrival(discoveries: Iterable[Discovery]) -> list[Discovery]:
    return sorted(discoveries, key=lambda entry: entry.arrival_key)


def build_contract_snapshot(events: Iterable[ContractEvent]) -> ContractSnapshot:
    """Fold the contract log into the latest version of every contract."""
    latest: dict[str, ContractVersion] = {}
    for event in events:
        current = latest.get(event.contract_id)
        if current is None or event.version > current.version:
            latest[event.contract_id] = ContractVersion(
                contract_id=event.contract_id,
                version=event.version,
                description=event.description,
                event_id=event.event_id,
            )
    contracts = dict(sorted(latest.items()))
    return ContractSnapshot(contracts=contracts, fingerprint=fingerprint(contracts))


def _describe(discoveries: list[Discovery]) -> str:
    parts = []
    for entry in discoveries:
        text = entry.payload.get("description") or entry.payload.get("summary") or entry.category.value
        parts.append(f"{entry.mission_id}/{entry.unit_id}: {text}")
    return "; ".join(parts)


@dataclass
class ReconcileResult:
    mission_id: str
    processed: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    contract_events: list[ContractEvent] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    deferred_rollbacks: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.processed or self.escalated)


class Reconciler:
    """Authoritative discovery reconciliation; the only writer of discovery status."""

    def __init__(
        self,
        store: MissionStateStore,
        phases: PhaseMachine,
        policy: ContractPolicy | None = None,
    ) -> None:
        self.store = store
        self.phases = phases
        self.policy = policy or DefaultContractPolicy()

    def has_unit_in_flight(self, mission_id: str) -> bool:
        return any(unit.status == UnitStatus.IN_PROGRESS for unit in self.store.list_units(mission_id))

    def snapshot(self) -> ContractSnapshot:
        return build_contract_snapshot(self.store.read_contract_events())

    def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every mission that has pending discoveries and nothing in flight."""
        results = []
        for mission in self.store.list_missions():
            if not mission.pending_discoveries() or self.has_unit_in_flight(mission.mission_id):
                continue
            results.append(self.reconcile(mission.mission_id))
        return results

    def reconcile(self, mission_id: str) -> ReconcileResult:
        """Drain the pending discoveries of one mission.

        Raises:
            ConflictingWriteAttempt: If a unit of the mission is still in flight.
        """
        mission = self.store.read_mission(mission_id)
        result = ReconcileResult(mission_id=mission_id)
        pending = order_by_arrival(mission.pending_discoveries())
        if not pending:
            return result
        if self.has_unit_in_flight(mission_id):
            logger.critical("Refusing to reconcile %s while a unit is in flight", mission_id)
            raise ConflictingWriteAttempt(
                f"discoveries of {mission_id} cannot be reconciled while a unit is in flight",
                writer=Writer.RECONCILER.value,
                target=mission_id,
            )

        by_contract: dict[str, list[Discovery]] = {}
        outcome: dict[str, DiscoveryStatus] = {}
        event_for: dict[str, str] = {}
        for entry in pending:
            decision = self.policy.decide(entry, mission)
            logger.info("Discovery %s (%s) -> %s", entry.discovery_id, entry.category.value, decision.value)
            if decision == PolicyDecision.CONTRACT_CHANGE and entry.contract_id is not None:
                by_contract.setdefault(entry.contract_id, []).append(entry)
                outcome[entry.discovery_id] = DiscoveryStatus.PROCESSED
            elif decision == PolicyDecision.ESCALATE:
                outcome[entry.discovery_id] = DiscoveryStatus.ESCALATED
            else:
                outcome[entry.discovery_id] = DiscoveryStatus.PROCESSED

        for contract_id, entries in by_contract.items():
            event = self._evolve_contract(mission, contract_id, entries)
            result.contract_events.append(event)
            for entry in entries:
                event_for[entry.discovery_id] = event.event_id

        now = utc_now()
        updated = []
        escalation_errors = []
        for entry in mission.discoveries:
            status = outcome.get(entry.discovery_id)
            if status is None:
                updated.append(entry)
                continue
            updated.append(
                entry.model_copy(
                    update={
                        "status": status,
                        "processed_at": now,
                        "contract_event_id": event_for.get(entry.discovery_id),
                    }
                )
            )
            if status == DiscoveryStatus.ESCALATED:
                result.escalated.append(entry.discovery_id)
                escalation_errors.append(
                    ValidationErrorDetail(message=_describe([entry]), location=entry.discovery_id)
                )
            else:
                result.processed.append(entry.discovery_id)
        mission.discoveries = updated

        for event in result.contract_events:
            if self._apply_contract_event(mission, event, idle=True):
                result.rolled_back.append(mission.mission_id)
        if escalation_errors and mission.status in ESCALATABLE_STATUSES:
            self.phases.escalate(mission, EscalationReason.DISCOVERY_ESCALATED, errors=escalation_errors)
        self.store.write_mission(mission, writer=Writer.RECONCILER)

        for event in result.contract_events:
            for other_id in event.affected_missions:
                if other_id == mission_id:
                    continue
                other = self.store.read_mission(other_id)
                idle = not self.has_unit_in_flight(other_id)
                if self._apply_contract_event(other, event, idle=idle):
                    result.rolled_back.append(other_id)
                elif other.pending_rollback is not None and not idle:
                    result.deferred_rollbacks.append(other_id)
                self.store.write_mission(other, writer=Writer.RECONCILER)
        return result

    def _evolve_contract(self, mission: Mission, contract_id: str, entries: list[Discovery]) -> ContractEvent:
        affected = {mission.mission_id}
        affected.update(other.mission_id for other in self.store.list_missions() if contract_id in other.contracts)
        event = ContractEvent(
            event_id=f"ce-{uuid.uuid4().hex[:12]}",
            recorded_at=utc_now(),
            contract_id=contract_id,
            version=self.store.next_contract_version(contract_id),
            description=_describe(entries),
            affected_missions=sorted(affected),
            rollback_phase=Phase.CONTRACT,
            source_discovery_ids=[entry.discovery_id for entry in entries],
        )
        return self.store.append_contract_event(event, writer=Writer.RECONCILER)

    def _apply_contract_event(self, mission: Mission, event: ContractEvent, *, idle: bool) -> bool:
        """Record *event* on *mission* and roll it back if it already passed the phase.

        Returns True when the rollback was applied immediately.
        """
        if event not in mission.contract_events:
            mission.contract_events = [*mission.contract_events, event]
        if mission.is_terminal or event.rollback_phase is None:
            return False
        if event.rollback_phase not in mission.phases_completed:
            return False
        if idle:
            self.phases.rollback(mission, event.rollback_phase)
            return True
        mission.pending_rollback = event.rollback_phase
        logger.info(
            "Rollback of %s to %s deferred to next unit boundary", mission.mission_id, event.rollback_phase.value
        )
        return False
