from __future__ import annotations

import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph

from .discovery import Reconciler
from .recovery import RecoveryManager
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class SchedulingState(TypedDict, total=False):
    iteration: int
    recovered: int
    reconciled: int
    dispatched: list[str]
    completed: list[str]
    expired: list[str]
    last_tick_changed: bool
    in_flight: list[str]


class SchedulingLoop:
    """The single logical control loop, as a checkpointed LangGraph ``StateGraph``.

    ``recover -> reconcile -> tick``; while units are in flight the loop waits
    up to ``report_timeout_seconds`` for the next report and goes round again.
    A unit still running past the staleness threshold is expired like a stale
    unit after a restart. The loop stops once a tick changes nothing and no
    report is outstanding.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        reconciler: Reconciler,
        recovery: RecoveryManager,
        *,
        checkpoint_path: Path,
        recursion_limit: int = 10_000,
        report_timeout_seconds: float | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.reconciler = reconciler
        self.recovery = recovery
        self.recursion_limit = recursion_limit
        self.report_timeout_seconds = report_timeout_seconds

        self.checkpoint_path = checkpoint_path
        self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        self._checkpoint_conn = sqlite3.connect(self.checkpoint_path, check_same_thread=False)
        self._checkpointer = SqliteSaver(self._checkpoint_conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(SchedulingState)
        graph.add_node("recover", self._recover_node)
        graph.add_node("reconcile", self._reconcile_node)
        graph.add_node("tick", self._tick_node)
        graph.add_node("await_reports", self._await_reports_node)

        graph.add_edge(START, "recover")
        graph.add_edge("recover", "reconcile")
        graph.add_edge("reconcile", "tick")
        graph.add_conditional_edges(
            "tick",
            self._tick_route,
            {
                "await_reports": "await_reports",
                "reconcile": "reconcile",
                "end": END,
            },
        )
        graph.add_edge("await_reports", "reconcile")
        return graph

    def _recover_node(self, _state: SchedulingState) -> dict[str, Any]:
        report = self.recovery.run(live_unit_ids=self.scheduler.in_flight_unit_ids)
        return {"recovered": len(report.entries)}

    def _reconcile_node(self, state: SchedulingState) -> dict[str, Any]:
        results = self.reconciler.reconcile_all()
        return {"reconciled": state.get("reconciled", 0) + sum(len(r.processed) + len(r.escalated) for r in results)}

    def _tick_node(self, state: SchedulingState) -> dict[str, Any]:
        result = self.scheduler.tick()
        if result.waiting and not self.scheduler.has_in_flight():
            logger.warning("No executor available for units: %s", ", ".join(result.waiting))
        return {
            "iteration": state.get("iteration", 0) + 1,
            "dispatched": [*state.get("dispatched", []), *result.dispatched],
            "last_tick_changed": result.changed,
            "in_flight": self.scheduler.in_flight_unit_ids,
        }

    def _tick_route(self, state: SchedulingState) -> str:
        if self.scheduler.has_in_flight():
            return "await_reports"
        if state.get("last_tick_changed"):
            return "reconcile"
        return "end"

    def _await_reports_node(self, state: SchedulingState) -> dict[str, Any]:
        completions = self.scheduler.collect(timeout=self.report_timeout_seconds)
        expired = self._expire_overdue_units()
        return {
            "completed": [*state.get("completed", []), *(completion.unit_id for completion in completions)],
            "expired": [*state.get("expired", []), *expired],
            "in_flight": self.scheduler.in_flight_unit_ids,
        }

    def _expire_overdue_units(self) -> list[str]:
        overdue = self.scheduler.overdue_units(self.recovery.clock(), self.recovery.staleness_threshold_seconds)
        if not overdue:
            return []
        for unit in overdue:
            self.scheduler.release(unit.unit_id)
        report = self.recovery.expire_units(overdue)
        self.scheduler.refresh_requests()
        return report.stale_units

    def run(self) -> SchedulingState:
        initial_state: SchedulingState = {
            "iteration": 0,
            "recovered": 0,
            "reconciled": 0,
            "dispatched": [],
            "completed": [],
            "expired": [],
            "last_tick_changed": False,
            "in_flight": [],
        }
        result = self.graph.invoke(
            initial_state,
            config={
                "recursion_limit": self.recursion_limit,
                "configurable": {"thread_id": f"scheduling-loop-{uuid.uuid4().hex[:8]}"},
            },
        )
        logger.info(
            "Scheduling loop finished after %d ticks (%d dispatched, %d completed)",
            result.get("iteration", 0),
            len(result.get("dispatched", [])),
            len(result.get("completed", [])),
        )
        return result

    def close(self) -> None:
        self._checkpoint_conn.close()
