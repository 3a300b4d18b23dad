"""Mission dependency graph: validation, ordering and readiness.

Only ``blocked_by`` edges are stored on missions.  Everything here is derived
from the current mission set and recomputed whenever that set changes.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from .errors import CyclicDependency, UnknownDependency
from .models import Mission, MissionStatus

READY_FROM_STATUSES: frozenset[MissionStatus] = frozenset({MissionStatus.PLANNED, MissionStatus.BLOCKED})


class GraphNode(Protocol):
    mission_id: str
    blocked_by: list[str]


@dataclass(frozen=True)
class DependencyGraph:
    order: tuple[str, ...]
    blocked_by: Mapping[str, frozenset[str]]
    blocks: Mapping[str, frozenset[str]]

    def dependencies_completed(self, mission_id: str, statuses: Mapping[str, MissionStatus]) -> bool:
        return all(statuses.get(dep) == MissionStatus.COMPLETED for dep in self.blocked_by.get(mission_id, ()))

    def is_ready(self, mission: Mission, statuses: Mapping[str, MissionStatus]) -> bool:
        """A mission is ready when every blocker is completed and it has not started yet."""
        return mission.status in READY_FROM_STATUSES and self.dependencies_completed(mission.mission_id, statuses)

    def ready_missions(self, missions: Iterable[Mission]) -> list[Mission]:
        """Return ready missions in topological order (ties broken by mission id)."""
        by_id = {mission.mission_id: mission for mission in missions}
        statuses = {mission_id: mission.status for mission_id, mission in by_id.items()}
        return [
            by_id[mission_id]
            for mission_id in self.order
            if mission_id in by_id and self.is_ready(by_id[mission_id], statuses)
        ]


def derive_blocks(missions: Iterable[GraphNode]) -> dict[str, frozenset[str]]:
    """Invert ``blocked_by`` edges: mission id -> ids of missions waiting on it."""
    nodes = list(missions)
    inverse: dict[str, set[str]] = {node.mission_id: set() for node in nodes}
    for node in nodes:
        for dep in node.blocked_by:
            inverse.setdefault(dep, set()).add(node.mission_id)
    return {mission_id: frozenset(waiting) for mission_id, waiting in inverse.items()}


def resolve(missions: Iterable[GraphNode]) -> DependencyGraph:
    """Validate the mission graph and return its topological order.

    Kahn's algorithm over ``dependency -> dependent`` edges; the ready queue is
    kept sorted so that ties are broken lexicographically by mission id.

    Raises:
        UnknownDependency: If a ``blocked_by`` entry names no mission in the set.
        CyclicDependency: If the graph has a cycle, self-loops included.
    """
    nodes = {node.mission_id: node for node in missions}
    blocked_by = {mission_id: frozenset(node.blocked_by) for mission_id, node in nodes.items()}
    indegree = {mission_id: 0 for mission_id in nodes}
    edges: dict[str, list[str]] = defaultdict(list)

    for mission_id in sorted(nodes):
        for dep in sorted(blocked_by[mission_id]):
            if dep not in nodes:
                raise UnknownDependency(mission_id, dep)
            indegree[mission_id] += 1
            edges[dep].append(mission_id)

    ready = sorted(mission_id for mission_id, degree in indegree.items() if degree == 0)
    queue = deque(ready)
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        released = []
        for nxt in edges[current]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                released.append(nxt)
        if released:
            queue = deque(sorted([*queue, *released]))

    if len(order) != len(nodes):
        remaining = {mission_id for mission_id, degree in indegree.items() if degree > 0}
        raise CyclicDependency(_extract_cycle(remaining, blocked_by))

    return DependencyGraph(order=tuple(order), blocked_by=blocked_by, blocks=derive_blocks(nodes.values()))


def _extract_cycle(remaining: set[str], blocked_by: Mapping[str, frozenset[str]]) -> list[str]:
    # Every node Kahn could not release still has a blocker inside the remainder,
    # so following the smallest such blocker must revisit a node.
    current = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = min(dep for dep in blocked_by[current] if dep in remaining)
    return path[seen[current] :] + [current]
