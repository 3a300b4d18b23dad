from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from .models import WorkUnitPayload, WorkUnitReport

logger = logging.getLogger(__name__)


class Executor(Protocol):
    """Anything that can carry out a work unit and report back."""

    executor_id: str
    capabilities: frozenset[str]
    slots: int

    def execute(self, payload: WorkUnitPayload) -> WorkUnitReport:
        ...


@dataclass
class CallableExecutor:
    """Executor backed by a plain function; the usual way to plug in local workers."""

    executor_id: str
    capabilities: frozenset[str]
    handler: Callable[[WorkUnitPayload], WorkUnitReport]
    slots: int = 1

    def __post_init__(self) -> None:
        self.capabilities = frozenset(self.capabilities)
        if self.slots < 1:
            raise ValueError(f"Executor {self.executor_id} must have at least one slot")

    def execute(self, payload: WorkUnitPayload) -> WorkUnitReport:
        return self.handler(payload)


@dataclass
class ExecutorRegistry:
    _executors: dict[str, Executor] = field(default_factory=dict)

    def register(self, executor: Executor) -> None:
        if executor.executor_id in self._executors:
            raise ValueError(f"Executor already registered: {executor.executor_id}")
        self._executors[executor.executor_id] = executor
        logger.info(
            "Registered executor %s (capabilities=%s, slots=%d)",
            executor.executor_id,
            ",".join(sorted(executor.capabilities)),
            executor.slots,
        )

    def register_all(self, executors: Iterable[Executor]) -> None:
        for executor in executors:
            self.register(executor)

    def get(self, executor_id: str) -> Executor:
        try:
            return self._executors[executor_id]
        except KeyError as exc:
            raise KeyError(f"Unknown executor: {executor_id}") from exc

    def executors(self) -> list[Executor]:
        return [self._executors[executor_id] for executor_id in sorted(self._executors)]

    def capabilities(self) -> frozenset[str]:
        return frozenset(cap for executor in self._executors.values() for cap in executor.capabilities)

    def select(self, capability: str, busy: Mapping[str, int]) -> Executor | None:
        """Return the first executor (by id) advertising *capability* with a free slot."""
        for executor in self.executors():
            if capability in executor.capabilities and busy.get(executor.executor_id, 0) < executor.slots:
                return executor
        return None

    def __len__(self) -> int:
        return len(self._executors)
