from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol

from newsflow.models.fetch import FetchRequest, FetchResult, StrategyName
from newsflow.utils.deadline import Deadline


@dataclass(frozen=True)
class StrategyHealth:
    healthy: bool
    reason: str = "OK"
    details: dict[str, Any] = field(default_factory=dict)


class Strategy(Protocol):
    name: StrategyName

    def fetch(self, request: FetchRequest, deadline: Deadline) -> FetchResult:
        """Fetch ``request.url`` or raise a ``StrategyError`` subclass."""

    def health(self) -> StrategyHealth:
        """Cheap pre-flight check the orchestrator may consult."""

    @property
    def configured(self) -> bool:
        """False when the backend is not set up in this deployment."""


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class StrategyRegistry:
    def __init__(self, strategies: Iterable[Strategy]):
        self._strategies: dict[StrategyName, Strategy] = {
            strategy.name: strategy for strategy in strategies
        }

    def get(self, name: StrategyName) -> Optional[Strategy]:
        return self._strategies.get(name)

    def ordered(self, names: Iterable[StrategyName]) -> list[Strategy]:
        ordered: list[Strategy] = []
        seen: set[StrategyName] = set()
        for name in names:
            if name in seen:
                continue
            strategy = self.get(name)
            if strategy is None:
                continue
            ordered.append(strategy)
            seen.add(name)
        return ordered

    def all(self) -> list[Strategy]:
        return list(self._strategies.values())


