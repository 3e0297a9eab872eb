"""Agent loop strategies: decide whether the engine runs another model turn."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from chatloop.llm.types import ModelMessage


@dataclass(frozen=True)
class AgentLoopState:
    iteration_count: int
    messages: Sequence[ModelMessage]
    finish_reason: str | None


AgentLoopStrategy = Callable[[AgentLoopState], bool]


def max_iterations(n: int) -> AgentLoopStrategy:
    """Continue while fewer than ``n`` iterations have completed."""
    def strategy(state: AgentLoopState) -> bool:
        return state.iteration_count < n

    return strategy


def until_finish_reason(stop_reasons: Sequence[str]) -> AgentLoopStrategy:
    """Continue until the last turn finished with one of ``stop_reasons``."""
    reasons = frozenset(stop_reasons)

    def strategy(state: AgentLoopState) -> bool:
        if state.iteration_count == 0:
            return True
        return state.finish_reason not in reasons

    return strategy


def combine_strategies(*strategies: AgentLoopStrategy) -> AgentLoopStrategy:
    """Continue only while every strategy allows it."""
    def strategy(state: AgentLoopState) -> bool:
        return all(s(state) for s in strategies)

    return strategy
