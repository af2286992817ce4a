"""Loop lifecycle signals.

Delivered through the same SignalEmitter as the stream signals, so one
sink sees a whole run in order.
"""

from __future__ import annotations

from dataclasses import dataclass

from relay_agent.policy import TerminationReason
from relay_agent.state import ActionType
from relay_stream.signals import Signal


@dataclass(frozen=True)
class LoopSignal(Signal):
    """Base class for agent loop signals."""


@dataclass(frozen=True)
class PassStarted(LoopSignal):
    iteration: int
    action: ActionType

    @property
    def description(self) -> str:
        return f"Pass {self.iteration} started: {self.action}"


@dataclass(frozen=True)
class PassCompleted(LoopSignal):
    iteration: int
    action: ActionType
    verified: bool
    confidence: float
    tool_count: int = 0
    error_count: int = 0

    @property
    def description(self) -> str:
        status = "verified" if self.verified else "not verified"
        return (
            f"Pass {self.iteration} completed: {self.action}, {status} "
            f"(confidence {self.confidence:.2f}, {self.tool_count} tool(s), "
            f"{self.error_count} error(s))"
        )


@dataclass(frozen=True)
class LoopTerminated(LoopSignal):
    reason: TerminationReason
    iterations: int

    @property
    def description(self) -> str:
        return f"Loop terminated after {self.iterations} pass(es): {self.reason}"
