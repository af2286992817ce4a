"""Agent run state.

One AgentState per agent run (per conversation). It is only written when
a pass completes, so a pass that is cancelled or aborted mid-stream
leaves no partial trace.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum

DEFAULT_HISTORY_LIMIT = 20


class ActionType(StrEnum):
    """What a pass is asked to do."""

    PLAN = "plan"
    DEBUG = "debug"
    IMPLEMENT_MISSING = "implement_missing_features"
    VERIFY = "verify"
    FINALIZE = "finalize"
    CONTINUE = "continue_implementation"


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    confidence: float = 0.0


@dataclass(frozen=True)
class GoalProgress:
    completed: int
    total: int


@dataclass(frozen=True)
class PassOutcome:
    """History entry for one completed pass."""

    action: ActionType
    verification: VerificationResult
    progress: GoalProgress
    iteration: int = 0


@dataclass
class AgentState:
    """Mutable state for a whole agent run.

    ``iteration`` is the number of completed passes. ``errors`` holds the
    errors reported by the most recent pass (the ones the next pass should
    address); ``error_count`` is cumulative over the run.
    """

    goals: set[str] = field(default_factory=set)
    completed_goals: set[str] = field(default_factory=set)
    required_features: set[str] = field(default_factory=set)
    implemented_features: set[str] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)
    error_count: int = 0
    files_generated: int = 0
    generations: int = 0
    iteration: int = 0
    history_limit: int = DEFAULT_HISTORY_LIMIT
    history: deque[PassOutcome] = field(init=False)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_limit)

    @property
    def remaining_goals(self) -> set[str]:
        return self.goals - self.completed_goals

    @property
    def missing_features(self) -> set[str]:
        return self.required_features - self.implemented_features

    def progress(self) -> GoalProgress:
        return GoalProgress(
            completed=len(self.goals & self.completed_goals),
            total=len(self.goals),
        )

    def complete_goal(self, goal: str) -> None:
        self.completed_goals.add(goal)

    def mark_feature(self, marker: str) -> None:
        self.implemented_features.add(marker)

    def record_files(self, count: int = 1) -> None:
        self.files_generated += count

    def record_pass(self, outcome: PassOutcome, errors: list[str] | tuple[str, ...] = ()) -> None:
        """Commit a completed pass. Advances ``iteration`` by exactly one."""
        self.errors = list(errors)
        self.error_count += len(errors)
        self.history.append(outcome)
        self.iteration += 1
