"""Next-action selection and termination rules for the agent loop.

Both are pure functions of AgentState. ``decide_next_action`` treats
``state.iteration`` as the number of the pass being decided; the loop
passes the upcoming pass number explicitly.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from relay_agent.state import ActionType, AgentState

logger = logging.getLogger(__name__)

VERIFY_EVERY = 3
FINALIZE_REMAINING_GOALS = 1
STAGNATION_WINDOW = 4
MIN_MEAN_CONFIDENCE = 0.3
MAX_ERRORS = 10
MAX_GENERATED_FILES = 100


class TerminationReason(StrEnum):
    GOALS_COMPLETED = "goals_completed"
    STAGNATION = "stagnation"
    ERROR_THRESHOLD = "error_threshold"
    COMPLEXITY_LIMIT = "complexity_limit"
    ITERATION_LIMIT = "iteration_limit"


def decide_next_action(state: AgentState, iteration: int | None = None) -> ActionType:
    """Pick the action for pass ``iteration`` (defaults to ``state.iteration``).

    The first matching rule wins: plan on the first pass, debug while
    errors are pending, implement missing features, verify on every third
    pass, finalize when at most one goal is left, otherwise continue.
    """
    n = state.iteration if iteration is None else iteration
    if n <= 1:
        return ActionType.PLAN
    if state.errors:
        return ActionType.DEBUG
    if state.missing_features:
        return ActionType.IMPLEMENT_MISSING
    if n > 1 and n % VERIFY_EVERY == 0:
        return ActionType.VERIFY
    if len(state.remaining_goals) <= FINALIZE_REMAINING_GOALS:
        return ActionType.FINALIZE
    return ActionType.CONTINUE


def is_stagnating(state: AgentState) -> bool:
    """True when the last STAGNATION_WINDOW passes show no movement.

    Any one of: the same action with no successful verification, an
    unchanged progress snapshot, or mean confidence below
    MIN_MEAN_CONFIDENCE.
    """
    if state.iteration < STAGNATION_WINDOW or len(state.history) < STAGNATION_WINDOW:
        return False

    recent = list(state.history)[-STAGNATION_WINDOW:]
    if len({o.action for o in recent}) == 1 and not any(o.verification.success for o in recent):
        logger.debug("Stagnation: %s repeated without a verified pass", recent[0].action)
        return True
    if len({o.progress for o in recent}) == 1:
        logger.debug("Stagnation: goal progress unchanged at %s", recent[0].progress)
        return True
    mean = sum(o.verification.confidence for o in recent) / STAGNATION_WINDOW
    if mean < MIN_MEAN_CONFIDENCE:
        logger.debug("Stagnation: mean confidence %.2f", mean)
        return True
    return False


def evaluate_termination(
    state: AgentState, max_iterations: int | None = None
) -> TerminationReason | None:
    """Return why the run should stop, or None to keep going."""
    if state.goals and state.goals <= state.completed_goals:
        return TerminationReason.GOALS_COMPLETED
    if is_stagnating(state):
        return TerminationReason.STAGNATION
    if state.error_count > MAX_ERRORS:
        return TerminationReason.ERROR_THRESHOLD
    if state.files_generated > MAX_GENERATED_FILES:
        return TerminationReason.COMPLEXITY_LIMIT
    if max_iterations is not None and state.iteration >= max_iterations:
        return TerminationReason.ITERATION_LIMIT
    return None


def should_terminate(state: AgentState, max_iterations: int | None = None) -> bool:
    return evaluate_termination(state, max_iterations) is not None
