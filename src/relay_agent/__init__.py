"""Relay agent layer.

The control loop that drives streamed passes, its decision and
termination policy, and line-offset bookkeeping for sequential edits.
"""

from __future__ import annotations

from relay_agent.edits import LineEditor, LineReplaceResult, replace_lines
from relay_agent.events import LoopSignal, LoopTerminated, PassCompleted, PassStarted
from relay_agent.loop import (
    AgentLoop,
    LoopConfig,
    LoopResult,
    PassContext,
    PassReport,
    ToolCallRecord,
    default_verification,
)
from relay_agent.offsets import EditRecord, LineOffsetTracker
from relay_agent.policy import (
    TerminationReason,
    decide_next_action,
    evaluate_termination,
    is_stagnating,
    should_terminate,
)
from relay_agent.state import (
    ActionType,
    AgentState,
    GoalProgress,
    PassOutcome,
    VerificationResult,
)

__all__ = [
    # Loop
    "AgentLoop",
    "LoopConfig",
    "LoopResult",
    "PassContext",
    "PassReport",
    "ToolCallRecord",
    "default_verification",
    # State
    "ActionType",
    "AgentState",
    "GoalProgress",
    "PassOutcome",
    "VerificationResult",
    # Policy
    "TerminationReason",
    "decide_next_action",
    "evaluate_termination",
    "is_stagnating",
    "should_terminate",
    # Signals
    "LoopSignal",
    "PassStarted",
    "PassCompleted",
    "LoopTerminated",
    # Offsets and edits
    "EditRecord",
    "LineOffsetTracker",
    "LineEditor",
    "LineReplaceResult",
    "replace_lines",
]
