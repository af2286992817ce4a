"""The agent control loop.

Each pass asks an event source for one streamed model response, drives it
through a ToolDispatcher, and starts every tool the moment its arguments
are complete, while the rest of the response is still arriving. When the
stream ends the pass waits for its tools, verifies the outcome, commits it
to AgentState and consults the termination rules.

Usage::

    loop = AgentLoop(source=my_source, executor=my_executor, state=state)
    result = await loop.run()
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import anyio
from anyio import to_thread

from relay_agent.edits import LineEditor
from relay_agent.events import LoopTerminated, PassCompleted, PassStarted
from relay_agent.offsets import LineOffsetTracker
from relay_agent.policy import TerminationReason, decide_next_action, evaluate_termination
from relay_agent.state import ActionType, AgentState, PassOutcome, VerificationResult
from relay_stream.dispatch import ToolDispatcher
from relay_stream.errors import StreamTransportError
from relay_stream.signals import (
    Signal,
    SignalEmitter,
    SignalHandler,
    ThinkingBlockCompleted,
    ToolCompleted,
    ToolDecodeFailed,
)
from relay_stream.sse import DEFAULT_SENTINEL, decode_stream
from relay_stream.types import ThinkingBlock, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class LoopConfig:
    """Limits for one agent run."""

    max_iterations: int = 50
    max_parallel_tools: int = 4
    sentinel: str = DEFAULT_SENTINEL


@dataclass(frozen=True)
class PassContext:
    """What the event source is told about the pass it is serving."""

    iteration: int
    action: ActionType
    pending_errors: tuple[str, ...] = ()
    missing_features: frozenset[str] = frozenset()
    remaining_goals: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ToolCallRecord:
    tool_id: str
    name: str
    sequence: int
    arguments: dict[str, Any]
    result: ToolResult


@dataclass
class PassReport:
    """Everything observed during one pass."""

    iteration: int
    action: ActionType
    text: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    decode_failures: list[ToolDecodeFailed] = field(default_factory=list)
    thinking_blocks: list[ThinkingBlock] = field(default_factory=list)
    stop_reason: str | None = None
    completed: bool = False
    outcome: PassOutcome | None = None

    @property
    def failed_calls(self) -> list[ToolCallRecord]:
        return [c for c in self.tool_calls if not c.result.success]

    def errors(self) -> list[str]:
        """Error messages the next pass should address."""
        messages = [
            f"tool {f.name} ({f.tool_id}) arguments could not be decoded: {f.reason}"
            for f in self.decode_failures
        ]
        messages.extend(
            f"tool {c.name} ({c.tool_id}) failed: {c.result.error}" for c in self.failed_calls
        )
        if not self.completed:
            messages.append("response stream ended before the message completed")
        return messages


@dataclass(frozen=True)
class LoopResult:
    reason: TerminationReason
    iterations: int
    history: tuple[PassOutcome, ...] = ()


EventSource = Callable[[PassContext], AsyncIterable[bytes | str]]
"""Returns the raw framed response stream for one pass."""

ToolExecutor = Callable[[str, dict[str, Any]], ToolResult | Awaitable[ToolResult]]
"""Runs one tool by name. May be a coroutine function or a plain function."""

Assessor = Callable[[PassReport, AgentState], VerificationResult | None]
"""Judges a finished pass. May also update goals, features and file counts."""


def default_verification(report: PassReport) -> VerificationResult:
    """A pass verifies when at least one tool ran and none failed."""
    total = len(report.tool_calls) + len(report.decode_failures)
    if total == 0:
        return VerificationResult(success=False, confidence=0.0)
    succeeded = len(report.tool_calls) - len(report.failed_calls)
    return VerificationResult(success=succeeded == total, confidence=succeeded / total)


class AgentLoop:
    """Runs passes until a termination rule fires.

    One loop per conversation. The loop owns the offset tracker and line
    editor for that conversation so tools can share them.
    """

    def __init__(
        self,
        *,
        source: EventSource,
        executor: ToolExecutor,
        state: AgentState | None = None,
        config: LoopConfig | None = None,
        emitter: SignalEmitter | SignalHandler | None = None,
        assess: Assessor | None = None,
    ) -> None:
        self._source = source
        self._executor = executor
        self.state = state if state is not None else AgentState()
        self._config = config or LoopConfig()
        if isinstance(emitter, SignalEmitter):
            self.emitter = emitter
        else:
            self.emitter = SignalEmitter(on_signal=emitter)
        self._assess = assess
        self.offsets = LineOffsetTracker()
        self.editor = LineEditor(self.offsets)

    @property
    def config(self) -> LoopConfig:
        return self._config

    async def run(self) -> LoopResult:
        """Run passes until termination. Transport errors propagate."""
        while True:
            await self.run_pass()
            reason = evaluate_termination(self.state, self._config.max_iterations)
            if reason is not None:
                logger.info(
                    "Agent loop terminated after %d pass(es): %s", self.state.iteration, reason
                )
                self.emitter.emit(LoopTerminated(reason=reason, iterations=self.state.iteration))
                return LoopResult(
                    reason=reason,
                    iterations=self.state.iteration,
                    history=tuple(self.state.history),
                )

    async def run_pass(self, action: ActionType | None = None) -> PassReport:
        """Run one pass and commit it to state.

        If the stream fails, tools already started are allowed to finish,
        nothing is committed and the StreamTransportError is re-raised.
        """
        state = self.state
        iteration = state.iteration + 1
        if action is None:
            action = decide_next_action(state, iteration)

        context = PassContext(
            iteration=iteration,
            action=action,
            pending_errors=tuple(state.errors),
            missing_features=frozenset(state.missing_features),
            remaining_goals=frozenset(state.remaining_goals),
        )
        logger.info("Pass %d: %s", iteration, action)
        self.emitter.emit(PassStarted(iteration=iteration, action=action))

        report = PassReport(iteration=iteration, action=action)
        limiter = anyio.CapacityLimiter(self._config.max_parallel_tools)
        transport_error: StreamTransportError | None = None

        async with anyio.create_task_group() as tg:

            def _on_signal(signal: Signal) -> None:
                if isinstance(signal, ToolCompleted):
                    tg.start_soon(self._execute_tool, signal, report, limiter)
                elif isinstance(signal, ToolDecodeFailed):
                    report.decode_failures.append(signal)
                elif isinstance(signal, ThinkingBlockCompleted):
                    report.thinking_blocks.append(signal.block)

            pass_emitter = SignalEmitter(on_signal=self.emitter.emit)
            pass_emitter.on(_on_signal)
            dispatcher = ToolDispatcher(pass_emitter)
            try:
                summary = await dispatcher.run(
                    decode_stream(self._source(context), sentinel=self._config.sentinel)
                )
            except StreamTransportError as exc:
                transport_error = exc
                summary = None

        if transport_error is not None:
            logger.warning(
                "Pass %d aborted by transport error after %d tool(s) ran: %s",
                iteration,
                len(report.tool_calls),
                transport_error,
            )
            raise transport_error

        report.tool_calls.sort(key=lambda c: c.sequence)
        report.completed = summary is not None
        report.text = dispatcher.text
        report.stop_reason = dispatcher.stop_reason
        if report.completed:
            state.generations += 1

        verification = await self._verify(report)
        outcome = PassOutcome(
            action=action,
            verification=verification,
            progress=state.progress(),
            iteration=iteration,
        )
        errors = report.errors()
        state.record_pass(outcome, errors)
        report.outcome = outcome

        self.emitter.emit(
            PassCompleted(
                iteration=iteration,
                action=action,
                verified=verification.success,
                confidence=verification.confidence,
                tool_count=len(report.tool_calls),
                error_count=len(errors),
            )
        )
        return report

    # ------------------------------------------------------------------ #

    async def _verify(self, report: PassReport) -> VerificationResult:
        if self._assess is not None:
            verdict = self._assess(report, self.state)
            if inspect.isawaitable(verdict):
                verdict = await verdict
            if verdict is not None:
                return verdict
        return default_verification(report)

    async def _execute_tool(
        self, signal: ToolCompleted, report: PassReport, limiter: anyio.CapacityLimiter
    ) -> None:
        try:
            if _is_async(self._executor):
                async with limiter:
                    result = await self._executor(signal.name, signal.arguments)
            else:
                result = await to_thread.run_sync(
                    self._executor, signal.name, signal.arguments, limiter=limiter
                )
                if inspect.isawaitable(result):
                    async with limiter:
                        result = await result
        except Exception as exc:  # noqa: BLE001
            logger.exception("Tool '%s' (%s) raised", signal.name, signal.tool_id)
            result = ToolResult.fail(f"{type(exc).__name__}: {exc}")

        if not isinstance(result, ToolResult):
            result = ToolResult.ok(result)

        if result.success:
            logger.info("Tool '%s' (%s) succeeded", signal.name, signal.tool_id)
        else:
            logger.warning("Tool '%s' (%s) failed: %s", signal.name, signal.tool_id, result.error)

        report.tool_calls.append(
            ToolCallRecord(
                tool_id=signal.tool_id,
                name=signal.name,
                sequence=signal.sequence,
                arguments=signal.arguments,
                result=result,
            )
        )


def _is_async(func: Any) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )
