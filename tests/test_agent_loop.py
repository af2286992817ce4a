"""Tests for the agent control loop: early tool execution while the stream
is still open, per-pass bookkeeping, verification and termination."""

from __future__ import annotations

import threading
from typing import Any

import anyio
import httpx
import pytest

from relay_agent.events import LoopTerminated, PassCompleted, PassStarted
from relay_agent.loop import AgentLoop, LoopConfig, PassContext, PassReport, default_verification
from relay_agent.policy import TerminationReason
from relay_agent.state import ActionType, AgentState, VerificationResult
from relay_stream.errors import StreamTransportError
from relay_stream.signals import Signal, StreamCompleted, StreamError, ToolCompleted, ToolStarted
from relay_stream.types import ToolResult
from tests.helpers import (
    DONE,
    block_stop,
    chunked,
    json_delta,
    message_start,
    message_stop,
    tool_call,
    tool_response,
    tool_start,
)


def _scripted(*responses: str):
    """Event source that replays one canned response per pass."""
    contexts: list[PassContext] = []

    async def source(context: PassContext):
        contexts.append(context)
        raw = responses[min(len(contexts), len(responses)) - 1]
        for chunk in chunked(raw, 7):
            yield chunk

    return source, contexts


class _Recorder:
    def __init__(self, fail: set[str] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._fail = fail or set()

    async def __call__(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        self.calls.append((name, arguments))
        if name in self._fail:
            return ToolResult.fail(f"{name} exploded")
        return ToolResult.ok({"echo": arguments})


# ================================================================== #
# Single pass
# ================================================================== #


class TestRunPass:
    @pytest.mark.asyncio
    async def test_tools_executed_and_recorded(self):
        source, contexts = _scripted(
            tool_response(("t1", "search", {"q": "x"}), ("t2", "read", {"path": "a.py"}))
        )
        calls: list[tuple[str, dict[str, Any]]] = []

        async def executor(name: str, arguments: dict[str, Any]) -> ToolResult:
            calls.append((name, arguments))
            return ToolResult.ok(name)

        loop = AgentLoop(source=source, executor=executor)
        report = await loop.run_pass()

        assert report.iteration == 1
        assert report.action == ActionType.PLAN
        assert report.completed
        assert sorted(calls) == [("read", {"path": "a.py"}), ("search", {"q": "x"})]
        assert [c.tool_id for c in report.tool_calls] == ["t1", "t2"]
        assert all(c.result.success for c in report.tool_calls)
        assert report.outcome is not None
        assert report.outcome.verification == VerificationResult(success=True, confidence=1.0)
        assert loop.state.iteration == 1
        assert loop.state.generations == 1
        assert contexts[0].iteration == 1
        assert contexts[0].action == ActionType.PLAN

    @pytest.mark.asyncio
    async def test_tool_runs_while_stream_still_open(self):
        tool_ran = anyio.Event()

        async def source(context: PassContext):
            yield message_start() + tool_call(0, "t1", "build", {})
            # The rest of the message only arrives once the tool has run.
            await tool_ran.wait()
            yield message_stop() + DONE

        async def executor(name: str, arguments: dict[str, Any]) -> ToolResult:
            tool_ran.set()
            return ToolResult.ok()

        loop = AgentLoop(source=source, executor=executor)
        with anyio.fail_after(5):
            report = await loop.run_pass()
        assert report.completed
        assert len(report.tool_calls) == 1

    @pytest.mark.asyncio
    async def test_results_ordered_by_sequence(self):
        source, _ = _scripted(
            tool_response(("slow", "a", {"delay": 0.05}), ("fast", "b", {"delay": 0}))
        )
        finished: list[str] = []

        async def executor(name: str, arguments: dict[str, Any]) -> ToolResult:
            await anyio.sleep(arguments["delay"])
            finished.append(name)
            return ToolResult.ok()

        report = await AgentLoop(source=source, executor=executor).run_pass()
        assert finished == ["b", "a"]
        assert [c.tool_id for c in report.tool_calls] == ["slow", "fast"]
        assert [c.sequence for c in report.tool_calls] == [0, 1]

    @pytest.mark.asyncio
    async def test_sync_executor_runs_in_worker_thread(self):
        source, _ = _scripted(tool_response(("t1", "shell", {"cmd": "ls"})))
        main_thread = threading.get_ident()
        threads: list[int] = []

        def executor(name: str, arguments: dict[str, Any]) -> ToolResult:
            threads.append(threading.get_ident())
            return ToolResult.ok("done")

        report = await AgentLoop(source=source, executor=executor).run_pass()
        assert report.tool_calls[0].result.payload == "done"
        assert threads and threads[0] != main_thread

    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self):
        source, _ = _scripted(
            tool_response(*[(f"t{i}", "work", {}) for i in range(4)])
        )
        active = 0
        peak = 0

        async def executor(name: str, arguments: dict[str, Any]) -> ToolResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await anyio.sleep(0.01)
            active -= 1
            return ToolResult.ok()

        loop = AgentLoop(
            source=source, executor=executor, config=LoopConfig(max_parallel_tools=1)
        )
        report = await loop.run_pass()
        assert len(report.tool_calls) == 4
        assert peak == 1

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failed_result(self):
        source, contexts = _scripted(
            tool_response(("t1", "deploy", {})), tool_response(("t2", "deploy", {}))
        )

        async def executor(name: str, arguments: dict[str, Any]) -> ToolResult:
            raise RuntimeError("disk full")

        loop = AgentLoop(source=source, executor=executor)
        report = await loop.run_pass()
        (call,) = report.tool_calls
        assert not call.result.success
        assert "RuntimeError: disk full" in (call.result.error or "")
        assert not report.outcome.verification.success
        assert loop.state.error_count == 1

        second = await loop.run_pass()
        assert second.action == ActionType.DEBUG
        assert "disk full" in contexts[1].pending_errors[0]

    @pytest.mark.asyncio
    async def test_decode_failure_recorded_as_error(self):
        raw = (
            message_start()
            + tool_start(0, "bad", "write")
            + json_delta(0, "{not json")
            + block_stop(0)
            + message_stop()
            + DONE
        )
        source, _ = _scripted(raw)
        recorder = _Recorder()
        loop = AgentLoop(source=source, executor=recorder)
        report = await loop.run_pass()

        assert recorder.calls == []
        assert [f.tool_id for f in report.decode_failures] == ["bad"]
        assert report.outcome.verification == VerificationResult(success=False, confidence=0.0)
        assert len(loop.state.errors) == 1
        assert "could not be decoded" in loop.state.errors[0]

    @pytest.mark.asyncio
    async def test_incomplete_stream_reported(self):
        source, _ = _scripted(message_start() + tool_call(0, "t1", "a", {}))
        loop = AgentLoop(source=source, executor=_Recorder())
        report = await loop.run_pass()
        assert not report.completed
        assert loop.state.generations == 0
        assert any("ended before" in e for e in loop.state.errors)

    @pytest.mark.asyncio
    async def test_transport_error_lets_started_tools_finish(self):
        recorder = _Recorder()

        async def source(context: PassContext):
            yield message_start() + tool_call(0, "t1", "save", {"path": "x"})
            yield tool_start(1, "t2", "save")
            raise ConnectionResetError("peer went away")

        loop = AgentLoop(source=source, executor=recorder)
        with pytest.raises(StreamTransportError, match="peer went away") as exc_info:
            await loop.run_pass()

        assert recorder.calls == [("save", {"path": "x"})]
        assert [b.tool_id for b in exc_info.value.partial_buffers] == ["t2"]
        assert loop.state.iteration == 0
        assert len(loop.state.history) == 0

    @pytest.mark.asyncio
    async def test_httpx_read_error_surfaces_as_transport_error(self):
        recorder = _Recorder()
        received: list[Signal] = []

        async def source(context: PassContext):
            yield (message_start() + tool_call(0, "t1", "save", {"path": "x"})).encode()
            raise httpx.ReadError("reset")

        loop = AgentLoop(source=source, executor=recorder, emitter=received.append)
        with pytest.raises(StreamTransportError, match="reset"):
            await loop.run_pass()

        assert recorder.calls == [("save", {"path": "x"})]
        assert len([s for s in received if isinstance(s, StreamError)]) == 1
        assert loop.state.iteration == 0

    @pytest.mark.asyncio
    async def test_tool_left_open_at_message_stop_fails_the_pass(self):
        raw = (
            message_start()
            + tool_call(0, "t1", "ok", {"x": 1})
            + tool_start(1, "t2", "dangling")
            + json_delta(1, '{"y": 2}')
            + message_stop()
            + DONE
        )
        source, _ = _scripted(raw)
        recorder = _Recorder()
        loop = AgentLoop(source=source, executor=recorder)
        report = await loop.run_pass()

        assert recorder.calls == [("ok", {"x": 1})]
        assert [f.tool_id for f in report.decode_failures] == ["t2"]
        assert report.outcome.verification == VerificationResult(success=False, confidence=0.5)
        assert len(loop.state.errors) == 1
        assert "dangling (t2)" in loop.state.errors[0]

    @pytest.mark.asyncio
    async def test_explicit_action(self):
        source, contexts = _scripted(tool_response())
        loop = AgentLoop(source=source, executor=_Recorder())
        report = await loop.run_pass(ActionType.VERIFY)
        assert report.action == ActionType.VERIFY
        assert contexts[0].action == ActionType.VERIFY

    @pytest.mark.asyncio
    async def test_assess_hook_overrides_verification(self):
        source, _ = _scripted(tool_response(text="all good"))

        def assess(report: PassReport, state: AgentState) -> VerificationResult:
            state.record_files(2)
            return VerificationResult(success="good" in report.text, confidence=0.9)

        loop = AgentLoop(source=source, executor=_Recorder(), assess=assess)
        report = await loop.run_pass()
        assert report.outcome.verification == VerificationResult(success=True, confidence=0.9)
        assert loop.state.files_generated == 2

    @pytest.mark.asyncio
    async def test_assess_returning_none_falls_back(self):
        source, _ = _scripted(tool_response(("t1", "a", {})))
        loop = AgentLoop(source=source, executor=_Recorder(), assess=lambda r, s: None)
        report = await loop.run_pass()
        assert report.outcome.verification == VerificationResult(success=True, confidence=1.0)


# ================================================================== #
# Whole run
# ================================================================== #


class TestRun:
    @pytest.mark.asyncio
    async def test_terminates_when_goals_completed(self):
        source, _ = _scripted(tool_response(("t1", "build", {"target": "app"})))

        def assess(report: PassReport, state: AgentState) -> VerificationResult | None:
            if any(c.name == "build" and c.result.success for c in report.tool_calls):
                state.complete_goal("build app")
            return None

        loop = AgentLoop(
            source=source,
            executor=_Recorder(),
            state=AgentState(goals={"build app"}),
            assess=assess,
        )
        result = await loop.run()
        assert result.reason == TerminationReason.GOALS_COMPLETED
        assert result.iterations == 1
        assert len(result.history) == 1

    @pytest.mark.asyncio
    async def test_iteration_limit(self):
        source, contexts = _scripted(tool_response(text="thinking about it"))
        loop = AgentLoop(
            source=source, executor=_Recorder(), config=LoopConfig(max_iterations=2)
        )
        result = await loop.run()
        assert result.reason == TerminationReason.ITERATION_LIMIT
        assert result.iterations == 2
        assert [c.iteration for c in contexts] == [1, 2]
        assert [o.action for o in result.history] == [ActionType.PLAN, ActionType.FINALIZE]

    @pytest.mark.asyncio
    async def test_repeated_failures_stagnate(self):
        source, contexts = _scripted(tool_response(("t1", "deploy", {})))
        loop = AgentLoop(
            source=source,
            executor=_Recorder(fail={"deploy"}),
            config=LoopConfig(max_iterations=20),
        )
        result = await loop.run()
        assert result.reason == TerminationReason.STAGNATION
        assert result.iterations == 4
        assert [c.action for c in contexts] == [
            ActionType.PLAN,
            ActionType.DEBUG,
            ActionType.DEBUG,
            ActionType.DEBUG,
        ]

    @pytest.mark.asyncio
    async def test_signals_delivered_in_order(self):
        source, _ = _scripted(tool_response(("t1", "a", {})))
        received: list[Signal] = []
        loop = AgentLoop(
            source=source,
            executor=_Recorder(),
            emitter=received.append,
            config=LoopConfig(max_iterations=1),
        )
        await loop.run()

        kinds = [type(s) for s in received]
        assert kinds[0] is PassStarted
        assert kinds[-2:] == [PassCompleted, LoopTerminated]
        assert kinds.index(ToolStarted) < kinds.index(ToolCompleted) < kinds.index(StreamCompleted)
        completed = received[-2]
        assert isinstance(completed, PassCompleted)
        assert completed.tool_count == 1
        assert completed.verified
        assert received[-1] == LoopTerminated(
            reason=TerminationReason.ITERATION_LIMIT, iterations=1
        )

    def test_loop_shares_offset_tracker_with_editor(self):
        source, _ = _scripted(tool_response())
        loop = AgentLoop(source=source, executor=_Recorder())
        assert loop.editor.tracker is loop.offsets


class TestDefaultVerification:
    def test_no_tools(self):
        report = PassReport(iteration=1, action=ActionType.PLAN)
        assert default_verification(report) == VerificationResult(success=False, confidence=0.0)
