"""Tool dispatch state machine.

Consumes decoded StreamEvents and emits signals the moment something
actionable happens: a tool is announced as soon as its block opens and
handed over as soon as its block closes, without waiting for the rest of
the message.

Each block index runs its own small state machine (tool, text or
thinking, each Open -> Closed). The block index is the only correlation
key: tool buffers live in a ``dict[int, ToolBuffer]`` so a delta finds its
buffer in O(1).
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable
from dataclasses import dataclass, field
from typing import Any

from relay_stream.errors import StreamTransportError, ToolArgumentDecodeError
from relay_stream.signals import (
    SignalEmitter,
    SignalHandler,
    StreamCompleted,
    StreamError,
    StreamSignal,
    TextChunk,
    ThinkingBlockCompleted,
    ToolCompleted,
    ToolDecodeFailed,
    ToolStarted,
)
from relay_stream.types import (
    BlockKind,
    PartialToolBuffer,
    StreamEvent,
    StreamEventKind,
    ThinkingBlock,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolBuffer:
    """Accumulates argument fragments for one in-flight tool call."""

    tool_id: str
    name: str
    block_index: int
    sequence: int
    chunks: list[str] = field(default_factory=list)

    def feed(self, fragment: str) -> None:
        self.chunks.append(fragment)

    @property
    def arguments_text(self) -> str:
        return "".join(self.chunks)

    def decode(self) -> dict[str, Any]:
        """Decode the accumulated text. An empty buffer means no arguments."""
        text = self.arguments_text
        if not text.strip():
            return {}
        try:
            value = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ToolArgumentDecodeError(
                f"invalid JSON arguments: {exc.msg} at position {exc.pos}",
                tool_id=self.tool_id,
                tool_name=self.name,
                raw=text,
            ) from exc
        if not isinstance(value, dict):
            raise ToolArgumentDecodeError(
                f"arguments decoded to {type(value).__name__}, expected an object",
                tool_id=self.tool_id,
                tool_name=self.name,
                raw=text,
            )
        return value

    def snapshot(self) -> PartialToolBuffer:
        return PartialToolBuffer(
            tool_id=self.tool_id,
            name=self.name,
            block_index=self.block_index,
            sequence=self.sequence,
            arguments_text=self.arguments_text,
        )


@dataclass
class _ThinkingBuilder:
    index: int
    chunks: list[str] = field(default_factory=list)
    signature: str | None = None

    def build(self) -> ThinkingBlock:
        return ThinkingBlock(index=self.index, text="".join(self.chunks), signature=self.signature)


class ToolDispatcher:
    """Per-conversation dispatch state. Never shared between streams.

    Usage::

        dispatcher = ToolDispatcher(emitter)
        summary = await dispatcher.run(decode_stream(chunks))

    or, event by event::

        for event in iter_events(chunks):
            signals = dispatcher.handle(event)
    """

    def __init__(self, emitter: SignalEmitter | SignalHandler | None = None) -> None:
        if isinstance(emitter, SignalEmitter):
            self._emitter = emitter
        else:
            self._emitter = SignalEmitter(on_signal=emitter)
        self._open: dict[int, ToolBuffer] = {}
        self._blocks: dict[int, BlockKind] = {}
        self._thinking: dict[int, _ThinkingBuilder] = {}
        self._text_chunks: list[str] = []
        self._thinking_blocks: list[ThinkingBlock] = []
        self._next_sequence = 0
        self._stop_reason: str | None = None
        self._summary: StreamCompleted | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def open_buffers(self) -> dict[int, ToolBuffer]:
        """Tool buffers still waiting for their block stop, by block index."""
        return dict(self._open)

    @property
    def text(self) -> str:
        return "".join(self._text_chunks)

    @property
    def stop_reason(self) -> str | None:
        return self._stop_reason

    @property
    def summary(self) -> StreamCompleted | None:
        """The StreamCompleted signal, once message stop has been seen."""
        return self._summary

    def partial_buffers(self) -> tuple[PartialToolBuffer, ...]:
        return tuple(buf.snapshot() for buf in self._open.values())

    def handle(self, event: StreamEvent) -> list[StreamSignal]:
        """Apply one event, emit the resulting signals and return them."""
        signals = self._transition(event)
        for signal in signals:
            self._emitter.emit(signal)
        return signals

    async def run(self, events: AsyncIterable[StreamEvent]) -> StreamCompleted | None:
        """Drive the state machine over a whole stream.

        Returns the StreamCompleted summary, or None if the input ended
        before message stop. A transport failure emits StreamError with the
        still-open buffers and is re-raised; no tool is force-completed.
        """
        try:
            async for event in events:
                self.handle(event)
        except StreamTransportError as exc:
            partial = self.partial_buffers()
            exc.partial_buffers = partial
            logger.warning("Stream aborted with %d open tool buffer(s): %s", len(partial), exc)
            self._emitter.emit(
                StreamError(error=str(exc), partial_buffers=partial, partial_text=self.text)
            )
            raise

        if self._summary is None:
            logger.warning(
                "Stream ended without message_stop (%d tool buffer(s) still open)",
                len(self._open),
            )
        return self._summary

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _transition(self, event: StreamEvent) -> list[StreamSignal]:
        if self._summary is not None:
            logger.debug("Ignoring %s after message_stop", event.kind)
            return []

        match event.kind:
            case StreamEventKind.MESSAGE_START:
                logger.debug("Message started (id=%s model=%s)", event.message_id, event.model)
                return []
            case StreamEventKind.BLOCK_START:
                return self._on_block_start(event)
            case StreamEventKind.BLOCK_DELTA:
                return self._on_block_delta(event)
            case StreamEventKind.BLOCK_STOP:
                return self._on_block_stop(event)
            case StreamEventKind.MESSAGE_DELTA:
                if event.stop_reason:
                    self._stop_reason = event.stop_reason
                return []
            case StreamEventKind.MESSAGE_STOP:
                return self._on_message_stop(event)
        return []

    def _on_block_start(self, event: StreamEvent) -> list[StreamSignal]:
        index = event.index
        assert index is not None  # noqa: S101
        signals: list[StreamSignal] = []

        orphan = self._open.pop(index, None)
        if orphan is not None:
            logger.warning(
                "Block %d reopened while tool '%s' (%s) was still open; failing it",
                index,
                orphan.name,
                orphan.tool_id,
            )
            signals.append(_abandon(orphan, "block index reused before the tool block closed"))
        self._blocks.pop(index, None)
        self._thinking.pop(index, None)

        match event.block_kind:
            case BlockKind.TOOL:
                assert event.tool_id is not None and event.tool_name is not None  # noqa: S101
                buffer = ToolBuffer(
                    tool_id=event.tool_id,
                    name=event.tool_name,
                    block_index=index,
                    sequence=self._next_sequence,
                )
                self._next_sequence += 1
                self._open[index] = buffer
                logger.info(
                    "Tool detected: %s (%s) at block %d, sequence %d",
                    buffer.name,
                    buffer.tool_id,
                    index,
                    buffer.sequence,
                )
                signals.append(
                    ToolStarted(tool_id=buffer.tool_id, name=buffer.name, sequence=buffer.sequence)
                )
            case BlockKind.TEXT:
                self._text_chunks = []
                self._blocks[index] = BlockKind.TEXT
            case BlockKind.THINKING:
                self._thinking[index] = _ThinkingBuilder(index=index)
                self._blocks[index] = BlockKind.THINKING
            case _:
                self._blocks[index] = BlockKind.OTHER
        return signals

    def _on_block_delta(self, event: StreamEvent) -> list[StreamSignal]:
        index = event.index
        assert index is not None  # noqa: S101

        match event.block_kind:
            case BlockKind.TOOL:
                buffer = self._open.get(index)
                if buffer is None:
                    logger.warning(
                        "No open tool buffer for block %d; dropping argument delta", index
                    )
                    return []
                buffer.feed(event.fragment)
                return []
            case BlockKind.TEXT:
                if self._blocks.get(index) != BlockKind.TEXT:
                    logger.warning("No open text block %d; dropping delta", index)
                    return []
                if not event.fragment:
                    return []
                self._text_chunks.append(event.fragment)
                return [TextChunk(fragment=event.fragment)]
            case BlockKind.THINKING:
                builder = self._thinking.get(index)
                if builder is None:
                    logger.warning("No open thinking block %d; dropping delta", index)
                    return []
                if event.fragment:
                    builder.chunks.append(event.fragment)
                if event.signature:
                    builder.signature = event.signature
                return []
        return []

    def _on_block_stop(self, event: StreamEvent) -> list[StreamSignal]:
        index = event.index
        assert index is not None  # noqa: S101

        buffer = self._open.pop(index, None)
        if buffer is not None:
            try:
                arguments = buffer.decode()
            except ToolArgumentDecodeError as exc:
                logger.warning(
                    "Tool '%s' (%s) arguments failed to decode: %s",
                    buffer.name,
                    buffer.tool_id,
                    exc,
                )
                return [
                    ToolDecodeFailed(
                        tool_id=buffer.tool_id,
                        reason=str(exc),
                        name=buffer.name,
                        sequence=buffer.sequence,
                        raw_arguments=exc.raw,
                    )
                ]
            logger.info("Tool complete: %s (%s), dispatching", buffer.name, buffer.tool_id)
            return [
                ToolCompleted(
                    tool_id=buffer.tool_id,
                    name=buffer.name,
                    sequence=buffer.sequence,
                    arguments=arguments,
                )
            ]

        block_kind = self._blocks.pop(index, None)
        if block_kind is None:
            logger.warning("block_stop for unknown block %d; ignoring", index)
            return []
        if block_kind == BlockKind.THINKING:
            block = self._thinking.pop(index).build()
            self._thinking_blocks.append(block)
            return [ThinkingBlockCompleted(block=block)]
        return []

    def _on_message_stop(self, event: StreamEvent) -> list[StreamSignal]:
        if event.stop_reason:
            self._stop_reason = event.stop_reason
        signals: list[StreamSignal] = []
        if self._open:
            logger.warning(
                "message_stop with %d tool buffer(s) still open: %s",
                len(self._open),
                ", ".join(buf.tool_id for buf in self._open.values()),
            )
            signals.extend(
                _abandon(buf, "message stopped before the tool block closed")
                for buf in sorted(self._open.values(), key=lambda b: b.sequence)
            )
            self._open.clear()
        self._summary = StreamCompleted(
            text=self.text,
            thinking_blocks=tuple(self._thinking_blocks),
            stop_reason=self._stop_reason,
        )
        signals.append(self._summary)
        return signals


def _abandon(buffer: ToolBuffer, reason: str) -> ToolDecodeFailed:
    return ToolDecodeFailed(
        tool_id=buffer.tool_id,
        reason=reason,
        name=buffer.name,
        sequence=buffer.sequence,
        raw_arguments=buffer.arguments_text,
    )
