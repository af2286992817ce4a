"""Provider-neutral data model for the streaming layer.

Everything downstream of the decoder speaks these types only. Raw wire
field names never leave ``relay_stream.sse``.
All types use Pydantic v2 for validation and serialization.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, model_validator


class StreamEventKind(StrEnum):
    """Protocol event kinds, in the order a well-formed message produces them."""

    MESSAGE_START = "message_start"
    BLOCK_START = "block_start"
    BLOCK_DELTA = "block_delta"
    BLOCK_STOP = "block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"


class BlockKind(StrEnum):
    """Content block types the dispatcher distinguishes."""

    TOOL = "tool"
    TEXT = "text"
    THINKING = "thinking"
    OTHER = "other"


_BLOCK_KINDS = frozenset(
    {StreamEventKind.BLOCK_START, StreamEventKind.BLOCK_DELTA, StreamEventKind.BLOCK_STOP}
)


class StreamEvent(BaseModel):
    """A single decoded protocol event.

    Block-level events (start/delta/stop) must carry the block ``index``;
    a validator enforces it at construction time. ``block_kind`` is set on
    starts and deltas (a stop only names the index it closes).
    """

    model_config = {"frozen": True}

    kind: StreamEventKind
    index: int | None = None
    block_kind: BlockKind | None = None

    # BLOCK_START (tool)
    tool_id: str | None = None
    tool_name: str | None = None

    # BLOCK_DELTA: text, argument JSON or reasoning fragment
    fragment: str = ""
    signature: str | None = None

    # MESSAGE_START
    message_id: str | None = None
    model: str | None = None

    # MESSAGE_DELTA / MESSAGE_STOP
    stop_reason: str | None = None

    @model_validator(mode="after")
    def _validate_kind_fields(self) -> Self:
        if self.kind in _BLOCK_KINDS and self.index is None:
            raise ValueError(f"{self.kind} event requires 'index'")
        if self.kind == StreamEventKind.BLOCK_START and self.block_kind is None:
            raise ValueError("block_start event requires 'block_kind'")
        if self.block_kind == BlockKind.TOOL and self.kind == StreamEventKind.BLOCK_START:
            if not self.tool_id or not self.tool_name:
                raise ValueError("tool block_start requires 'tool_id' and 'tool_name'")
        return self

    @classmethod
    def block_start(cls, index: int, block_kind: BlockKind, **kwargs: Any) -> StreamEvent:
        return cls(kind=StreamEventKind.BLOCK_START, index=index, block_kind=block_kind, **kwargs)

    @classmethod
    def tool_start(cls, index: int, tool_id: str, tool_name: str) -> StreamEvent:
        return cls.block_start(index, BlockKind.TOOL, tool_id=tool_id, tool_name=tool_name)

    @classmethod
    def block_delta(
        cls, index: int, block_kind: BlockKind, fragment: str, signature: str | None = None
    ) -> StreamEvent:
        return cls(
            kind=StreamEventKind.BLOCK_DELTA,
            index=index,
            block_kind=block_kind,
            fragment=fragment,
            signature=signature,
        )

    @classmethod
    def block_stop(cls, index: int) -> StreamEvent:
        return cls(kind=StreamEventKind.BLOCK_STOP, index=index)


class ToolResult(BaseModel):
    """What a tool executor hands back: success flag plus payload or error."""

    success: bool
    payload: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def _check_error(self) -> Self:
        if not self.success and not self.error:
            raise ValueError("failed ToolResult requires 'error'")
        return self

    @classmethod
    def ok(cls, payload: Any = None) -> ToolResult:
        return cls(success=True, payload=payload)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


class ThinkingBlock(BaseModel):
    """Accumulated reasoning text. Opaque to dispatch."""

    model_config = {"frozen": True}

    index: int
    text: str = ""
    signature: str | None = None


class PartialToolBuffer(BaseModel):
    """Snapshot of a tool buffer that never closed (reported on abort)."""

    model_config = {"frozen": True}

    tool_id: str
    name: str
    block_index: int
    sequence: int
    arguments_text: str = Field(default="")
