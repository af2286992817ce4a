"""Relay streaming layer.

Decodes incrementally framed model event streams and dispatches tool
calls the moment their arguments are complete.
"""

from __future__ import annotations

from relay_stream.dispatch import ToolBuffer, ToolDispatcher
from relay_stream.errors import (
    OffsetAmbiguityWarning,
    RelayError,
    StreamFramingError,
    StreamTransportError,
    ToolArgumentDecodeError,
)
from relay_stream.http import iter_response_chunks, open_chunk_stream
from relay_stream.signals import (
    Signal,
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
from relay_stream.sse import DEFAULT_SENTINEL, SSEDecoder, decode_stream, iter_events
from relay_stream.types import (
    BlockKind,
    PartialToolBuffer,
    StreamEvent,
    StreamEventKind,
    ThinkingBlock,
    ToolResult,
)

__all__ = [
    # Decoder
    "SSEDecoder",
    "decode_stream",
    "iter_events",
    "DEFAULT_SENTINEL",
    # Dispatch
    "ToolDispatcher",
    "ToolBuffer",
    # Signals
    "Signal",
    "SignalEmitter",
    "SignalHandler",
    "StreamSignal",
    "ToolStarted",
    "ToolCompleted",
    "ToolDecodeFailed",
    "TextChunk",
    "ThinkingBlockCompleted",
    "StreamCompleted",
    "StreamError",
    # Types
    "BlockKind",
    "PartialToolBuffer",
    "StreamEvent",
    "StreamEventKind",
    "ThinkingBlock",
    "ToolResult",
    # HTTP
    "open_chunk_stream",
    "iter_response_chunks",
    # Errors
    "RelayError",
    "StreamTransportError",
    "StreamFramingError",
    "ToolArgumentDecodeError",
    "OffsetAmbiguityWarning",
]
