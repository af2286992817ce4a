"""Dispatch signals and the emitter that delivers them.

Typed, frozen dataclasses for every observable step of a stream. Each
concrete type inherits from `StreamSignal` and exposes a human-readable
`description` property. Signals are one-way: a sink never acknowledges
them and a failing sink never interrupts the stream.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relay_stream.types import PartialToolBuffer, ThinkingBlock

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signal:
    """Base class for everything a notification sink can receive."""

    @property
    def description(self) -> str:
        """Human-readable one-line summary of this signal."""
        return self.__class__.__name__


@dataclass(frozen=True)
class StreamSignal(Signal):
    """Base class for signals produced by the dispatch state machine."""


# ---------------------------------------------------------------------------
# Tool lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolStarted(StreamSignal):
    """A tool block opened. Emitted before any argument text arrives."""

    tool_id: str
    name: str
    sequence: int

    @property
    def description(self) -> str:
        return f"Tool '{self.name}' [{self.sequence}] started (id={self.tool_id})"


@dataclass(frozen=True)
class ToolCompleted(StreamSignal):
    """A tool block closed and its arguments decoded."""

    tool_id: str
    name: str
    sequence: int
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        return f"Tool '{self.name}' [{self.sequence}] ready with {len(self.arguments)} argument(s)"


@dataclass(frozen=True)
class ToolDecodeFailed(StreamSignal):
    """A tool block closed with undecodable arguments. Reported once."""

    tool_id: str
    reason: str
    name: str = ""
    sequence: int = -1
    raw_arguments: str = ""

    @property
    def description(self) -> str:
        return f"Tool '{self.name}' [{self.sequence}] argument decode failed: {self.reason}"


# ---------------------------------------------------------------------------
# Text and reasoning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextChunk(StreamSignal):
    """A plain-text fragment, forwarded unbuffered."""

    fragment: str

    @property
    def description(self) -> str:
        return f"Text: {self.fragment!r}"


@dataclass(frozen=True)
class ThinkingBlockCompleted(StreamSignal):
    """A reasoning block closed."""

    block: ThinkingBlock

    @property
    def description(self) -> str:
        return f"Thinking block [{self.block.index}] completed ({len(self.block.text)} chars)"


# ---------------------------------------------------------------------------
# Stream lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamCompleted(StreamSignal):
    """The message stopped. Tool calls are not repeated here."""

    text: str
    thinking_blocks: tuple[ThinkingBlock, ...] = ()
    stop_reason: str | None = None

    @property
    def description(self) -> str:
        return f"Stream completed (stop_reason={self.stop_reason}, {len(self.text)} chars of text)"


@dataclass(frozen=True)
class StreamError(StreamSignal):
    """The transport failed. Carries whatever was still buffered."""

    error: str
    partial_buffers: tuple[PartialToolBuffer, ...] = ()
    partial_text: str = ""

    @property
    def description(self) -> str:
        return f"Stream aborted: {self.error} ({len(self.partial_buffers)} open tool buffer(s))"


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

SignalHandler = Callable[[Signal], None]


class SignalEmitter:
    """Fans signals out to registered sinks.

    Handlers are called synchronously in registration order. Exceptions in
    handlers are logged and swallowed so a broken sink cannot stall the
    reading side of the stream.
    """

    def __init__(self, on_signal: SignalHandler | None = None) -> None:
        self._handlers: list[SignalHandler] = []
        if on_signal is not None:
            self._handlers.append(on_signal)

    def on(self, handler: SignalHandler) -> None:
        """Register a signal handler."""
        self._handlers.append(handler)

    def off(self, handler: SignalHandler) -> None:
        """Remove a signal handler."""
        self._handlers = [h for h in self._handlers if h is not handler]

    def emit(self, signal: Signal) -> None:
        for handler in list(self._handlers):
            try:
                handler(signal)
            except Exception:  # noqa: BLE001
                logger.exception("Signal handler failed for %s", type(signal).__name__)
