"""Error hierarchy for the relay streaming layer.

Each error type carries retryability information so the agent loop can
decide whether a failed pass is worth repeating. Only transport errors
cross the stream boundary; framing and tool-argument errors are raised
and absorbed inside their own layer.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base error for all relay errors."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class StreamTransportError(RelayError):
    """Network-level failure or provider abort. Aborts the whole stream.

    ``partial_buffers`` holds snapshots of the tool buffers that were still
    open when the stream died; the dispatcher fills it in before re-raising.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        partial_buffers: tuple[Any, ...] = (),
        retryable: bool = True,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code
        self.partial_buffers = partial_buffers


class StreamFramingError(RelayError):
    """One malformed event. Logged and skipped by the decoder."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message, retryable=False)
        self.raw = raw


class ToolArgumentDecodeError(RelayError):
    """A tool block closed with arguments that do not decode to an object."""

    def __init__(self, message: str, *, tool_id: str, tool_name: str, raw: str = "") -> None:
        super().__init__(message, retryable=False)
        self.tool_id = tool_id
        self.tool_name = tool_name
        self.raw = raw


class OffsetAmbiguityWarning(UserWarning):
    """A line reference fell inside a previously replaced range."""
