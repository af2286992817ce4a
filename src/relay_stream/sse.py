"""Server-sent event decoder.

Turns arbitrarily chunked network input into provider-neutral
StreamEvents. This is the only module that knows the vendor wire
format; the wire event types it understands are:

- message_start: message metadata
- content_block_start: a new text / tool_use / thinking block
- content_block_delta: text_delta, input_json_delta, thinking_delta, signature_delta
- content_block_stop: block complete
- message_delta: final metadata (stop_reason)
- message_stop: stream complete
- ping: keep-alive, skipped
- error: provider-side abort
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from typing import Any

import httpx
from pydantic import ValidationError

from relay_stream.errors import StreamFramingError, StreamTransportError
from relay_stream.types import BlockKind, StreamEvent, StreamEventKind

logger = logging.getLogger(__name__)

DEFAULT_SENTINEL = "[DONE]"

_BLOCK_TYPES: dict[str, BlockKind] = {
    "tool_use": BlockKind.TOOL,
    "text": BlockKind.TEXT,
    "thinking": BlockKind.THINKING,
}

# delta type -> (block kind, payload field holding the fragment)
_DELTA_TYPES: dict[str, tuple[BlockKind, str]] = {
    "text_delta": (BlockKind.TEXT, "text"),
    "input_json_delta": (BlockKind.TOOL, "partial_json"),
    "thinking_delta": (BlockKind.THINKING, "thinking"),
    "signature_delta": (BlockKind.THINKING, "signature"),
}


class SSEDecoder:
    """Incremental decoder: feed raw chunks, get back complete events.

    Usage::

        decoder = SSEDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                handle(event)
            if decoder.finished:
                break
        decoder.close()

    Output depends only on the concatenated input, never on where the
    chunk boundaries fall.
    """

    def __init__(self, *, sentinel: str = DEFAULT_SENTINEL, encoding: str = "utf-8") -> None:
        self._sentinel = sentinel
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._finished = False
        self._frame_count = 0
        self._error: StreamTransportError | None = None

    @property
    def finished(self) -> bool:
        """Whether the termination sentinel (or a provider error) was seen."""
        return self._finished

    @property
    def error(self) -> StreamTransportError | None:
        """Provider-side abort, if the stream carried one.

        Events decoded before the error frame are still returned by `feed`;
        callers raise this once they have handled them.
        """
        return self._error

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume one chunk and return every event it completed."""
        if self._finished:
            return []

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        # A \r\n pair split across chunks is rejoined here before normalising.
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        events: list[StreamEvent] = []
        while not self._finished:
            boundary = self._buffer.find("\n\n")
            if boundary < 0:
                break
            frame = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2 :]
            events.extend(self._process_frame(frame))
        return events

    def close(self) -> None:
        """Signal end of input. A trailing unterminated event is discarded."""
        if self._finished:
            return
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer.strip():
            logger.warning(
                "Discarding unterminated trailing event (%d chars)", len(self._buffer)
            )
        self._buffer = ""

    # ------------------------------------------------------------------ #
    # Framing
    # ------------------------------------------------------------------ #

    def _process_frame(self, frame: str) -> list[StreamEvent]:
        event_type: str | None = None
        data_lines: list[str] = []

        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                event_type = value.strip()
            elif name == "data":
                data_lines.append(value)

        if not data_lines:
            return []

        self._frame_count += 1
        data = "\n".join(data_lines).strip()
        if data == self._sentinel:
            logger.debug("Termination sentinel after %d frames", self._frame_count)
            self._finished = True
            self._buffer = ""
            return []

        try:
            return self._translate(event_type, data)
        except StreamFramingError as exc:
            logger.warning("Dropping malformed stream event: %s (raw=%r)", exc, exc.raw[:200])
            return []

    # ------------------------------------------------------------------ #
    # Wire -> StreamEvent
    # ------------------------------------------------------------------ #

    def _translate(self, event_type: str | None, data: str) -> list[StreamEvent]:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise StreamFramingError(f"invalid JSON payload: {exc.msg}", raw=data) from exc

        if not isinstance(payload, dict):
            raise StreamFramingError("payload is not an object", raw=data)

        wire_type = payload.get("type") or event_type
        try:
            return self._translate_payload(wire_type, payload, data)
        except ValidationError as exc:
            raise StreamFramingError(
                f"{wire_type} payload failed validation: {exc.error_count()} error(s)", raw=data
            ) from exc

    def _translate_payload(  # noqa: PLR0911
        self, wire_type: str | None, payload: dict[str, Any], raw: str
    ) -> list[StreamEvent]:
        match wire_type:
            case "message_start":
                message = _require_dict(payload, "message", raw, default={})
                return [
                    StreamEvent(
                        kind=StreamEventKind.MESSAGE_START,
                        message_id=message.get("id"),
                        model=message.get("model"),
                    )
                ]

            case "content_block_start":
                index = _require_index(payload, raw)
                block = _require_dict(payload, "content_block", raw)
                block_kind = _BLOCK_TYPES.get(block.get("type", ""), BlockKind.OTHER)
                if block_kind == BlockKind.TOOL:
                    tool_id = block.get("id")
                    tool_name = block.get("name")
                    if not isinstance(tool_id, str) or not isinstance(tool_name, str):
                        raise StreamFramingError("tool_use block missing id or name", raw=raw)
                    return [StreamEvent.tool_start(index, tool_id, tool_name)]
                return [StreamEvent.block_start(index, block_kind)]

            case "content_block_delta":
                index = _require_index(payload, raw)
                delta = _require_dict(payload, "delta", raw)
                delta_type = delta.get("type", "")
                if delta_type not in _DELTA_TYPES:
                    logger.debug("Skipping unsupported delta type %r", delta_type)
                    return []
                block_kind, field_name = _DELTA_TYPES[delta_type]
                value = delta.get(field_name)
                if value is None:
                    value = ""
                if not isinstance(value, str):
                    raise StreamFramingError(f"{delta_type}.{field_name} is not a string", raw=raw)
                if delta_type == "signature_delta":
                    return [StreamEvent.block_delta(index, block_kind, "", signature=value)]
                return [StreamEvent.block_delta(index, block_kind, value)]

            case "content_block_stop":
                return [StreamEvent.block_stop(_require_index(payload, raw))]

            case "message_delta":
                delta = _require_dict(payload, "delta", raw, default={})
                return [
                    StreamEvent(
                        kind=StreamEventKind.MESSAGE_DELTA,
                        stop_reason=delta.get("stop_reason"),
                    )
                ]

            case "message_stop":
                return [
                    StreamEvent(
                        kind=StreamEventKind.MESSAGE_STOP,
                        stop_reason=payload.get("stop_reason"),
                    )
                ]

            case "ping":
                return []

            case "error":
                error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
                self._finished = True
                self._buffer = ""
                self._error = StreamTransportError(
                    f"provider error: {error.get('type', 'unknown')}: "
                    f"{error.get('message', raw[:200])}",
                    retryable=error.get("type") in ("overloaded_error", "api_error"),
                )
                return []

            case _:
                raise StreamFramingError(f"unknown event type {wire_type!r}", raw=raw)


def _require_index(payload: dict[str, Any], raw: str) -> int:
    index = payload.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        raise StreamFramingError("missing or non-integer block index", raw=raw)
    return index


def _require_dict(
    payload: dict[str, Any], key: str, raw: str, default: dict[str, Any] | None = None
) -> dict[str, Any]:
    value = payload.get(key)
    if value is None and default is not None:
        return default
    if not isinstance(value, dict):
        raise StreamFramingError(f"'{key}' is missing or not an object", raw=raw)
    return value


# ------------------------------------------------------------------ #
# Stream helpers
# ------------------------------------------------------------------ #


async def decode_stream(
    chunks: AsyncIterable[bytes | str], *, sentinel: str = DEFAULT_SENTINEL
) -> AsyncIterator[StreamEvent]:
    """Lazily decode an async chunk source into StreamEvents.

    Read failures surface as StreamTransportError; everything else that can
    go wrong with a single event is logged and skipped.
    """
    decoder = SSEDecoder(sentinel=sentinel)
    iterator = aiter(chunks)
    try:
        while True:
            try:
                chunk = await anext(iterator)
            except StopAsyncIteration:
                decoder.close()
                return
            except (OSError, httpx.TransportError) as exc:
                raise StreamTransportError(f"stream read failed: {exc}") from exc

            for event in decoder.feed(chunk):
                yield event
            if decoder.error is not None:
                raise decoder.error
            if decoder.finished:
                return
    finally:
        # Release the underlying response when we stop early (sentinel, error).
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def iter_events(
    chunks: Iterable[bytes | str], *, sentinel: str = DEFAULT_SENTINEL
) -> Iterator[StreamEvent]:
    """Synchronous counterpart of `decode_stream` for recorded streams."""
    decoder = SSEDecoder(sentinel=sentinel)
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.error is not None:
            raise decoder.error
        if decoder.finished:
            return
    decoder.close()
