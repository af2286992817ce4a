"""Wire-format builders shared by the streaming and loop tests."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

DONE = "data: [DONE]\n\n"


def frame(event_type: str, payload: dict[str, Any]) -> str:
    body = {"type": event_type, **payload}
    return f"event: {event_type}\ndata: {json.dumps(body, ensure_ascii=False)}\n\n"


def message_start(message_id: str = "msg_1", model: str = "test-model") -> str:
    return frame("message_start", {"message": {"id": message_id, "model": model}})


def tool_start(index: int, tool_id: str, name: str) -> str:
    return frame(
        "content_block_start",
        {"index": index, "content_block": {"type": "tool_use", "id": tool_id, "name": name}},
    )


def json_delta(index: int, partial: str) -> str:
    return frame(
        "content_block_delta",
        {"index": index, "delta": {"type": "input_json_delta", "partial_json": partial}},
    )


def text_start(index: int) -> str:
    return frame("content_block_start", {"index": index, "content_block": {"type": "text"}})


def text_delta(index: int, text: str) -> str:
    return frame(
        "content_block_delta", {"index": index, "delta": {"type": "text_delta", "text": text}}
    )


def thinking_start(index: int) -> str:
    return frame("content_block_start", {"index": index, "content_block": {"type": "thinking"}})


def thinking_delta(index: int, text: str) -> str:
    return frame(
        "content_block_delta",
        {"index": index, "delta": {"type": "thinking_delta", "thinking": text}},
    )


def signature_delta(index: int, signature: str) -> str:
    return frame(
        "content_block_delta",
        {"index": index, "delta": {"type": "signature_delta", "signature": signature}},
    )


def block_stop(index: int) -> str:
    return frame("content_block_stop", {"index": index})


def message_delta(stop_reason: str = "tool_use") -> str:
    return frame("message_delta", {"delta": {"stop_reason": stop_reason}})


def message_stop() -> str:
    return frame("message_stop", {})


def tool_call(index: int, tool_id: str, name: str, arguments: dict[str, Any]) -> str:
    """A complete tool block with its arguments split into two fragments."""
    text = json.dumps(arguments)
    half = len(text) // 2
    return (
        tool_start(index, tool_id, name)
        + json_delta(index, text[:half])
        + json_delta(index, text[half:])
        + block_stop(index)
    )


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> str:
    """A whole message: optional text block then one tool block per call."""
    parts = [message_start()]
    index = 0
    if text:
        parts += [text_start(0), text_delta(0, text), block_stop(0)]
        index = 1
    for tool_id, name, arguments in calls:
        parts.append(tool_call(index, tool_id, name, arguments))
        index += 1
    parts += [message_delta("tool_use" if calls else "end_turn"), message_stop(), DONE]
    return "".join(parts)


def chunked(raw: str | bytes, size: int) -> list[bytes]:
    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    return [data[i : i + size] for i in range(0, len(data), size)]


async def aiter_chunks(chunks: Iterable[bytes | str]) -> AsyncIterator[bytes | str]:
    for chunk in chunks:
        yield chunk


async def failing_chunks(
    chunks: Iterable[bytes | str], exc: BaseException
) -> AsyncIterator[bytes | str]:
    """Yield ``chunks`` then fail the way a dropped connection does."""
    for chunk in chunks:
        yield chunk
    raise exc
