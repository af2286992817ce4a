"""Raw chunk source over an httpx streaming response.

Choosing the provider, building the request body and authenticating are
the caller's business; this module only opens the response and turns
its body into the ``AsyncIterator[bytes]`` the decoder consumes, mapping
every transport failure onto StreamTransportError.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from relay_stream.errors import StreamTransportError

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})


async def iter_response_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield raw body chunks, converting read failures."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.TransportError as exc:
        raise StreamTransportError(f"stream read failed: {exc}") from exc


@asynccontextmanager
async def open_chunk_stream(
    client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
) -> AsyncIterator[AsyncIterator[bytes]]:
    """Open a streaming request and yield its body as raw chunks.

    Usage::

        async with open_chunk_stream(client, "POST", "/v1/messages", json=body) as chunks:
            summary = await dispatcher.run(decode_stream(chunks))
    """
    try:
        async with client.stream(method, url, **kwargs) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise StreamTransportError(
                    f"HTTP {response.status_code}: {body.decode('utf-8', errors='replace')[:500]}",
                    status_code=response.status_code,
                    retryable=response.status_code in _RETRYABLE_STATUS,
                )
            yield iter_response_chunks(response)
    except httpx.TransportError as exc:
        raise StreamTransportError(f"connection failed: {exc}") from exc
