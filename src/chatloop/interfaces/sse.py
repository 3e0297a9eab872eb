"""Server-sent events framing for chunk streams."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterable, AsyncIterator, Mapping

from sse_starlette.sse import EventSourceResponse, ServerSentEvent

from chatloop.llm.types import ErrorInfo, ErrorStreamChunk, StreamChunk

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
SSE_LINE_SEP = "\n"

DEFAULT_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _event(data: str) -> ServerSentEvent:
    return ServerSentEvent(data=data, sep=SSE_LINE_SEP)


def format_sse(data: str) -> str:
    return _event(data).encode().decode("utf-8")


async def chunk_events(
    stream: AsyncIterable[StreamChunk],
    abort_event: asyncio.Event | None = None,
) -> AsyncIterator[ServerSentEvent]:
    """One event per chunk, then the ``[DONE]`` sentinel.

    An exception from ``stream`` becomes one ``error`` chunk before the
    sentinel. Once ``abort_event`` is set nothing further is sent, not even
    the sentinel. Closing or cancelling this generator sets ``abort_event``.
    """
    def aborted() -> bool:
        return abort_event is not None and abort_event.is_set()

    try:
        async for chunk in stream:
            if aborted():
                return
            yield _event(chunk.to_json())
    except (GeneratorExit, asyncio.CancelledError):
        if abort_event is not None:
            abort_event.set()
        raise
    except Exception as e:
        if aborted():
            return
        logger.exception("Chunk stream failed")
        error = ErrorStreamChunk(error=ErrorInfo(message=str(e) or type(e).__name__))
        yield _event(error.to_json())

    if not aborted():
        yield _event(DONE_SENTINEL)


async def to_server_sent_events(
    stream: AsyncIterable[StreamChunk],
    abort_event: asyncio.Event | None = None,
) -> AsyncIterator[str]:
    """Frame each chunk as ``data: <json>\\n\\n`` and finish with ``data: [DONE]\\n\\n``."""
    async with aclosing(chunk_events(stream, abort_event)) as events:
        async for event in events:
            yield event.encode().decode("utf-8")


def _merge_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    # Caller headers win; a default is replaced under its own spelling
    merged = dict(DEFAULT_SSE_HEADERS)
    for key, value in (headers or {}).items():
        name = next((k for k in merged if k.lower() == key.lower()), key)
        merged[name] = value
    return merged


def to_stream_response(
    stream: AsyncIterable[StreamChunk],
    abort_event: asyncio.Event | None = None,
    headers: Mapping[str, str] | None = None,
) -> EventSourceResponse:
    """Wrap a chunk stream in an SSE ``EventSourceResponse``.

    Caller headers are merged over the SSE defaults.
    """
    return EventSourceResponse(
        chunk_events(stream, abort_event),
        headers=_merge_headers(headers),
        sep=SSE_LINE_SEP,
    )
