"""Connections a ChatClient uses to reach a chat engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Protocol

import httpx

from chatloop.core.chat_engine import ChatEngine
from chatloop.llm.base import ChatAdapter
from chatloop.llm.types import ModelMessage, StreamChunk, parse_chunk
from chatloop.stream.converters import model_message_to_dict

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def connect(
        self,
        messages: list[ModelMessage],
        body: dict[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]: ...


class EngineConnection:
    """Runs a ``ChatEngine`` in-process for every request.

    Keyword arguments are passed to ``ChatEngine`` unchanged; ``body`` is
    forwarded as the engine's ``options``.
    """

    def __init__(self, adapter: ChatAdapter, *, model: str, **engine_kwargs: Any):
        self._adapter = adapter
        self._model = model
        self._engine_kwargs = engine_kwargs

    async def connect(
        self,
        messages: list[ModelMessage],
        body: dict[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        engine = ChatEngine(
            self._adapter,
            model=self._model,
            messages=messages,
            abort_event=abort_event,
            options=body,
            **self._engine_kwargs,
        )
        async for chunk in engine.chat():
            yield chunk


class ServerSentEventsConnection:
    """POSTs the conversation to an SSE endpoint and parses the chunk stream.

    The request body is ``{"messages": [...], "data": body}``.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    async def connect(
        self,
        messages: list[ModelMessage],
        body: dict[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        payload = {
            "messages": [model_message_to_dict(m) for m in messages],
            "data": body or {},
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            async with client.stream("POST", self._url, json=payload, headers=self._headers) as response:
                response.raise_for_status()

                async for line in response.aiter_lines():
                    if abort_event is not None and abort_event.is_set():
                        return
                    if not line.startswith("data: "):
                        continue
                    data = line[6:]  # Skip "data: " prefix
                    if data == "[DONE]":
                        return
                    yield parse_chunk(data)
