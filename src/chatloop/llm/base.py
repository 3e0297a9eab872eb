"""Model adapter interface."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Protocol, Sequence

from chatloop.llm.types import ModelMessage, StreamChunk
from chatloop.tools.decorator import Tool


class ChatAdapter(Protocol):
    """Protocol that all model adapters must implement.

    An adapter streams one model turn as ``StreamChunk`` objects and ends it
    with exactly one ``done`` or ``error`` chunk. When ``abort_event`` is set
    the stream should end promptly.
    """

    name: str

    def chat_stream(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        tools: Sequence[Tool] | None = None,
        options: dict[str, Any] | None = None,
        provider_options: dict[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]: ...
