"""Test fixtures for chatloop."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import pytest

from chatloop.core.events import AIEventEmitter
from chatloop.llm.types import (
    ContentStreamChunk,
    DoneStreamChunk,
    ErrorInfo,
    ErrorStreamChunk,
    ModelMessage,
    StreamChunk,
    ThinkingStreamChunk,
    ToolCall,
    ToolCallFunction,
    ToolCallStreamChunk,
)
from chatloop.tools.decorator import Tool, tool_definition


def content(delta: str = "", full: str = "", id: str = "resp-1") -> ContentStreamChunk:
    return ContentStreamChunk(id=id, model="test-model", delta=delta, content=full, role="assistant")


def thinking(delta: str = "", full: str = "") -> ThinkingStreamChunk:
    return ThinkingStreamChunk(id="resp-1", model="test-model", delta=delta, content=full)


def tool_call(tool_call_id: str, name: str = "", arguments: str = "", index: int = 0) -> ToolCallStreamChunk:
    return ToolCallStreamChunk(
        id="resp-1",
        model="test-model",
        tool_call=ToolCall(id=tool_call_id, function=ToolCallFunction(name=name, arguments=arguments)),
        index=index,
    )


def done(finish_reason: str | None = "stop") -> DoneStreamChunk:
    return DoneStreamChunk(id="resp-1", model="test-model", finish_reason=finish_reason)


def error(message: str, code: str | None = None) -> ErrorStreamChunk:
    return ErrorStreamChunk(id="resp-1", model="test-model", error=ErrorInfo(message=message, code=code))


async def stream_of(chunks: Sequence[StreamChunk]) -> AsyncIterator[StreamChunk]:
    for chunk in chunks:
        yield chunk


async def collect(stream: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in stream]


class MockChatAdapter:
    """Scripted adapter: each call to chat_stream replays the next turn.

    The last turn repeats once the script is exhausted.
    """

    name = "mock"

    def __init__(self, turns: list[list[StreamChunk]] | None = None, raise_after: int | None = None):
        self._turns = turns or [[content("Mock response"), done("stop")]]
        self._raise_after = raise_after
        self.calls: list[dict] = []
        self.closed = 0

    async def chat_stream(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        tools: Sequence[Tool] | None = None,
        options: dict[str, Any] | None = None,
        provider_options: dict[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append({
            "model": model,
            "messages": list(messages),
            "tools": list(tools or []),
            "options": options,
            "provider_options": provider_options,
        })
        turn = self._turns[min(len(self.calls) - 1, len(self._turns) - 1)]
        try:
            for i, chunk in enumerate(turn):
                if self._raise_after is not None and i == self._raise_after:
                    raise RuntimeError("adapter exploded")
                if abort_event is not None and abort_event.is_set():
                    return
                yield chunk
                await asyncio.sleep(0)
        finally:
            self.closed += 1


class RecordingEventEmitter(AIEventEmitter):
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def _emit(self, event_name: str, data: dict[str, Any]) -> None:
        self.events.append((event_name, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event_name: str) -> list[dict]:
        return [data for name, data in self.events if name == event_name]


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def events():
    return RecordingEventEmitter()


@pytest.fixture
def temperature_calls():
    return []


@pytest.fixture
def weather_tool(temperature_calls):
    calls = temperature_calls

    def get_temperature(args: dict) -> str:
        calls.append(args)
        return "70"

    t = tool_definition(
        "get_temperature",
        "Get the current temperature for a city",
        {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
    ).server(get_temperature)
    return t
