"""Wire types shared between model adapters, the engine and the processor."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

FinishReason = Literal["stop", "length", "tool_calls", "content_filter"]


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ToolCallFunction(WireModel):
    name: str = ""
    arguments: str = ""  # JSON string, possibly incomplete mid-stream


class ToolCall(WireModel):
    id: str
    type: Literal["function"] = "function"
    function: ToolCallFunction = Field(default_factory=ToolCallFunction)

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> str:
        return self.function.arguments


class Usage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ApprovalInfo(WireModel):
    id: str
    needs_approval: Literal[True] = True


class ErrorInfo(WireModel):
    message: str
    code: str | None = None


class BaseStreamChunk(WireModel):
    id: str = ""
    model: str = ""
    timestamp: int = Field(default_factory=now_ms)


class ContentStreamChunk(BaseStreamChunk):
    type: Literal["content"] = "content"
    delta: str = ""
    content: str = ""
    role: Literal["assistant"] | None = None


class ThinkingStreamChunk(BaseStreamChunk):
    type: Literal["thinking"] = "thinking"
    delta: str = ""
    content: str = ""


class ToolCallStreamChunk(BaseStreamChunk):
    type: Literal["tool_call"] = "tool_call"
    tool_call: ToolCall
    index: int = 0


class ToolResultStreamChunk(BaseStreamChunk):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    content: str


class ToolInputAvailableStreamChunk(BaseStreamChunk):
    type: Literal["tool-input-available"] = "tool-input-available"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ApprovalRequestedStreamChunk(BaseStreamChunk):
    type: Literal["approval-requested"] = "approval-requested"
    tool_call_id: str
    tool_name: str
    input: Any = None
    approval: ApprovalInfo


class ErrorStreamChunk(BaseStreamChunk):
    type: Literal["error"] = "error"
    error: ErrorInfo


class DoneStreamChunk(BaseStreamChunk):
    type: Literal["done"] = "done"
    finish_reason: FinishReason | None = None
    usage: Usage | None = None


StreamChunk = Annotated[
    Union[
        ContentStreamChunk,
        ThinkingStreamChunk,
        ToolCallStreamChunk,
        ToolResultStreamChunk,
        ToolInputAvailableStreamChunk,
        ApprovalRequestedStreamChunk,
        ErrorStreamChunk,
        DoneStreamChunk,
    ],
    Field(discriminator="type"),
]

_chunk_adapter: TypeAdapter[StreamChunk] = TypeAdapter(StreamChunk)


def parse_chunk(data: dict[str, Any] | str | bytes) -> StreamChunk:
    """Build the matching chunk variant from a dict or a JSON document."""
    if isinstance(data, (str, bytes)):
        return _chunk_adapter.validate_json(data)
    return _chunk_adapter.validate_python(data)


@dataclass
class ModelMessage:
    """A message in the provider-facing conversation history.

    ``parts`` is only set on assistant messages converted from the UI
    transcript; it carries approval decisions and client tool outputs back
    to the engine.
    """

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    parts: list[Any] | None = None
