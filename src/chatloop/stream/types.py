"""Transcript types produced by the stream processor."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Protocol, Union

from pydantic import ConfigDict, ValidationError

from chatloop.errors import RecordingError
from chatloop.llm.types import StreamChunk, ToolCall, WireModel, now_ms


class ToolCallState(str, Enum):
    """Lifecycle of a tool call part. Members are declared in lifecycle order."""

    AWAITING_INPUT = "awaiting-input"  # started, no arguments yet
    INPUT_STREAMING = "input-streaming"  # partial arguments received
    INPUT_COMPLETE = "input-complete"  # all arguments received
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RESPONDED = "approval-responded"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = list(ToolCallState)


def advance_state(current: ToolCallState, new: ToolCallState) -> ToolCallState:
    """Return ``new`` unless it would move the part backwards."""
    return new if new.rank >= current.rank else current


class ToolResultState(str, Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class TextPart:
    content: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ThinkingPart:
    content: str
    type: Literal["thinking"] = field(default="thinking", init=False)


@dataclass(frozen=True)
class ToolApproval:
    id: str
    needs_approval: bool = True
    approved: bool | None = None


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    arguments: str = ""
    state: ToolCallState = ToolCallState.AWAITING_INPUT
    parsed_arguments: Any = None
    output: Any = None  # None means no output yet
    approval: ToolApproval | None = None
    type: Literal["tool-call"] = field(default="tool-call", init=False)


@dataclass(frozen=True)
class ToolResultPart:
    tool_call_id: str
    content: str
    state: ToolResultState = ToolResultState.COMPLETE
    error: str | None = None
    type: Literal["tool-result"] = field(default="tool-result", init=False)


MessagePart = Union[TextPart, ThinkingPart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class UIMessage:
    """One transcript message. Replaced wholesale, never edited in place."""

    id: str
    role: str  # "system", "user", "assistant"
    parts: tuple[MessagePart, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def tool_call_parts(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]


@dataclass
class InternalToolCallState:
    """Mutable per-turn bookkeeping for one streamed tool call."""

    id: str
    name: str
    arguments: str
    state: ToolCallState
    parsed_arguments: Any = None
    index: int = 0


@dataclass
class ProcessorState:
    content: str
    thinking: str
    tool_calls: dict[str, InternalToolCallState]
    tool_call_order: list[str]
    finish_reason: str | None
    done: bool


class ChunkStrategy(Protocol):
    """Decides when accumulated text is surfaced as an update.

    Implementations may also define ``reset()``; it is called whenever a new
    stream starts.
    """

    def should_emit(self, chunk: str, accumulated: str) -> bool: ...


class ProcessorResult(WireModel):
    content: str = ""
    thinking: str | None = None
    tool_calls: list[ToolCall] | None = None
    finish_reason: str | None = None


class RecordedChunk(WireModel):
    chunk: StreamChunk
    timestamp: int
    index: int


class ChunkRecording(WireModel):
    """Ordered capture of every chunk seen in one turn."""

    model_config = ConfigDict(frozen=False)

    version: Literal["1.0"] = "1.0"
    timestamp: int = 0
    model: str | None = None
    provider: str | None = None
    chunks: list[RecordedChunk] = []
    result: ProcessorResult | None = None

    def add(self, chunk: StreamChunk) -> None:
        self.chunks.append(
            RecordedChunk(chunk=chunk, timestamp=now_ms(), index=len(self.chunks))
        )

    @classmethod
    def load(cls, path: Path) -> ChunkRecording:
        """Load a recording from a JSON file."""
        try:
            with open(path) as f:
                data = json.load(f)
            return cls.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise RecordingError(f"Cannot load recording {path}: {e}") from e

    def save(self, path: Path) -> None:
        with open(path, "w") as f:
            f.write(self.model_dump_json(by_alias=True, exclude_none=True, indent=2))
