"""Stream processor: folds a chunk stream into the UI transcript.

The processor owns the conversation as a tuple of ``UIMessage`` objects and
is the single source of truth for it. Per streamed assistant message it
tracks:

- text, split into segments whenever tool calls interrupt it
- parallel tool calls keyed by ID, with their lifecycle state
- tool results and approval requests
- thinking content

Tool call completion is detected when text content follows the call, when
a ``done`` chunk arrives, or when the stream is finalized.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, Sequence

from chatloop.errors import StreamChunkError
from chatloop.llm.types import (
    ApprovalRequestedStreamChunk,
    ContentStreamChunk,
    DoneStreamChunk,
    ErrorStreamChunk,
    ModelMessage,
    StreamChunk,
    ThinkingStreamChunk,
    ToolCall,
    ToolCallFunction,
    ToolCallStreamChunk,
    ToolInputAvailableStreamChunk,
    ToolResultStreamChunk,
    now_ms,
)
from chatloop.stream import message_updaters as updaters
from chatloop.stream.converters import generate_message_id, ui_message_to_model_messages
from chatloop.stream.json_parser import JSONParser, default_json_parser
from chatloop.stream.strategies import ImmediateStrategy
from chatloop.stream.types import (
    ChunkRecording,
    ChunkStrategy,
    InternalToolCallState,
    ProcessorResult,
    ProcessorState,
    TextPart,
    ToolCallPart,
    ToolCallState,
    ToolResultPart,
    ToolResultState,
    UIMessage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallRequest:
    """A client tool whose input is ready to be executed by the caller."""

    tool_call_id: str
    tool_name: str
    input: Any


@dataclass(frozen=True)
class ApprovalRequestEvent:
    tool_call_id: str
    tool_name: str
    input: Any
    approval_id: str


@dataclass
class StreamProcessorEvents:
    """Optional callbacks fired by the processor.

    ``on_messages_change`` receives the full message tuple on every change;
    the remaining callbacks are granular notifications.
    """

    on_messages_change: Callable[[tuple[UIMessage, ...]], None] | None = None
    on_stream_start: Callable[[], None] | None = None
    on_stream_end: Callable[[UIMessage], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_tool_call: Callable[[ToolCallRequest], None] | None = None
    on_approval_request: Callable[[ApprovalRequestEvent], None] | None = None
    on_text_update: Callable[[str, str], None] | None = None
    on_tool_call_state_change: Callable[[str, str, ToolCallState, str], None] | None = None
    on_thinking_update: Callable[[str, str], None] | None = None


def _merge_text(current: str, delta: str, content: str) -> str:
    """Next accumulated text for a chunk carrying a delta and/or full content."""
    if delta:
        return current + delta
    if content:
        if content.startswith(current):
            return content
        if current.startswith(content):
            return current
        # Neither extends the other; keep both rather than drop data
        return current + content
    return current


class StreamProcessor:
    """State machine turning model chunks into ``UIMessage`` updates."""

    def __init__(
        self,
        chunk_strategy: ChunkStrategy | None = None,
        events: StreamProcessorEvents | None = None,
        json_parser: JSONParser | None = None,
        recording: bool = False,
        initial_messages: Sequence[UIMessage] | None = None,
    ):
        self._chunk_strategy = chunk_strategy or ImmediateStrategy()
        self._events = events or StreamProcessorEvents()
        self._json_parser = json_parser or default_json_parser
        self._recording_enabled = recording
        self._recording: ChunkRecording | None = None

        self._messages: tuple[UIMessage, ...] = tuple(initial_messages or ())
        self._current_message_id: str | None = None
        # tool call id -> owning message id
        self._tool_call_owner: dict[str, str] = {}

        self._reset_stream_state()

    # -- message management -------------------------------------------------

    @property
    def messages(self) -> tuple[UIMessage, ...]:
        return self._messages

    @property
    def current_message_id(self) -> str | None:
        return self._current_message_id

    def set_messages(self, messages: Sequence[UIMessage]) -> None:
        """Replace the conversation, e.g. from persisted state."""
        self._messages = tuple(messages)
        self._tool_call_owner.clear()
        self._emit_messages_change()

    def add_user_message(self, content: str) -> UIMessage:
        message = UIMessage(id=generate_message_id(), role="user", parts=(TextPart(content),))
        self._messages = (*self._messages, message)
        self._emit_messages_change()
        return message

    def start_assistant_message(self) -> str:
        """Append an empty assistant message and make it the stream target."""
        self._reset_stream_state()

        message = UIMessage(id=generate_message_id(), role="assistant")
        self._current_message_id = message.id
        self._messages = (*self._messages, message)

        if self._events.on_stream_start:
            self._events.on_stream_start()
        self._emit_messages_change()
        return message.id

    def add_tool_result(self, tool_call_id: str, output: Any, error: str | None = None) -> None:
        """Attach a client-side result to its tool call.

        Sets the tool-call part's output and appends (or replaces) the
        matching tool-result part on the owning message.
        """
        owner_id = self._find_tool_call_owner(tool_call_id)
        if owner_id is None:
            logger.warning("No message contains tool call %s", tool_call_id)
            return
        owner_id = self._find_tool_result_owner(tool_call_id) or owner_id

        messages = updaters.update_tool_call_with_output(
            self._messages,
            tool_call_id,
            output,
            ToolCallState.INPUT_COMPLETE if error else None,
            error,
        )
        content = output if isinstance(output, str) else json.dumps(output, default=str)
        messages = updaters.update_tool_result_part(
            messages,
            owner_id,
            tool_call_id,
            content,
            ToolResultState.ERROR if error else ToolResultState.COMPLETE,
            error,
        )
        self._messages = messages
        self._emit_messages_change()

    def add_tool_approval_response(self, approval_id: str, approved: bool) -> None:
        self._messages = updaters.update_tool_call_approval_response(
            self._messages, approval_id, approved
        )
        self._emit_messages_change()

    def to_model_messages(self) -> list[ModelMessage]:
        """The conversation encoded for the next model call."""
        result: list[ModelMessage] = []
        for message in self._messages:
            result.extend(ui_message_to_model_messages(message))
        return result

    def are_all_tools_complete(self) -> bool:
        """True when the last assistant message has no unresolved tool calls."""
        last_assistant = next(
            (m for m in reversed(self._messages) if m.role == "assistant"), None
        )
        if last_assistant is None:
            return True
        resolved = {p.tool_call_id for p in last_assistant.parts if isinstance(p, ToolResultPart)}
        return all(
            part.state == ToolCallState.APPROVAL_RESPONDED
            or (part.approval is None and (part.output is not None or part.id in resolved))
            for part in last_assistant.tool_call_parts()
        )

    def remove_messages_after(self, index: int) -> None:
        self._messages = self._messages[: index + 1]
        self._emit_messages_change()

    def clear_messages(self) -> None:
        self._messages = ()
        self._current_message_id = None
        self._tool_call_owner.clear()
        self._emit_messages_change()

    # -- stream processing --------------------------------------------------

    async def process(self, stream: AsyncIterable[StreamChunk]) -> ProcessorResult:
        """Consume ``stream`` to the end and return the accumulated result."""
        self._reset_stream_state()
        if self._recording_enabled:
            self.start_recording()

        async for chunk in stream:
            self.process_chunk(chunk)

        self.finalize_stream()

        result = self.get_result()
        if self._recording is not None:
            self._recording.result = result
        return result

    def process_chunk(self, chunk: StreamChunk) -> None:
        if self._recording is not None:
            self._recording.add(chunk)

        if isinstance(chunk, ContentStreamChunk):
            self._handle_content(chunk)
        elif isinstance(chunk, ToolCallStreamChunk):
            self._handle_tool_call(chunk)
        elif isinstance(chunk, ToolResultStreamChunk):
            self._handle_tool_result(chunk)
        elif isinstance(chunk, DoneStreamChunk):
            self._handle_done(chunk)
        elif isinstance(chunk, ErrorStreamChunk):
            self._handle_error(chunk)
        elif isinstance(chunk, ThinkingStreamChunk):
            self._handle_thinking(chunk)
        elif isinstance(chunk, ApprovalRequestedStreamChunk):
            self._handle_approval_requested(chunk)
        elif isinstance(chunk, ToolInputAvailableStreamChunk):
            self._handle_tool_input_available(chunk)
        else:
            logger.debug("Ignoring unknown chunk %r", chunk)

    def finalize_stream(self) -> None:
        """Complete open tool calls, flush pending text and signal the end."""
        self._complete_all_tool_calls()

        if self._segment_text != self._last_emitted_text:
            self._emit_text_update()

        if self._current_message_id and self._events.on_stream_end:
            message = self._find_message(self._current_message_id)
            if message is not None:
                self._events.on_stream_end(message)

    def get_result(self) -> ProcessorResult:
        tool_calls = self._completed_tool_calls()
        return ProcessorResult(
            content=self._total_text,
            thinking=self._thinking or None,
            tool_calls=tool_calls or None,
            finish_reason=self._finish_reason,
        )

    def get_state(self) -> ProcessorState:
        return ProcessorState(
            content=self._total_text,
            thinking=self._thinking,
            tool_calls=dict(self._tool_calls),
            tool_call_order=list(self._tool_call_order),
            finish_reason=self._finish_reason,
            done=self._is_done,
        )

    # -- recording ----------------------------------------------------------

    def start_recording(self) -> None:
        self._recording_enabled = True
        self._recording = ChunkRecording(timestamp=now_ms())

    @property
    def recording(self) -> ChunkRecording | None:
        return self._recording

    def reset(self) -> None:
        """Reset stream state and drop all messages."""
        self._reset_stream_state()
        self._messages = ()
        self._current_message_id = None
        self._tool_call_owner.clear()

    @classmethod
    async def replay(cls, recording: ChunkRecording, **options: Any) -> ProcessorResult:
        """Feed a recording through a fresh processor."""
        processor = cls(**options)
        return await processor.process(create_replay_stream(recording))

    # -- chunk handlers -----------------------------------------------------

    def _handle_content(self, chunk: ContentStreamChunk) -> None:
        # Text after a tool call means its arguments are complete
        self._complete_all_tool_calls()

        previous = self._segment_text
        if self._tool_calls_since_text_start and previous and self._is_new_segment(chunk, previous):
            if previous != self._last_emitted_text:
                self._emit_text_update()
            self._segment_text = ""
            self._last_emitted_text = ""
            self._tool_calls_since_text_start = False

        current = self._segment_text
        next_text = _merge_text(current, chunk.delta, chunk.content)
        self._total_text += next_text[len(current):]
        self._segment_text = next_text

        portion = chunk.delta or chunk.content
        if (
            self._chunk_strategy.should_emit(portion, self._segment_text)
            and self._segment_text != self._last_emitted_text
        ):
            self._emit_text_update()

    @staticmethod
    def _is_new_segment(chunk: ContentStreamChunk, previous: str) -> bool:
        """Whether the adapter restarted its ``content`` field after a tool call.

        A heuristic: content that is shorter than the current segment, or that
        neither extends nor is extended by it, starts a new segment. Adapters
        that reset ``content`` and then send a shorter continuation can be
        misclassified.
        """
        content = chunk.content
        if len(content) < len(previous):
            return True
        return not content.startswith(previous) and not previous.startswith(content)

    def _handle_tool_call(self, chunk: ToolCallStreamChunk) -> None:
        self._tool_calls_since_text_start = True

        fragment = chunk.tool_call
        tool_call_id = fragment.id or self._index_to_id.get(chunk.index)
        if not tool_call_id:
            logger.warning("Dropping tool call fragment with unknown index %d", chunk.index)
            return

        args = fragment.function.arguments
        existing = self._tool_calls.get(tool_call_id)
        if existing is None:
            existing = InternalToolCallState(
                id=tool_call_id,
                name=fragment.function.name,
                arguments=args,
                state=ToolCallState.INPUT_STREAMING if args else ToolCallState.AWAITING_INPUT,
                parsed_arguments=self._json_parser.parse(args) if args else None,
                index=chunk.index,
            )
            self._tool_calls[tool_call_id] = existing
            self._tool_call_order.append(tool_call_id)
            self._index_to_id[chunk.index] = tool_call_id
        else:
            existing.arguments += args
            if args and existing.state == ToolCallState.AWAITING_INPUT:
                existing.state = ToolCallState.INPUT_STREAMING
            if not existing.name and fragment.function.name:
                existing.name = fragment.function.name
            existing.parsed_arguments = self._json_parser.parse(existing.arguments)

        self._write_tool_call_part(existing)

    def _handle_tool_result(self, chunk: ToolResultStreamChunk) -> None:
        if self._current_message_id is None:
            return
        # A result already in the history is replaced where it is
        owner_id = self._find_tool_result_owner(chunk.tool_call_id) or self._current_message_id
        self._messages = updaters.update_tool_result_part(
            self._messages,
            owner_id,
            chunk.tool_call_id,
            chunk.content,
            ToolResultState.COMPLETE,
        )
        self._emit_messages_change()

    def _handle_done(self, chunk: DoneStreamChunk) -> None:
        self._finish_reason = chunk.finish_reason
        self._is_done = True
        self._complete_all_tool_calls()

    def _handle_error(self, chunk: ErrorStreamChunk) -> None:
        if self._events.on_error:
            self._events.on_error(StreamChunkError(chunk.error.message, chunk.error.code))

    def _handle_thinking(self, chunk: ThinkingStreamChunk) -> None:
        self._thinking = _merge_text(self._thinking, chunk.delta, chunk.content)

        if self._current_message_id is None:
            return
        self._messages = updaters.update_thinking_part(
            self._messages, self._current_message_id, self._thinking
        )
        self._emit_messages_change()
        if self._events.on_thinking_update:
            self._events.on_thinking_update(self._current_message_id, self._thinking)

    def _handle_approval_requested(self, chunk: ApprovalRequestedStreamChunk) -> None:
        owner_id = self._find_tool_call_owner(chunk.tool_call_id) or self._current_message_id
        if owner_id is not None:
            self._messages = updaters.update_tool_call_approval(
                self._messages, owner_id, chunk.tool_call_id, chunk.approval.id
            )
            self._emit_messages_change()

        if self._events.on_approval_request:
            self._events.on_approval_request(
                ApprovalRequestEvent(
                    tool_call_id=chunk.tool_call_id,
                    tool_name=chunk.tool_name,
                    input=chunk.input,
                    approval_id=chunk.approval.id,
                )
            )

    def _handle_tool_input_available(self, chunk: ToolInputAvailableStreamChunk) -> None:
        if self._events.on_tool_call:
            self._events.on_tool_call(
                ToolCallRequest(
                    tool_call_id=chunk.tool_call_id,
                    tool_name=chunk.tool_name,
                    input=chunk.input,
                )
            )

    # -- internals ----------------------------------------------------------

    def _complete_all_tool_calls(self) -> None:
        for tool_call in self._tool_calls.values():
            if tool_call.state != ToolCallState.INPUT_COMPLETE:
                tool_call.state = ToolCallState.INPUT_COMPLETE
                tool_call.parsed_arguments = self._json_parser.parse(tool_call.arguments)
                self._write_tool_call_part(tool_call)

    def _write_tool_call_part(self, tool_call: InternalToolCallState) -> None:
        message_id = self._current_message_id
        if message_id is None:
            return
        self._messages = updaters.update_tool_call_part(
            self._messages,
            message_id,
            tool_call.id,
            tool_call.name,
            tool_call.arguments,
            tool_call.state,
            tool_call.parsed_arguments,
        )
        self._tool_call_owner[tool_call.id] = message_id
        self._emit_messages_change()
        if self._events.on_tool_call_state_change:
            self._events.on_tool_call_state_change(
                message_id, tool_call.id, tool_call.state, tool_call.arguments
            )

    def _emit_text_update(self) -> None:
        self._last_emitted_text = self._segment_text
        if self._current_message_id is None:
            return
        self._messages = updaters.update_text_part(
            self._messages, self._current_message_id, self._segment_text
        )
        self._emit_messages_change()
        if self._events.on_text_update:
            self._events.on_text_update(self._current_message_id, self._segment_text)

    def _emit_messages_change(self) -> None:
        if self._events.on_messages_change:
            self._events.on_messages_change(self._messages)

    def _completed_tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=tc.id, function=ToolCallFunction(name=tc.name, arguments=tc.arguments))
            for tc in self._tool_calls.values()
            if tc.state == ToolCallState.INPUT_COMPLETE
        ]

    def _find_message(self, message_id: str) -> UIMessage | None:
        return next((m for m in self._messages if m.id == message_id), None)

    def _find_tool_call_owner(self, tool_call_id: str) -> str | None:
        owner_id = self._tool_call_owner.get(tool_call_id)
        if owner_id is not None and self._find_message(owner_id) is not None:
            return owner_id
        for message in self._messages:
            if any(isinstance(p, ToolCallPart) and p.id == tool_call_id for p in message.parts):
                self._tool_call_owner[tool_call_id] = message.id
                return message.id
        return None

    def _find_tool_result_owner(self, tool_call_id: str) -> str | None:
        for message in self._messages:
            if any(isinstance(p, ToolResultPart) and p.tool_call_id == tool_call_id for p in message.parts):
                return message.id
        return None

    def _reset_stream_state(self) -> None:
        """Reset per-stream accumulators; messages are kept."""
        self._total_text = ""
        self._segment_text = ""
        self._last_emitted_text = ""
        self._thinking = ""
        self._tool_calls: dict[str, InternalToolCallState] = {}
        self._tool_call_order: list[str] = []
        self._index_to_id: dict[int, str] = {}
        self._finish_reason: str | None = None
        self._is_done = False
        self._tool_calls_since_text_start = False
        reset = getattr(self._chunk_strategy, "reset", None)
        if reset is not None:
            reset()


async def create_replay_stream(recording: ChunkRecording) -> AsyncIterator[StreamChunk]:
    """Yield the recorded chunks in order."""
    for recorded in recording.chunks:
        yield recorded.chunk
