"""Chat engine: the multi-turn agent loop.

Each cycle has two phases:

1. ``process_chat`` streams one model turn, forwarding every chunk to the
   caller and accumulating tool calls and the finish reason.
2. ``execute_tool_calls`` runs the turn's tool calls when the model finished
   with ``tool_calls``, appends the results to the history and loops back.

If a tool needs approval or client execution the engine emits the matching
chunks and stops; the caller resumes by calling the engine again with the
decision or result in the message history. Calls left unresolved in the
history are handled before the model is invoked again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Iterable, Literal, Mapping, Sequence

from chatloop.core.config import Settings
from chatloop.core.events import AIEventEmitter, LoggingEventEmitter
from chatloop.core.executor import (
    ApprovalRequest,
    ClientToolRequest,
    ToolResult,
    execute_tool_calls,
)
from chatloop.core.loop_strategies import AgentLoopState, AgentLoopStrategy, max_iterations
from chatloop.core.tool_call_manager import ToolCallManager
from chatloop.core.tool_registry import ToolRegistry
from chatloop.llm.base import ChatAdapter
from chatloop.llm.types import (
    ApprovalInfo,
    ApprovalRequestedStreamChunk,
    ContentStreamChunk,
    DoneStreamChunk,
    ErrorStreamChunk,
    ModelMessage,
    StreamChunk,
    ToolCall,
    ToolCallStreamChunk,
    ToolInputAvailableStreamChunk,
    ToolResultStreamChunk,
    Usage,
)
from chatloop.stream.converters import generate_message_id
from chatloop.stream.types import ToolCallPart, ToolCallState
from chatloop.tools.decorator import Tool

logger = logging.getLogger(__name__)

ToolPhase = Literal["continue", "stop", "wait"]
CyclePhase = Literal["process_chat", "execute_tool_calls"]


def prepend_system_prompts(
    messages: Sequence[ModelMessage],
    system_prompts: Sequence[str] | None = None,
) -> list[ModelMessage]:
    """Return ``messages`` with one system message per prompt in front."""
    if not system_prompts:
        return list(messages)
    return [ModelMessage(role="system", content=p) for p in system_prompts] + list(messages)


class ChatEngine:
    """Drives model turns and tool execution until the loop strategy stops it.

    ``chat()`` is an async generator of ``StreamChunk``; the engine is single
    use. Setting ``abort_event`` stops the loop at the next chunk or
    iteration boundary without emitting ``stream:ended``.
    """

    def __init__(
        self,
        adapter: ChatAdapter,
        *,
        model: str,
        messages: Sequence[ModelMessage],
        tools: ToolRegistry | Iterable[Tool] | None = None,
        system_prompts: Sequence[str] | None = None,
        agent_loop_strategy: AgentLoopStrategy | None = None,
        events: AIEventEmitter | None = None,
        abort_event: asyncio.Event | None = None,
        options: dict[str, Any] | None = None,
        provider_options: dict[str, Any] | None = None,
        approvals: Mapping[str, bool] | None = None,
        client_results: Mapping[str, Any] | None = None,
        settings: Settings | None = None,
    ):
        self._adapter = adapter
        self._model = model
        self._tools = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools or ())
        if agent_loop_strategy is None:
            settings = settings or Settings()
            agent_loop_strategy = max_iterations(settings.engine.max_iterations)
        self._loop_strategy = agent_loop_strategy
        self._events = events or LoggingEventEmitter()
        self._abort_event = abort_event
        self._options = options or {}
        self._provider_options = provider_options or {}
        self._approvals = dict(approvals or {})
        self._client_results = dict(client_results or {})

        self._tool_call_manager = ToolCallManager()
        self._initial_message_count = len(messages)
        self._messages = prepend_system_prompts(messages, system_prompts)
        self._request_id = generate_message_id("chat")
        self._stream_id = generate_message_id("stream")

        self._iteration_count = 0
        self._last_finish_reason: str | None = None
        self._stream_start = 0.0
        self._total_chunk_count = 0
        self._current_message_id: str | None = None
        self._accumulated_content = ""
        self._done_chunk: DoneStreamChunk | None = None
        self._last_usage: Usage | None = None
        self._should_emit_stream_end = True
        self._early_termination = False
        self._tool_phase: ToolPhase = "continue"
        self._cycle_phase: CyclePhase = "process_chat"

    @property
    def messages(self) -> tuple[ModelMessage, ...]:
        """The model history as it stands, including appended tool traffic."""
        return tuple(self._messages)

    @property
    def iteration_count(self) -> int:
        return self._iteration_count

    async def chat(self) -> AsyncIterator[StreamChunk]:
        self._before_chat()
        try:
            for chunk in await self._check_for_pending_tool_calls():
                yield chunk
            if self._tool_phase == "wait":
                return

            while True:
                if self._early_termination:
                    return
                if self._is_aborted():
                    self._should_emit_stream_end = False
                    return

                self._begin_cycle()
                if self._cycle_phase == "process_chat":
                    async with aclosing(self._stream_model_response()) as stream:
                        async for chunk in stream:
                            yield chunk
                else:
                    for chunk in await self._process_tool_calls():
                        yield chunk
                self._end_cycle()

                if not self._should_continue():
                    break
        except BaseException:
            # Cancelled or failed runs must not look finished to the caller
            self._should_emit_stream_end = False
            raise
        finally:
            self._after_chat()

    # -- lifecycle ----------------------------------------------------------

    def _before_chat(self) -> None:
        self._stream_start = time.monotonic()
        self._events.chat_started(
            request_id=self._request_id,
            model=self._model,
            message_count=self._initial_message_count,
            has_tools=len(self._tools) > 0,
            streaming=True,
        )
        self._events.stream_started(
            stream_id=self._stream_id,
            model=self._model,
            provider=getattr(self._adapter, "name", type(self._adapter).__name__),
        )

    def _after_chat(self) -> None:
        if not self._should_emit_stream_end or self._is_aborted():
            return
        self._events.stream_ended(
            stream_id=self._stream_id,
            total_chunks=self._total_chunk_count,
            duration=time.monotonic() - self._stream_start,
        )
        self._events.chat_completed(
            request_id=self._request_id,
            model=self._model,
            content=self._accumulated_content,
            finish_reason=self._last_finish_reason,
            usage=self._last_usage,
        )

    def _begin_cycle(self) -> None:
        if self._cycle_phase == "process_chat":
            self._current_message_id = generate_message_id()
            self._accumulated_content = ""
            self._done_chunk = None

    def _end_cycle(self) -> None:
        if self._cycle_phase == "process_chat":
            self._cycle_phase = "execute_tool_calls"
            return
        self._cycle_phase = "process_chat"
        self._iteration_count += 1

    def _should_continue(self) -> bool:
        # The model always gets to see fresh tool results
        if self._cycle_phase == "execute_tool_calls":
            return True
        state = AgentLoopState(
            iteration_count=self._iteration_count,
            messages=tuple(self._messages),
            finish_reason=self._last_finish_reason,
        )
        return self._loop_strategy(state) and self._tool_phase == "continue"

    def _is_aborted(self) -> bool:
        return self._abort_event is not None and self._abort_event.is_set()

    def _set_tool_phase(self, phase: ToolPhase) -> None:
        self._tool_phase = phase
        if phase == "wait":
            self._should_emit_stream_end = False

    # -- model turn ---------------------------------------------------------

    async def _stream_model_response(self) -> AsyncIterator[StreamChunk]:
        stream = self._adapter.chat_stream(
            model=self._model,
            messages=list(self._messages),
            tools=list(self._tools) or None,
            options=self._options,
            provider_options=self._provider_options,
            abort_event=self._abort_event,
        )
        try:
            async for chunk in stream:
                if self._is_aborted():
                    break
                self._total_chunk_count += 1
                yield chunk
                self._handle_stream_chunk(chunk)
                if self._early_termination:
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _handle_stream_chunk(self, chunk: StreamChunk) -> None:
        if isinstance(chunk, ContentStreamChunk):
            self._accumulated_content = chunk.content or self._accumulated_content + chunk.delta
            self._events.stream_chunk_content(
                stream_id=self._stream_id,
                message_id=self._current_message_id,
                content=chunk.content,
                delta=chunk.delta,
            )
        elif isinstance(chunk, ToolCallStreamChunk):
            self._tool_call_manager.add_tool_call_chunk(chunk)
            self._events.stream_chunk_tool_call(
                stream_id=self._stream_id,
                message_id=self._current_message_id,
                tool_call_id=chunk.tool_call.id,
                tool_name=chunk.tool_call.name,
                index=chunk.index,
                arguments=chunk.tool_call.arguments,
            )
        elif isinstance(chunk, ToolResultStreamChunk):
            self._events.stream_chunk_tool_result(
                stream_id=self._stream_id,
                message_id=self._current_message_id,
                tool_call_id=chunk.tool_call_id,
                result=chunk.content,
            )
        elif isinstance(chunk, DoneStreamChunk):
            self._handle_done_chunk(chunk)
        elif isinstance(chunk, ErrorStreamChunk):
            logger.error("Adapter reported an error: %s", chunk.error.message)
            self._events.stream_chunk_error(
                stream_id=self._stream_id,
                message_id=self._current_message_id,
                error=chunk.error.message,
            )
            self._early_termination = True
            self._should_emit_stream_end = False

    def _handle_done_chunk(self, chunk: DoneStreamChunk) -> None:
        self._last_finish_reason = chunk.finish_reason
        # Some adapters send a trailing "stop" after "tool_calls"; keep the tool_calls decision
        if not (
            self._done_chunk is not None
            and self._done_chunk.finish_reason == "tool_calls"
            and chunk.finish_reason == "stop"
        ):
            self._done_chunk = chunk

        self._events.stream_chunk_done(
            stream_id=self._stream_id,
            message_id=self._current_message_id,
            finish_reason=chunk.finish_reason,
            usage=chunk.usage,
        )
        if chunk.usage is not None:
            self._last_usage = chunk.usage
            self._events.usage_tokens(request_id=self._request_id, model=self._model, usage=chunk.usage)

    # -- tool phase ---------------------------------------------------------

    def _should_execute_tool_phase(self) -> bool:
        return (
            self._done_chunk is not None
            and self._done_chunk.finish_reason == "tool_calls"
            and len(self._tools) > 0
            and self._tool_call_manager.has_tool_calls()
        )

    async def _process_tool_calls(self) -> list[StreamChunk]:
        if not self._should_execute_tool_phase():
            self._set_tool_phase("stop")
            return []

        tool_calls = self._tool_call_manager.get_tool_calls()
        done_chunk = self._done_chunk
        self._emit_iteration(len(tool_calls))
        self._messages.append(
            ModelMessage(
                role="assistant",
                content=self._accumulated_content or None,
                tool_calls=tool_calls,
            )
        )

        chunks, phase = await self._execute_batch(tool_calls, done_chunk)
        if phase == "continue":
            self._tool_call_manager.clear()
        self._set_tool_phase(phase)
        return chunks

    async def _check_for_pending_tool_calls(self) -> list[StreamChunk]:
        """Resolve tool calls in the history that have no tool message yet."""
        pending = self._pending_tool_calls()
        if not pending:
            return []

        logger.debug("Resuming with %d pending tool calls", len(pending))
        done_chunk = DoneStreamChunk(
            id=generate_message_id("pending"),
            model=self._model,
            finish_reason="tool_calls",
        )
        self._emit_iteration(len(pending))
        chunks, phase = await self._execute_batch(pending, done_chunk)
        if phase == "wait":
            self._set_tool_phase("wait")
        return chunks

    async def _execute_batch(
        self, tool_calls: list[ToolCall], done_chunk: DoneStreamChunk
    ) -> tuple[list[StreamChunk], ToolPhase]:
        approvals, client_results = self._collect_client_state()
        result = await execute_tool_calls(tool_calls, self._tools, approvals, client_results)

        names = {tc.id: tc.name for tc in tool_calls}
        # Results of tools that already ran are kept even when the batch waits
        chunks = self._tool_result_chunks(result.results, names, done_chunk)
        if result.needs_approval or result.needs_client_execution:
            chunks += self._approval_chunks(result.needs_approval, done_chunk)
            chunks += self._client_tool_chunks(result.needs_client_execution, done_chunk)
            return chunks, "wait"
        return chunks, "continue"

    def _emit_iteration(self, tool_call_count: int) -> None:
        self._events.chat_iteration(
            request_id=self._request_id,
            iteration_number=self._iteration_count + 1,
            message_count=len(self._messages),
            tool_call_count=tool_call_count,
        )

    def _collect_client_state(self) -> tuple[dict[str, bool], dict[str, Any]]:
        """Approval decisions and client results carried on assistant message parts."""
        approvals: dict[str, bool] = {}
        client_results: dict[str, Any] = {}

        for message in self._messages:
            if message.role != "assistant" or not message.parts:
                continue
            for part in message.parts:
                if not isinstance(part, ToolCallPart):
                    continue
                if (
                    part.state == ToolCallState.APPROVAL_RESPONDED
                    and part.approval is not None
                    and part.approval.approved is not None
                ):
                    approvals[part.approval.id] = part.approval.approved
                if part.output is not None and part.approval is None:
                    client_results[part.id] = part.output

        approvals.update(self._approvals)
        client_results.update(self._client_results)
        return approvals, client_results

    def _approval_chunks(
        self, requests: list[ApprovalRequest], done_chunk: DoneStreamChunk
    ) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        for req in requests:
            self._events.stream_approval_requested(
                stream_id=self._stream_id,
                message_id=self._current_message_id,
                tool_call_id=req.tool_call_id,
                tool_name=req.tool_name,
                input=req.input,
                approval_id=req.approval_id,
            )
            chunks.append(
                ApprovalRequestedStreamChunk(
                    id=done_chunk.id,
                    model=done_chunk.model,
                    tool_call_id=req.tool_call_id,
                    tool_name=req.tool_name,
                    input=req.input,
                    approval=ApprovalInfo(id=req.approval_id),
                )
            )
        return chunks

    def _client_tool_chunks(
        self, requests: list[ClientToolRequest], done_chunk: DoneStreamChunk
    ) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        for req in requests:
            self._events.stream_tool_input_available(
                stream_id=self._stream_id,
                tool_call_id=req.tool_call_id,
                tool_name=req.tool_name,
                input=req.input,
            )
            chunks.append(
                ToolInputAvailableStreamChunk(
                    id=done_chunk.id,
                    model=done_chunk.model,
                    tool_call_id=req.tool_call_id,
                    tool_name=req.tool_name,
                    input=req.input,
                )
            )
        return chunks

    def _tool_result_chunks(
        self, results: list[ToolResult], names: dict[str, str], done_chunk: DoneStreamChunk
    ) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        for result in results:
            self._events.tool_call_completed(
                stream_id=self._stream_id,
                tool_call_id=result.tool_call_id,
                tool_name=names.get(result.tool_call_id, ""),
                result=result.result,
                duration=0,
            )
            content = json.dumps(result.result, default=str)
            chunks.append(
                ToolResultStreamChunk(
                    id=done_chunk.id,
                    model=done_chunk.model,
                    tool_call_id=result.tool_call_id,
                    content=content,
                )
            )
            self._messages.append(
                ModelMessage(role="tool", content=content, tool_call_id=result.tool_call_id)
            )
        return chunks

    def _pending_tool_calls(self) -> list[ToolCall]:
        completed = {
            m.tool_call_id for m in self._messages if m.role == "tool" and m.tool_call_id
        }
        return [
            tc
            for m in self._messages
            if m.role == "assistant" and m.tool_calls
            for tc in m.tool_calls
            if tc.id not in completed
        ]


def chat(adapter: ChatAdapter, **kwargs: Any) -> AsyncIterator[StreamChunk]:
    """Run a ``ChatEngine`` and return its chunk stream."""
    return ChatEngine(adapter, **kwargs).chat()
