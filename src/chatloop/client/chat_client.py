"""Chat client: drives a conversation against a connection.

The client owns a ``StreamProcessor`` holding the UI transcript. Each
request sends the transcript as model messages through a ``Connection``,
folds the response chunks back into the transcript and, once the response
is finished, runs any client-side tools the engine handed back. When every
tool call of the last assistant message is resolved (by a client result or
an approval decision) the client continues the conversation on its own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Sequence

from chatloop.client.connections import Connection
from chatloop.core.config import Settings
from chatloop.llm.types import ModelMessage, StreamChunk
from chatloop.stream.converters import generate_message_id, normalize_to_ui_message
from chatloop.stream.processor import (
    ApprovalRequestEvent,
    StreamProcessor,
    StreamProcessorEvents,
    ToolCallRequest,
)
from chatloop.stream.strategies import create_strategy
from chatloop.stream.types import ChunkRecording, ChunkStrategy, ToolCallPart, UIMessage
from chatloop.tools.decorator import Tool

logger = logging.getLogger(__name__)


class ChatClient:
    def __init__(
        self,
        connection: Connection,
        *,
        id: str | None = None,
        initial_messages: Sequence[UIMessage] | None = None,
        tools: Iterable[Tool] | None = None,
        body: dict[str, Any] | None = None,
        chunk_strategy: ChunkStrategy | None = None,
        settings: Settings | None = None,
        on_chunk: Callable[[StreamChunk], None] | None = None,
        on_finish: Callable[[UIMessage], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_messages_change: Callable[[tuple[UIMessage, ...]], None] | None = None,
        on_loading_change: Callable[[bool], None] | None = None,
        on_approval_request: Callable[[ApprovalRequestEvent], None] | None = None,
    ):
        self.id = id or generate_message_id("chat")
        self.connection = connection
        self.body = body or {}
        self._client_tools = {t.name: t for t in tools or ()}

        self._on_chunk = on_chunk
        self._on_finish = on_finish
        self._on_error = on_error
        self._on_messages_change = on_messages_change
        self._on_loading_change = on_loading_change
        self._on_approval_request = on_approval_request

        stream_config = (settings or Settings()).stream
        if chunk_strategy is None:
            chunk_strategy = create_strategy(stream_config.chunk_strategy, stream_config.batch_size)
        self._record = stream_config.record

        self._processor = StreamProcessor(
            chunk_strategy=chunk_strategy,
            initial_messages=initial_messages,
            events=StreamProcessorEvents(
                on_messages_change=self._handle_messages_change,
                on_stream_end=self._handle_stream_end,
                on_error=self._handle_stream_error,
                on_tool_call=self._handle_tool_call,
                on_approval_request=self._handle_approval_request,
            ),
        )

        self._is_loading = False
        self._error: Exception | None = None
        self._abort_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._pending_client_tools: list[ToolCallRequest] = []

    # -- state --------------------------------------------------------------

    @property
    def messages(self) -> tuple[UIMessage, ...]:
        return self._processor.messages

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def recording(self) -> ChunkRecording | None:
        """Chunks of the latest response when ``stream.record`` is enabled."""
        return self._processor.recording

    def set_messages(self, messages: Sequence[UIMessage]) -> None:
        self._processor.set_messages(messages)

    # -- actions ------------------------------------------------------------

    async def send_message(self, content: str) -> None:
        """Add a user message and stream the reply.

        Blank input and calls made while a request is running are ignored.
        """
        content = content.strip()
        if not content or self._is_loading:
            return
        message = self._processor.add_user_message(content)
        logger.debug("Chat %s: sent message %s", self.id, message.id)
        await self._stream_response()

    async def append(self, message: UIMessage | ModelMessage) -> None:
        """Append an arbitrary message and stream the reply.

        System messages are ignored; system prompts belong to the engine.
        """
        ui_message = normalize_to_ui_message(message)
        if ui_message.role == "system":
            return
        self._processor.set_messages([*self._processor.messages, ui_message])
        await self._stream_response()

    async def reload(self) -> None:
        """Drop everything after the last user message and request again."""
        messages = self._processor.messages
        last_user = next(
            (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"), None
        )
        if last_user is None:
            return
        self._processor.remove_messages_after(last_user)
        await self._stream_response()

    def stop(self) -> None:
        """Abort the running request, if any."""
        if self._abort_event is not None:
            self._abort_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._pending_client_tools.clear()
        self._set_loading(False)

    def clear(self) -> None:
        self._processor.clear_messages()
        self._pending_client_tools.clear()
        self._error = None

    async def add_tool_result(
        self, tool_call_id: str, tool_name: str, output: Any, error: str | None = None
    ) -> None:
        """Record a client-side tool result and continue when nothing is left open."""
        logger.debug("Chat %s: result for %s (%s)", self.id, tool_name, tool_call_id)
        self._processor.add_tool_result(tool_call_id, output, error)
        await self._continue_if_complete()

    async def add_tool_approval_response(self, approval_id: str, approved: bool) -> None:
        """Record an approval decision by approval id (not tool call id)."""
        found = any(
            isinstance(p, ToolCallPart) and p.approval is not None and p.approval.id == approval_id
            for m in self._processor.messages
            for p in m.parts
        )
        if not found:
            logger.warning("Chat %s: no tool call awaits approval %s", self.id, approval_id)
        self._processor.add_tool_approval_response(approval_id, approved)
        await self._continue_if_complete()

    # -- request handling ---------------------------------------------------

    async def _stream_response(self) -> None:
        self._set_loading(True)
        self._error = None
        abort_event = asyncio.Event()
        self._abort_event = abort_event

        try:
            stream = self.connection.connect(self._processor.to_model_messages(), self.body, abort_event)
            self._task = asyncio.ensure_future(self._process_stream(stream))
            await self._task
        except asyncio.CancelledError:
            if not abort_event.is_set():
                raise
            logger.info("Chat %s: request stopped", self.id)
            return
        except Exception as e:
            logger.exception("Chat %s: request failed", self.id)
            self._set_error(e)
            return
        finally:
            if self._abort_event is abort_event:
                self._task = None
                self._abort_event = None
                self._set_loading(False)

        if not abort_event.is_set():
            await self._run_client_tools()

    async def _process_stream(self, stream: Any) -> None:
        self._processor.start_assistant_message()
        if self._record:
            self._processor.start_recording()
        async for chunk in stream:
            if self._on_chunk:
                self._on_chunk(chunk)
            self._processor.process_chunk(chunk)
        self._processor.finalize_stream()
        recording = self._processor.recording
        if recording is not None:
            recording.result = self._processor.get_result()

    async def _run_client_tools(self) -> None:
        requests, self._pending_client_tools = self._pending_client_tools, []
        for request in requests:
            client_tool = self._client_tools.get(request.tool_name)
            if client_tool is None or client_tool.execute is None:
                # Left for the caller to resolve via add_tool_result()
                continue
            try:
                output = await client_tool.run(request.input or {})
            except Exception as e:
                logger.exception("Client tool %s failed", request.tool_name)
                await self.add_tool_result(request.tool_call_id, request.tool_name, None, str(e))
            else:
                await self.add_tool_result(request.tool_call_id, request.tool_name, output)

    async def _continue_if_complete(self) -> None:
        if self._is_loading or not self._processor.are_all_tools_complete():
            return
        await self._stream_response()

    # -- processor callbacks ------------------------------------------------

    def _handle_messages_change(self, messages: tuple[UIMessage, ...]) -> None:
        if self._on_messages_change:
            self._on_messages_change(messages)

    def _handle_stream_end(self, message: UIMessage) -> None:
        if self._on_finish:
            self._on_finish(message)

    def _handle_stream_error(self, error: Exception) -> None:
        self._set_error(error)

    def _handle_tool_call(self, request: ToolCallRequest) -> None:
        self._pending_client_tools.append(request)

    def _handle_approval_request(self, event: ApprovalRequestEvent) -> None:
        logger.info("Chat %s: %s awaits approval %s", self.id, event.tool_name, event.approval_id)
        if self._on_approval_request:
            self._on_approval_request(event)

    def _set_loading(self, is_loading: bool) -> None:
        if self._is_loading == is_loading:
            return
        self._is_loading = is_loading
        if self._on_loading_change:
            self._on_loading_change(is_loading)

    def _set_error(self, error: Exception) -> None:
        self._error = error
        if self._on_error:
            self._on_error(error)
