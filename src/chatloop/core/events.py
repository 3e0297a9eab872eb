"""Engine event emission.

``ChatEngine`` reports its lifecycle through an ``AIEventEmitter`` passed to
its constructor. Subclasses implement ``_emit`` to route events to logs,
metrics or tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from chatloop.llm.types import Usage, now_ms

logger = logging.getLogger("chatloop.events")


class AIEventEmitter(ABC):
    """Observer interface for ``ChatEngine`` events."""

    @abstractmethod
    def _emit(self, event_name: str, data: dict[str, Any]) -> None:
        """Deliver one event."""

    def chat_started(
        self, *, request_id: str, model: str, message_count: int, has_tools: bool, streaming: bool
    ) -> None:
        self._emit("chat:started", {
            "request_id": request_id,
            "model": model,
            "message_count": message_count,
            "has_tools": has_tools,
            "streaming": streaming,
        })

    def stream_started(self, *, stream_id: str, model: str, provider: str) -> None:
        self._emit("stream:started", {"stream_id": stream_id, "model": model, "provider": provider})

    def stream_chunk_content(
        self, *, stream_id: str, message_id: str | None, content: str, delta: str
    ) -> None:
        self._emit("stream:chunk:content", {
            "stream_id": stream_id,
            "message_id": message_id,
            "content": content,
            "delta": delta,
        })

    def stream_chunk_tool_call(
        self,
        *,
        stream_id: str,
        message_id: str | None,
        tool_call_id: str,
        tool_name: str,
        index: int,
        arguments: str,
    ) -> None:
        self._emit("stream:chunk:tool-call", {
            "stream_id": stream_id,
            "message_id": message_id,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "index": index,
            "arguments": arguments,
        })

    def stream_chunk_tool_result(
        self, *, stream_id: str, message_id: str | None, tool_call_id: str, result: str
    ) -> None:
        self._emit("stream:chunk:tool-result", {
            "stream_id": stream_id,
            "message_id": message_id,
            "tool_call_id": tool_call_id,
            "result": result,
        })

    def stream_chunk_done(
        self, *, stream_id: str, message_id: str | None, finish_reason: str | None, usage: Usage | None
    ) -> None:
        self._emit("stream:chunk:done", {
            "stream_id": stream_id,
            "message_id": message_id,
            "finish_reason": finish_reason,
            "usage": usage,
        })

    def stream_chunk_error(self, *, stream_id: str, message_id: str | None, error: str) -> None:
        self._emit("stream:chunk:error", {"stream_id": stream_id, "message_id": message_id, "error": error})

    def chat_iteration(
        self, *, request_id: str, iteration_number: int, message_count: int, tool_call_count: int
    ) -> None:
        self._emit("chat:iteration", {
            "request_id": request_id,
            "iteration_number": iteration_number,
            "message_count": message_count,
            "tool_call_count": tool_call_count,
        })

    def stream_approval_requested(
        self,
        *,
        stream_id: str,
        message_id: str | None,
        tool_call_id: str,
        tool_name: str,
        input: Any,
        approval_id: str,
    ) -> None:
        self._emit("stream:approval-requested", {
            "stream_id": stream_id,
            "message_id": message_id,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "input": input,
            "approval_id": approval_id,
        })

    def stream_tool_input_available(
        self, *, stream_id: str, tool_call_id: str, tool_name: str, input: Any
    ) -> None:
        self._emit("stream:tool-input-available", {
            "stream_id": stream_id,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "input": input,
        })

    def tool_call_completed(
        self, *, stream_id: str, tool_call_id: str, tool_name: str, result: Any, duration: float
    ) -> None:
        self._emit("tool:call-completed", {
            "stream_id": stream_id,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "result": result,
            "duration": duration,
        })

    def stream_ended(self, *, stream_id: str, total_chunks: int, duration: float) -> None:
        self._emit("stream:ended", {"stream_id": stream_id, "total_chunks": total_chunks, "duration": duration})

    def chat_completed(
        self,
        *,
        request_id: str,
        model: str,
        content: str,
        finish_reason: str | None,
        usage: Usage | None,
    ) -> None:
        self._emit("chat:completed", {
            "request_id": request_id,
            "model": model,
            "content": content,
            "finish_reason": finish_reason,
            "usage": usage,
        })

    def usage_tokens(self, *, request_id: str, model: str, usage: Usage) -> None:
        self._emit("usage:tokens", {"request_id": request_id, "model": model, "usage": usage})


class LoggingEventEmitter(AIEventEmitter):
    """Default emitter: writes every event to the ``chatloop.events`` logger."""

    def _emit(self, event_name: str, data: dict[str, Any]) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s %s", event_name, {**data, "timestamp": now_ms()})
