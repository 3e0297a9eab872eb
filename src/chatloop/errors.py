"""Exception types raised by chatloop."""

from __future__ import annotations


class ChatLoopError(Exception):
    """Base class for chatloop errors."""


class ToolArgumentsError(ChatLoopError, ValueError):
    """Tool-call arguments could not be decoded as JSON.

    Raised for the whole batch so that no tool runs with corrupted input.
    """

    def __init__(self, tool_call_id: str, tool_name: str, arguments: str):
        self.tool_call_id = tool_call_id
        self.tool_name = tool_name
        self.arguments = arguments
        super().__init__(f"Failed to parse tool arguments as JSON: {arguments}")


class StreamChunkError(ChatLoopError):
    """An adapter reported an error chunk."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)


class RecordingError(ChatLoopError):
    """A chunk recording could not be loaded."""
