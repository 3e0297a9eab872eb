"""chatloop - streaming chat and tool-calling loop for LLM adapters."""

from chatloop.core.chat_engine import ChatEngine, chat
from chatloop.core.loop_strategies import combine_strategies, max_iterations, until_finish_reason
from chatloop.errors import ChatLoopError, RecordingError, StreamChunkError, ToolArgumentsError
from chatloop.stream.processor import StreamProcessor
from chatloop.tools.decorator import Tool, tool, tool_definition

__version__ = "0.1.0"

__all__ = [
    "ChatEngine",
    "ChatLoopError",
    "RecordingError",
    "StreamChunkError",
    "StreamProcessor",
    "Tool",
    "ToolArgumentsError",
    "chat",
    "combine_strategies",
    "max_iterations",
    "tool",
    "tool_definition",
    "until_finish_reason",
]
