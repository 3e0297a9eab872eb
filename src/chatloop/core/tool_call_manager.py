"""Per-turn accumulation of streamed tool-call fragments."""

from __future__ import annotations

import logging

from chatloop.llm.types import ToolCall, ToolCallFunction, ToolCallStreamChunk

logger = logging.getLogger(__name__)


class ToolCallManager:
    """Folds ``tool_call`` chunks into complete, ID-keyed tool calls.

    Adapters send the ``id`` and name on the first fragment of a call and
    may send only the positional ``index`` on continuation fragments; the
    index is mapped to the ID seen first for it.
    """

    def __init__(self):
        self._calls: dict[str, dict[str, str]] = {}
        self._index_to_id: dict[int, str] = {}

    def add_tool_call_chunk(self, chunk: ToolCallStreamChunk) -> None:
        fragment = chunk.tool_call
        tool_call_id = fragment.id or self._index_to_id.get(chunk.index)

        if tool_call_id is None:
            logger.warning("Tool call fragment for unknown index %d ignored", chunk.index)
            return

        tc = self._calls.get(tool_call_id)
        if tc is None:
            if not fragment.function.name:
                logger.warning("Tool call %s started without a name", tool_call_id)
            tc = {"id": tool_call_id, "name": "", "arguments": ""}
            self._calls[tool_call_id] = tc
            self._index_to_id[chunk.index] = tool_call_id

        if fragment.function.name and not tc["name"]:
            tc["name"] = fragment.function.name
        if fragment.function.arguments:
            tc["arguments"] += fragment.function.arguments

    def has_tool_calls(self) -> bool:
        return bool(self.get_tool_calls())

    def get_tool_calls(self) -> list[ToolCall]:
        """Accumulated calls that have both an ID and a name, in arrival order."""
        return [
            ToolCall(id=tc["id"], function=ToolCallFunction(name=tc["name"], arguments=tc["arguments"]))
            for tc in self._calls.values()
            if tc["id"] and tc["name"]
        ]

    def clear(self) -> None:
        self._calls.clear()
        self._index_to_id.clear()
