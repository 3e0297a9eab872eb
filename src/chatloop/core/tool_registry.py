"""Tool registry: collect, look up and describe tools by name."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from chatloop.tools.decorator import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name-indexed set of ``Tool`` objects."""

    def __init__(self, tools: Iterable[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or ():
            self.register(t)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_schemas(self, names: list[str] | None = None) -> list[dict]:
        """Return OpenAI function-calling schemas for the given tool names.

        If names is None, return schemas for all tools.
        """
        if names is None:
            return [t.to_schema() for t in self._tools.values()]
        return [self._tools[n].to_schema() for n in names if n in self._tools]

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
