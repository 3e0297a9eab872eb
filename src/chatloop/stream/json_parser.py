"""Best-effort parsing of incomplete JSON while tool arguments stream in."""

from __future__ import annotations

from typing import Any, Protocol

from pydantic_core import from_json


class JSONParser(Protocol):
    def parse(self, json_string: str) -> Any: ...


class PartialJSONParser:
    """Parse a possibly truncated JSON document.

    Returns ``None`` for empty input and for text that cannot be parsed even
    as a prefix; never raises.
    """

    def parse(self, json_string: str) -> Any:
        if not json_string or not json_string.strip():
            return None
        try:
            return from_json(json_string, allow_partial="trailing-strings")
        except ValueError:
            # Expected early in a stream when very little data has arrived
            return None


default_json_parser = PartialJSONParser()


def parse_partial_json(json_string: str) -> Any:
    return default_json_parser.parse(json_string)
