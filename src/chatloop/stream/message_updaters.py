"""Pure copy-on-write updates of the UI message list.

Every function returns a new tuple of messages. Messages and parts that are
not touched are shared with the input; touched ones are rebuilt with
``dataclasses.replace`` so holders of an older snapshot never see a change.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Sequence

from chatloop.stream.types import (
    MessagePart,
    TextPart,
    ThinkingPart,
    ToolApproval,
    ToolCallPart,
    ToolCallState,
    ToolResultPart,
    ToolResultState,
    UIMessage,
    advance_state,
)

Messages = tuple[UIMessage, ...]


def _map_message(
    messages: Sequence[UIMessage],
    message_id: str,
    fn: Callable[[list[MessagePart]], list[MessagePart]],
) -> Messages:
    return tuple(
        replace(msg, parts=tuple(fn(list(msg.parts)))) if msg.id == message_id else msg
        for msg in messages
    )


def _find_tool_call(parts: list[MessagePart], tool_call_id: str) -> int:
    for i, p in enumerate(parts):
        if isinstance(p, ToolCallPart) and p.id == tool_call_id:
            return i
    return -1


def update_text_part(messages: Sequence[UIMessage], message_id: str, content: str) -> Messages:
    """Replace the trailing text part, or start a new text segment."""
    def apply(parts: list[MessagePart]) -> list[MessagePart]:
        if parts and isinstance(parts[-1], TextPart):
            parts[-1] = TextPart(content)
        else:
            parts.append(TextPart(content))
        return parts

    return _map_message(messages, message_id, apply)


def update_tool_call_part(
    messages: Sequence[UIMessage],
    message_id: str,
    tool_call_id: str,
    name: str,
    arguments: str,
    state: ToolCallState,
    parsed_arguments: Any = None,
) -> Messages:
    """Create or update a tool-call part, looked up by ID.

    Output and approval already on the part are kept, and the state never
    moves backwards.
    """
    def apply(parts: list[MessagePart]) -> list[MessagePart]:
        i = _find_tool_call(parts, tool_call_id)
        if i >= 0:
            existing = parts[i]
            parts[i] = replace(
                existing,
                name=name,
                arguments=arguments,
                state=advance_state(existing.state, state),
                parsed_arguments=parsed_arguments,
            )
        else:
            parts.append(
                ToolCallPart(
                    id=tool_call_id,
                    name=name,
                    arguments=arguments,
                    state=state,
                    parsed_arguments=parsed_arguments,
                )
            )
        return parts

    return _map_message(messages, message_id, apply)


def update_tool_result_part(
    messages: Sequence[UIMessage],
    message_id: str,
    tool_call_id: str,
    content: str,
    state: ToolResultState,
    error: str | None = None,
) -> Messages:
    """Replace the result for ``tool_call_id`` or append a new one."""
    def apply(parts: list[MessagePart]) -> list[MessagePart]:
        result = ToolResultPart(tool_call_id=tool_call_id, content=content, state=state, error=error)
        for i, p in enumerate(parts):
            if isinstance(p, ToolResultPart) and p.tool_call_id == tool_call_id:
                parts[i] = result
                return parts
        parts.append(result)
        return parts

    return _map_message(messages, message_id, apply)


def update_tool_call_approval(
    messages: Sequence[UIMessage],
    message_id: str,
    tool_call_id: str,
    approval_id: str,
) -> Messages:
    """Attach approval metadata and mark the part approval-requested."""
    def apply(parts: list[MessagePart]) -> list[MessagePart]:
        i = _find_tool_call(parts, tool_call_id)
        if i >= 0:
            part = parts[i]
            parts[i] = replace(
                part,
                state=advance_state(part.state, ToolCallState.APPROVAL_REQUESTED),
                approval=ToolApproval(id=approval_id, needs_approval=True),
            )
        return parts

    return _map_message(messages, message_id, apply)


def update_tool_call_state(
    messages: Sequence[UIMessage],
    message_id: str,
    tool_call_id: str,
    state: ToolCallState,
) -> Messages:
    def apply(parts: list[MessagePart]) -> list[MessagePart]:
        i = _find_tool_call(parts, tool_call_id)
        if i >= 0:
            parts[i] = replace(parts[i], state=advance_state(parts[i].state, state))
        return parts

    return _map_message(messages, message_id, apply)


def update_tool_call_with_output(
    messages: Sequence[UIMessage],
    tool_call_id: str,
    output: Any,
    state: ToolCallState | None = None,
    error_text: str | None = None,
) -> Messages:
    """Set the output of a tool call, searching every message for its ID."""
    new_state = state or ToolCallState.INPUT_COMPLETE
    result = []
    for msg in messages:
        parts = list(msg.parts)
        i = _find_tool_call(parts, tool_call_id)
        if i < 0:
            result.append(msg)
            continue
        part = parts[i]
        parts[i] = replace(
            part,
            output={"error": error_text} if error_text else output,
            state=advance_state(part.state, new_state),
        )
        result.append(replace(msg, parts=tuple(parts)))
    return tuple(result)


def update_tool_call_approval_response(
    messages: Sequence[UIMessage],
    approval_id: str,
    approved: bool,
) -> Messages:
    """Record a decision on the part whose approval ID matches."""
    result = []
    for msg in messages:
        parts = list(msg.parts)
        changed = False
        for i, p in enumerate(parts):
            if isinstance(p, ToolCallPart) and p.approval is not None and p.approval.id == approval_id:
                parts[i] = replace(
                    p,
                    approval=replace(p.approval, approved=approved),
                    state=ToolCallState.APPROVAL_RESPONDED,
                )
                changed = True
                break
        result.append(replace(msg, parts=tuple(parts)) if changed else msg)
    return tuple(result)


def update_thinking_part(messages: Sequence[UIMessage], message_id: str, content: str) -> Messages:
    """Replace the message's thinking part, or append one."""
    def apply(parts: list[MessagePart]) -> list[MessagePart]:
        for i, p in enumerate(parts):
            if isinstance(p, ThinkingPart):
                parts[i] = ThinkingPart(content)
                return parts
        parts.append(ThinkingPart(content))
        return parts

    return _map_message(messages, message_id, apply)
