"""Conversion between UI transcript messages and model messages."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any

from chatloop.llm.types import ModelMessage, ToolCall, ToolCallFunction, now_ms
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
)


def generate_message_id(prefix: str = "msg") -> str:
    return f"{prefix}-{now_ms()}-{secrets.token_hex(4)}"


def ui_message_to_model_messages(message: UIMessage) -> list[ModelMessage]:
    """Encode one UI message as the model messages a provider expects.

    Assistant messages are split at tool results so that the history reads
    assistant(tool calls) -> tool(result) -> assistant(follow-up text).
    Thinking parts are not sent back to the model.
    """
    if message.role != "assistant":
        text = "".join(p.content for p in message.parts if isinstance(p, TextPart))
        return [ModelMessage(role=message.role, content=text)]

    result: list[ModelMessage] = []
    text: list[str] = []
    call_parts: list[ToolCallPart] = []

    def flush() -> None:
        if not text and not call_parts:
            return
        result.append(
            ModelMessage(
                role="assistant",
                content="".join(text) or None,
                tool_calls=[
                    ToolCall(id=p.id, function=ToolCallFunction(name=p.name, arguments=p.arguments))
                    for p in call_parts
                ] or None,
                parts=list(call_parts) or None,
            )
        )
        text.clear()
        call_parts.clear()

    for part in message.parts:
        if isinstance(part, TextPart):
            text.append(part.content)
        elif isinstance(part, ToolCallPart):
            # Calls still streaming arguments are not sent
            if part.state.rank >= ToolCallState.INPUT_COMPLETE.rank:
                call_parts.append(part)
        elif isinstance(part, ToolResultPart):
            flush()
            result.append(
                ModelMessage(role="tool", content=part.content, tool_call_id=part.tool_call_id)
            )
    flush()
    return result


def model_message_to_ui_message(message: ModelMessage, message_id: str | None = None) -> UIMessage:
    """Build a UI message from a model message.

    Tool messages become an assistant message holding a single tool-result
    part.
    """
    parts: list[MessagePart] = []
    role = message.role
    if role == "tool":
        role = "assistant"
        parts.append(ToolResultPart(tool_call_id=message.tool_call_id or "", content=message.content or ""))
    else:
        if message.content:
            parts.append(TextPart(message.content))
        for tc in message.tool_calls or []:
            parts.append(
                ToolCallPart(
                    id=tc.id,
                    name=tc.name,
                    arguments=tc.arguments,
                    state=ToolCallState.INPUT_COMPLETE,
                )
            )
    return UIMessage(id=message_id or generate_message_id(), role=role, parts=tuple(parts))


def normalize_to_ui_message(message: UIMessage | ModelMessage) -> UIMessage:
    if isinstance(message, UIMessage):
        return message
    return model_message_to_ui_message(message)


# -- JSON wire form ---------------------------------------------------------

def part_to_dict(part: MessagePart) -> dict[str, Any]:
    if isinstance(part, TextPart | ThinkingPart):
        return {"type": part.type, "content": part.content}
    if isinstance(part, ToolResultPart):
        data = {
            "type": part.type,
            "toolCallId": part.tool_call_id,
            "content": part.content,
            "state": part.state.value,
        }
        if part.error is not None:
            data["error"] = part.error
        return data
    data = {
        "type": part.type,
        "id": part.id,
        "name": part.name,
        "arguments": part.arguments,
        "state": part.state.value,
    }
    if part.parsed_arguments is not None:
        data["parsedArguments"] = part.parsed_arguments
    if part.output is not None:
        data["output"] = part.output
    if part.approval is not None:
        data["approval"] = {"id": part.approval.id, "needsApproval": part.approval.needs_approval}
        if part.approval.approved is not None:
            data["approval"]["approved"] = part.approval.approved
    return data


def part_from_dict(data: dict[str, Any]) -> MessagePart:
    kind = data.get("type")
    if kind == "text":
        return TextPart(data.get("content", ""))
    if kind == "thinking":
        return ThinkingPart(data.get("content", ""))
    if kind == "tool-result":
        return ToolResultPart(
            tool_call_id=data["toolCallId"],
            content=data.get("content", ""),
            state=ToolResultState(data.get("state", "complete")),
            error=data.get("error"),
        )
    if kind == "tool-call":
        approval = data.get("approval")
        return ToolCallPart(
            id=data["id"],
            name=data.get("name", ""),
            arguments=data.get("arguments", ""),
            state=ToolCallState(data.get("state", "input-complete")),
            parsed_arguments=data.get("parsedArguments"),
            output=data.get("output"),
            approval=ToolApproval(
                id=approval["id"],
                needs_approval=approval.get("needsApproval", True),
                approved=approval.get("approved"),
            ) if approval else None,
        )
    raise ValueError(f"Unknown message part type: {kind}")


def model_message_to_dict(message: ModelMessage) -> dict[str, Any]:
    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        data["toolCalls"] = [tc.to_dict() for tc in message.tool_calls]
    if message.tool_call_id is not None:
        data["toolCallId"] = message.tool_call_id
    if message.name is not None:
        data["name"] = message.name
    if message.parts:
        data["parts"] = [part_to_dict(p) for p in message.parts]
    return data


def model_message_from_dict(data: dict[str, Any]) -> ModelMessage:
    tool_calls = data.get("toolCalls")
    parts = data.get("parts")
    return ModelMessage(
        role=data["role"],
        content=data.get("content"),
        tool_calls=[ToolCall.model_validate(tc) for tc in tool_calls] if tool_calls else None,
        tool_call_id=data.get("toolCallId"),
        name=data.get("name"),
        parts=[part_from_dict(p) for p in parts] if parts else None,
    )


def ui_message_to_dict(message: UIMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "parts": [part_to_dict(p) for p in message.parts],
        "createdAt": message.created_at.isoformat(),
    }


def ui_message_from_dict(data: dict[str, Any]) -> UIMessage:
    created = data.get("createdAt")
    return UIMessage(
        id=data.get("id") or generate_message_id(),
        role=data["role"],
        parts=tuple(part_from_dict(p) for p in data.get("parts", [])),
        created_at=datetime.fromisoformat(created) if created else datetime.now(timezone.utc),
    )
