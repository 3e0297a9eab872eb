"""Classify and execute the tool calls of one model turn."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping

from chatloop.core.tool_registry import ToolRegistry
from chatloop.errors import ToolArgumentsError
from chatloop.llm.types import ToolCall
from chatloop.tools.decorator import Tool

logger = logging.getLogger(__name__)

DECLINED_MESSAGE = "User declined tool execution"


@dataclass
class ToolResult:
    tool_call_id: str
    result: Any
    state: Literal["output-available", "output-error"] = "output-available"


@dataclass
class ApprovalRequest:
    tool_call_id: str
    tool_name: str
    input: Any
    approval_id: str


@dataclass
class ClientToolRequest:
    tool_call_id: str
    tool_name: str
    input: Any


@dataclass
class ExecuteToolCallsResult:
    # Results ready to send back to the model
    results: list[ToolResult] = field(default_factory=list)
    # Calls waiting for a user decision
    needs_approval: list[ApprovalRequest] = field(default_factory=list)
    # Calls the caller must execute
    needs_client_execution: list[ClientToolRequest] = field(default_factory=list)


def approval_id_for(tool_call_id: str) -> str:
    return f"approval_{tool_call_id}"


def _parse_arguments(tool_call: ToolCall) -> Any:
    raw = (tool_call.arguments or "").strip() or "{}"
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(tool_call.id, tool_call.name, raw) from e


def _decode_result(result: Any) -> Any:
    if result is None or result == "":
        return None
    if isinstance(result, str):
        try:
            return json.loads(result)
        except json.JSONDecodeError:
            return result
    return result


async def _run_server_tool(tool: Tool, tool_call: ToolCall, arguments: Any) -> ToolResult:
    try:
        result = await tool.run(arguments)
    except Exception as e:
        logger.exception("Tool execution failed: %s", tool.name)
        return ToolResult(tool_call.id, {"error": str(e)}, "output-error")
    return ToolResult(tool_call.id, _decode_result(result))


async def execute_tool_calls(
    tool_calls: list[ToolCall],
    tools: ToolRegistry | Iterable[Tool],
    approvals: Mapping[str, bool] | None = None,
    client_results: Mapping[str, Any] | None = None,
) -> ExecuteToolCallsResult:
    """Execute, or defer, each tool call in order.

    Server tools run immediately unless they need approval. Client tools are
    packaged from ``client_results`` when a result exists, otherwise they are
    returned for client execution. Approval-gated tools of either side wait
    for a decision in ``approvals`` (keyed by approval ID).

    Raises:
        ToolArgumentsError: arguments of any call are not valid JSON. No call
            in the batch is executed in that case.
    """
    approvals = approvals or {}
    client_results = client_results or {}
    registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
    outcome = ExecuteToolCallsResult()

    # Decode everything first so a bad call aborts the batch before any side effect
    parsed: list[tuple[ToolCall, Tool | None, Any]] = []
    for tool_call in tool_calls:
        tool = registry.get(tool_call.name)
        arguments = _parse_arguments(tool_call) if tool is not None else None
        parsed.append((tool_call, tool, arguments))

    for tool_call, tool, arguments in parsed:
        if tool is None:
            logger.warning("Model requested unknown tool %s", tool_call.name)
            outcome.results.append(
                ToolResult(tool_call.id, {"error": f"Unknown tool: {tool_call.name}"}, "output-error")
            )
            continue

        approval_id = approval_id_for(tool_call.id)
        if tool.needs_approval:
            if approval_id not in approvals:
                outcome.needs_approval.append(
                    ApprovalRequest(tool_call.id, tool_call.name, arguments, approval_id)
                )
                continue
            if not approvals[approval_id]:
                outcome.results.append(
                    ToolResult(tool_call.id, {"error": DECLINED_MESSAGE}, "output-error")
                )
                continue

        if tool.is_server_executable:
            logger.info("Executing tool: %s", tool.name)
            outcome.results.append(await _run_server_tool(tool, tool_call, arguments))
        elif tool_call.id in client_results:
            outcome.results.append(ToolResult(tool_call.id, client_results[tool_call.id]))
        else:
            outcome.needs_client_execution.append(
                ClientToolRequest(tool_call.id, tool_call.name, arguments)
            )

    return outcome
