"""Tests for the copy-on-write message updaters."""

from chatloop.stream import message_updaters as updaters
from chatloop.stream.types import (
    TextPart,
    ThinkingPart,
    ToolApproval,
    ToolCallPart,
    ToolCallState,
    ToolResultPart,
    ToolResultState,
    UIMessage,
)


def _messages():
    return (
        UIMessage(id="u1", role="user", parts=(TextPart("hi"),)),
        UIMessage(id="a1", role="assistant"),
    )


class TestUpdateTextPart:
    def test_appends_first_text_part(self):
        before = _messages()
        after = updaters.update_text_part(before, "a1", "Hello")
        assert after[1].parts == (TextPart("Hello"),)

    def test_replaces_trailing_text_part(self):
        msgs = updaters.update_text_part(_messages(), "a1", "Hel")
        msgs = updaters.update_text_part(msgs, "a1", "Hello")
        assert msgs[1].parts == (TextPart("Hello"),)

    def test_new_segment_after_tool_call(self):
        msgs = updaters.update_text_part(_messages(), "a1", "Let me check.")
        msgs = updaters.update_tool_call_part(msgs, "a1", "tc1", "lookup", "{}", ToolCallState.INPUT_COMPLETE)
        msgs = updaters.update_text_part(msgs, "a1", "Found it.")
        kinds = [p.type for p in msgs[1].parts]
        assert kinds == ["text", "tool-call", "text"]

    def test_does_not_mutate_input(self):
        before = _messages()
        after = updaters.update_text_part(before, "a1", "Hello")
        assert before[1].parts == ()
        assert after is not before
        # Untouched messages are shared
        assert after[0] is before[0]

    def test_unknown_message_id(self):
        before = _messages()
        after = updaters.update_text_part(before, "missing", "x")
        assert after == before


class TestUpdateToolCallPart:
    def test_creates_part(self):
        msgs = updaters.update_tool_call_part(
            _messages(), "a1", "tc1", "get_weather", '{"ci', ToolCallState.INPUT_STREAMING, {"ci": ""}
        )
        part = msgs[1].parts[0]
        assert isinstance(part, ToolCallPart)
        assert part.name == "get_weather"
        assert part.state == ToolCallState.INPUT_STREAMING

    def test_updates_in_place_by_id(self):
        msgs = updaters.update_tool_call_part(_messages(), "a1", "tc1", "f", '{"a"', ToolCallState.INPUT_STREAMING)
        msgs = updaters.update_tool_call_part(msgs, "a1", "tc1", "f", '{"a": 1}', ToolCallState.INPUT_COMPLETE, {"a": 1})
        parts = msgs[1].parts
        assert len(parts) == 1
        assert parts[0].arguments == '{"a": 1}'
        assert parts[0].parsed_arguments == {"a": 1}

    def test_state_never_regresses(self):
        msgs = updaters.update_tool_call_part(_messages(), "a1", "tc1", "f", "{}", ToolCallState.INPUT_COMPLETE)
        msgs = updaters.update_tool_call_part(msgs, "a1", "tc1", "f", "{}", ToolCallState.INPUT_STREAMING)
        assert msgs[1].parts[0].state == ToolCallState.INPUT_COMPLETE

    def test_keeps_output_and_approval(self):
        msgs = updaters.update_tool_call_part(_messages(), "a1", "tc1", "f", "{}", ToolCallState.INPUT_COMPLETE)
        msgs = updaters.update_tool_call_approval(msgs, "a1", "tc1", "approval_tc1")
        msgs = updaters.update_tool_call_part(msgs, "a1", "tc1", "f", "{}", ToolCallState.INPUT_COMPLETE)
        part = msgs[1].parts[0]
        assert part.approval == ToolApproval(id="approval_tc1")
        assert part.state == ToolCallState.APPROVAL_REQUESTED

    def test_previous_snapshot_unchanged(self):
        first = updaters.update_tool_call_part(_messages(), "a1", "tc1", "f", "", ToolCallState.AWAITING_INPUT)
        second = updaters.update_tool_call_part(first, "a1", "tc1", "f", "{}", ToolCallState.INPUT_COMPLETE)
        assert first[1].parts[0].state == ToolCallState.AWAITING_INPUT
        assert second[1].parts[0].state == ToolCallState.INPUT_COMPLETE


class TestUpdateToolResultPart:
    def test_appends_result(self):
        msgs = updaters.update_tool_result_part(_messages(), "a1", "tc1", '"70"', ToolResultState.COMPLETE)
        assert msgs[1].parts == (ToolResultPart(tool_call_id="tc1", content='"70"'),)

    def test_replaces_existing_result(self):
        msgs = updaters.update_tool_result_part(_messages(), "a1", "tc1", "partial", ToolResultState.STREAMING)
        msgs = updaters.update_tool_result_part(msgs, "a1", "tc1", "boom", ToolResultState.ERROR, "boom")
        assert len(msgs[1].parts) == 1
        assert msgs[1].parts[0].state == ToolResultState.ERROR
        assert msgs[1].parts[0].error == "boom"


class TestApprovalUpdates:
    def _with_call(self):
        msgs = updaters.update_tool_call_part(_messages(), "a1", "tc1", "delete", "{}", ToolCallState.INPUT_COMPLETE)
        return updaters.update_tool_call_approval(msgs, "a1", "tc1", "approval_tc1")

    def test_approval_requested(self):
        part = self._with_call()[1].parts[0]
        assert part.state == ToolCallState.APPROVAL_REQUESTED
        assert part.approval.needs_approval is True
        assert part.approval.approved is None

    def test_approval_response_by_approval_id(self):
        msgs = updaters.update_tool_call_approval_response(self._with_call(), "approval_tc1", False)
        part = msgs[1].parts[0]
        assert part.state == ToolCallState.APPROVAL_RESPONDED
        assert part.approval.approved is False

    def test_approval_response_unknown_id(self):
        before = self._with_call()
        after = updaters.update_tool_call_approval_response(before, "approval_other", True)
        assert after[1] is before[1]

    def test_update_state(self):
        msgs = updaters.update_tool_call_state(self._with_call(), "a1", "tc1", ToolCallState.INPUT_STREAMING)
        assert msgs[1].parts[0].state == ToolCallState.APPROVAL_REQUESTED


class TestUpdateToolCallWithOutput:
    def test_searches_all_messages(self):
        msgs = updaters.update_tool_call_part(_messages(), "a1", "tc1", "f", "{}", ToolCallState.INPUT_COMPLETE)
        msgs = (*msgs, UIMessage(id="a2", role="assistant"))
        msgs = updaters.update_tool_call_with_output(msgs, "tc1", {"temp": 70})
        assert msgs[1].parts[0].output == {"temp": 70}

    def test_error_text_becomes_output(self):
        msgs = updaters.update_tool_call_part(_messages(), "a1", "tc1", "f", "{}", ToolCallState.INPUT_COMPLETE)
        msgs = updaters.update_tool_call_with_output(msgs, "tc1", None, error_text="denied")
        assert msgs[1].parts[0].output == {"error": "denied"}


class TestUpdateThinkingPart:
    def test_replaces_single_thinking_part(self):
        msgs = updaters.update_thinking_part(_messages(), "a1", "Let me")
        msgs = updaters.update_thinking_part(msgs, "a1", "Let me think")
        assert msgs[1].parts == (ThinkingPart("Let me think"),)
