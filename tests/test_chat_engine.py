"""Tests for the chat engine agent loop."""

import asyncio
import json

import pytest

from chatloop.core.chat_engine import ChatEngine, chat, prepend_system_prompts
from chatloop.core.config import EngineConfig, Settings
from chatloop.core.executor import DECLINED_MESSAGE
from chatloop.core.loop_strategies import max_iterations, until_finish_reason
from chatloop.errors import ToolArgumentsError
from chatloop.llm.types import DoneStreamChunk, ModelMessage, ToolCall, ToolCallFunction, Usage
from chatloop.stream.types import ToolApproval, ToolCallPart, ToolCallState
from chatloop.tools.decorator import tool_definition
from tests.conftest import MockChatAdapter, collect, content, done, error, tool_call

USER = ModelMessage(role="user", content="What is the temperature in Oslo?")


def _types(chunks):
    return [c.type for c in chunks]


def _weather_turns():
    return [
        [tool_call("tc1", "get_temperature", '{"city": "Oslo"}'), done("tool_calls")],
        [content("It is 70 degrees."), done("stop")],
    ]


class TestPlainChat:
    @pytest.mark.asyncio
    async def test_streams_single_turn(self, events):
        adapter = MockChatAdapter([[content("Hello"), content(" world"), done("stop")]])
        engine = ChatEngine(adapter, model="test-model", messages=[USER], events=events)

        chunks = await collect(engine.chat())

        assert _types(chunks) == ["content", "content", "done"]
        assert len(adapter.calls) == 1
        assert adapter.calls[0]["model"] == "test-model"
        assert adapter.calls[0]["messages"] == [USER]
        assert adapter.closed == 1
        completed = events.of("chat:completed")[0]
        assert completed["content"] == "Hello world"
        assert completed["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, events):
        adapter = MockChatAdapter()
        await collect(ChatEngine(adapter, model="m", messages=[USER], events=events).chat())

        names = events.names()
        assert names[:2] == ["chat:started", "stream:started"]
        assert names[-2:] == ["stream:ended", "chat:completed"]
        assert events.of("chat:started")[0]["message_count"] == 1
        assert events.of("stream:started")[0]["provider"] == "mock"

    @pytest.mark.asyncio
    async def test_system_prompts_prepended(self):
        adapter = MockChatAdapter()
        await collect(
            ChatEngine(adapter, model="m", messages=[USER], system_prompts=["Be brief.", "Be kind."]).chat()
        )
        sent = adapter.calls[0]["messages"]
        assert [m.role for m in sent] == ["system", "system", "user"]
        assert sent[0].content == "Be brief."

    def test_prepend_system_prompts_without_prompts(self):
        assert prepend_system_prompts([USER]) == [USER]

    @pytest.mark.asyncio
    async def test_options_forwarded(self):
        adapter = MockChatAdapter()
        await collect(
            chat(adapter, model="m", messages=[USER], options={"temperature": 0.2}, provider_options={"seed": 1})
        )
        assert adapter.calls[0]["options"] == {"temperature": 0.2}
        assert adapter.calls[0]["provider_options"] == {"seed": 1}

    @pytest.mark.asyncio
    async def test_usage_event(self, events):
        usage = Usage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
        adapter = MockChatAdapter([[content("x"), DoneStreamChunk(finish_reason="stop", usage=usage)]])
        await collect(ChatEngine(adapter, model="m", messages=[USER], events=events).chat())
        assert events.of("usage:tokens")[0]["usage"] == usage


class TestServerToolLoop:
    @pytest.mark.asyncio
    async def test_tool_round_trip(self, weather_tool, temperature_calls, events):
        adapter = MockChatAdapter(_weather_turns())
        engine = ChatEngine(
            adapter,
            model="test-model",
            messages=[USER],
            tools=[weather_tool],
            agent_loop_strategy=max_iterations(20),
            events=events,
        )

        chunks = await collect(engine.chat())

        assert _types(chunks) == ["tool_call", "done", "tool_result", "content", "done"]
        assert chunks[2].tool_call_id == "tc1"
        assert chunks[2].content == "70"
        assert temperature_calls == [{"city": "Oslo"}]

        second = adapter.calls[1]["messages"]
        assert [m.role for m in second] == ["user", "assistant", "tool"]
        assert second[1].tool_calls[0].name == "get_temperature"
        assert second[2].tool_call_id == "tc1"
        assert second[2].content == "70"

        assert [m.role for m in engine.messages] == ["user", "assistant", "tool"]
        assert engine.iteration_count == 2
        assert events.of("tool:call-completed")[0]["tool_name"] == "get_temperature"
        assert events.of("chat:iteration")[0]["tool_call_count"] == 1
        assert "stream:ended" in events.names()

    @pytest.mark.asyncio
    async def test_trailing_stop_does_not_cancel_tool_calls(self, weather_tool):
        adapter = MockChatAdapter([
            [tool_call("tc1", "get_temperature", '{"city": "Oslo"}'), done("tool_calls"), done("stop")],
            [content("70 it is."), done("stop")],
        ])
        chunks = await collect(ChatEngine(adapter, model="m", messages=[USER], tools=[weather_tool]).chat())

        assert len(adapter.calls) == 2
        assert "tool_result" in _types(chunks)

    @pytest.mark.asyncio
    async def test_tool_calls_without_tools_stop(self):
        adapter = MockChatAdapter(_weather_turns())
        chunks = await collect(ChatEngine(adapter, model="m", messages=[USER]).chat())
        assert len(adapter.calls) == 1
        assert _types(chunks) == ["tool_call", "done"]

    @pytest.mark.asyncio
    async def test_max_iterations_guard(self, weather_tool):
        adapter = MockChatAdapter([[tool_call("tc1", "get_temperature", '{"city": "Oslo"}'), done("tool_calls")]])
        engine = ChatEngine(
            adapter, model="m", messages=[USER], tools=[weather_tool], agent_loop_strategy=max_iterations(3)
        )
        chunks = await collect(engine.chat())

        assert len(adapter.calls) == 3
        assert _types(chunks).count("tool_result") == 3

    @pytest.mark.asyncio
    async def test_default_iterations_from_settings(self, weather_tool):
        adapter = MockChatAdapter([[tool_call("tc1", "get_temperature", "{}"), done("tool_calls")]])
        settings = Settings(engine=EngineConfig(max_iterations=2))
        await collect(ChatEngine(adapter, model="m", messages=[USER], tools=[weather_tool], settings=settings).chat())
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_until_finish_reason(self, weather_tool):
        adapter = MockChatAdapter(_weather_turns())
        await collect(
            ChatEngine(
                adapter,
                model="m",
                messages=[USER],
                tools=[weather_tool],
                agent_loop_strategy=until_finish_reason(["stop"]),
            ).chat()
        )
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_unknown_tool_result_sent_back(self, weather_tool):
        adapter = MockChatAdapter([
            [tool_call("tc1", "launch_rocket", "{}"), done("tool_calls")],
            [content("Sorry."), done("stop")],
        ])
        chunks = await collect(ChatEngine(adapter, model="m", messages=[USER], tools=[weather_tool]).chat())

        result = next(c for c in chunks if c.type == "tool_result")
        assert json.loads(result.content) == {"error": "Unknown tool: launch_rocket"}
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_arguments_raise(self, weather_tool):
        adapter = MockChatAdapter([[tool_call("tc1", "get_temperature", '{"city": '), done("tool_calls")]])
        with pytest.raises(ToolArgumentsError):
            await collect(ChatEngine(adapter, model="m", messages=[USER], tools=[weather_tool]).chat())


class TestApprovalFlow:
    def _delete_tool(self, deleted):
        return tool_definition("delete_file", needs_approval=True).server(
            lambda args: deleted.append(args["path"]) or {"deleted": args["path"]}
        )

    def _history(self, approval: ToolApproval | None = None, state=ToolCallState.APPROVAL_REQUESTED):
        call = ToolCall(id="tc1", function=ToolCallFunction(name="delete_file", arguments='{"path": "a.txt"}'))
        part = ToolCallPart(
            id="tc1", name="delete_file", arguments='{"path": "a.txt"}', state=state, approval=approval
        )
        return [USER, ModelMessage(role="assistant", tool_calls=[call], parts=[part])]

    @pytest.mark.asyncio
    async def test_waits_for_approval(self, events):
        deleted = []
        adapter = MockChatAdapter([[tool_call("tc1", "delete_file", '{"path": "a.txt"}'), done("tool_calls")]])
        engine = ChatEngine(adapter, model="m", messages=[USER], tools=[self._delete_tool(deleted)], events=events)

        chunks = await collect(engine.chat())

        assert _types(chunks) == ["tool_call", "done", "approval-requested"]
        request = chunks[-1]
        assert request.approval.id == "approval_tc1"
        assert request.input == {"path": "a.txt"}
        assert deleted == []
        assert len(adapter.calls) == 1
        assert "stream:ended" not in events.names()
        assert events.of("stream:approval-requested")[0]["approval_id"] == "approval_tc1"

    @pytest.mark.asyncio
    async def test_resumes_after_approval_in_parts(self):
        deleted = []
        adapter = MockChatAdapter([[content("Deleted."), done("stop")]])
        history = self._history(ToolApproval(id="approval_tc1", approved=True), ToolCallState.APPROVAL_RESPONDED)

        chunks = await collect(
            ChatEngine(adapter, model="m", messages=history, tools=[self._delete_tool(deleted)]).chat()
        )

        assert _types(chunks) == ["tool_result", "content", "done"]
        assert deleted == ["a.txt"]
        assert chunks[0].id.startswith("pending-")
        sent = adapter.calls[0]["messages"]
        assert [m.role for m in sent] == ["user", "assistant", "tool"]

    @pytest.mark.asyncio
    async def test_resumes_after_explicit_decline(self):
        deleted = []
        adapter = MockChatAdapter([[content("Okay, I won't."), done("stop")]])

        chunks = await collect(
            ChatEngine(
                adapter,
                model="m",
                messages=self._history(),
                tools=[self._delete_tool(deleted)],
                approvals={"approval_tc1": False},
            ).chat()
        )

        assert deleted == []
        assert json.loads(chunks[0].content) == {"error": DECLINED_MESSAGE}
        assert len(adapter.calls) == 1

    @pytest.mark.asyncio
    async def test_server_tool_in_waiting_batch_runs_once(self):
        logged, deleted = [], []
        log_it = tool_definition("log_it").server(lambda args: logged.append(args["line"]) or "ok")
        tools = [log_it, self._delete_tool(deleted)]
        first = ChatEngine(
            MockChatAdapter([[
                tool_call("tcA", "log_it", '{"line": "hi"}', index=0),
                tool_call("tcB", "delete_file", '{"path": "a.txt"}', index=1),
                done("tool_calls"),
            ]]),
            model="m",
            messages=[USER],
            tools=tools,
        )

        chunks = await collect(first.chat())

        assert _types(chunks) == ["tool_call", "tool_call", "done", "tool_result", "approval-requested"]
        assert chunks[3].tool_call_id == "tcA"
        assert [m.role for m in first.messages] == ["user", "assistant", "tool"]

        adapter = MockChatAdapter([[content("Done."), done("stop")]])
        chunks = await collect(
            ChatEngine(
                adapter,
                model="m",
                messages=first.messages,
                tools=tools,
                approvals={"approval_tcB": True},
            ).chat()
        )

        assert logged == ["hi"]
        assert deleted == ["a.txt"]
        assert _types(chunks) == ["tool_result", "content", "done"]
        assert chunks[0].tool_call_id == "tcB"
        assert [m.role for m in adapter.calls[0]["messages"]] == ["user", "assistant", "tool", "tool"]

    @pytest.mark.asyncio
    async def test_pending_without_decision_waits_again(self):
        adapter = MockChatAdapter()
        chunks = await collect(
            ChatEngine(adapter, model="m", messages=self._history(), tools=[self._delete_tool([])]).chat()
        )
        assert _types(chunks) == ["approval-requested"]
        assert adapter.calls == []


class TestClientTools:
    @pytest.mark.asyncio
    async def test_client_tool_input_available(self):
        location = tool_definition("get_location").client()
        adapter = MockChatAdapter([[tool_call("tc1", "get_location", '{"precise": true}'), done("tool_calls")]])

        chunks = await collect(ChatEngine(adapter, model="m", messages=[USER], tools=[location]).chat())

        assert _types(chunks) == ["tool_call", "done", "tool-input-available"]
        assert chunks[-1].tool_name == "get_location"
        assert chunks[-1].input == {"precise": True}

    @pytest.mark.asyncio
    async def test_client_result_from_parts(self):
        location = tool_definition("get_location").client()
        call = ToolCall(id="tc1", function=ToolCallFunction(name="get_location", arguments="{}"))
        part = ToolCallPart(
            id="tc1", name="get_location", arguments="{}", state=ToolCallState.INPUT_COMPLETE,
            output={"city": "Oslo"},
        )
        history = [USER, ModelMessage(role="assistant", tool_calls=[call], parts=[part])]
        adapter = MockChatAdapter([[content("You are in Oslo."), done("stop")]])

        chunks = await collect(ChatEngine(adapter, model="m", messages=history, tools=[location]).chat())

        assert json.loads(chunks[0].content) == {"city": "Oslo"}
        assert adapter.calls[0]["messages"][-1].content == json.dumps({"city": "Oslo"})


class TestAbortAndErrors:
    @pytest.mark.asyncio
    async def test_abort_mid_stream(self, events):
        abort = asyncio.Event()
        adapter = MockChatAdapter([[content("a"), content("b"), content("c"), done("stop")]])
        engine = ChatEngine(adapter, model="m", messages=[USER], abort_event=abort, events=events)

        chunks = []
        async for chunk in engine.chat():
            chunks.append(chunk)
            abort.set()

        assert _types(chunks) == ["content"]
        assert adapter.closed == 1
        assert "stream:ended" not in events.names()
        assert "chat:completed" not in events.names()

    @pytest.mark.asyncio
    async def test_abort_before_start(self):
        abort = asyncio.Event()
        abort.set()
        adapter = MockChatAdapter()
        chunks = await collect(ChatEngine(adapter, model="m", messages=[USER], abort_event=abort).chat())
        assert chunks == []
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_abort_between_iterations(self, weather_tool):
        abort = asyncio.Event()
        adapter = MockChatAdapter(_weather_turns())
        engine = ChatEngine(adapter, model="m", messages=[USER], tools=[weather_tool], abort_event=abort)

        chunks = []
        async for chunk in engine.chat():
            chunks.append(chunk)
            if chunk.type == "tool_result":
                abort.set()

        assert len(adapter.calls) == 1
        assert _types(chunks)[-1] == "tool_result"

    @pytest.mark.asyncio
    async def test_error_chunk_terminates(self, events):
        adapter = MockChatAdapter([[content("partial"), error("rate limited", "429"), content("never")]])
        chunks = await collect(ChatEngine(adapter, model="m", messages=[USER], events=events).chat())

        assert _types(chunks) == ["content", "error"]
        assert chunks[1].error.message == "rate limited"
        assert events.of("stream:chunk:error")[0]["error"] == "rate limited"
        assert "stream:ended" not in events.names()

    @pytest.mark.asyncio
    async def test_adapter_exception_propagates(self, events):
        adapter = MockChatAdapter([[content("a"), content("b")]], raise_after=1)
        with pytest.raises(RuntimeError, match="adapter exploded"):
            await collect(ChatEngine(adapter, model="m", messages=[USER], events=events).chat())
        assert "stream:ended" not in events.names()
