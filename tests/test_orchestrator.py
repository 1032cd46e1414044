"""Tests for the tool-calling loop."""

import pytest

from constants import LLM_FALLBACKS, RECURSION_LIMIT_MESSAGE
from errors import BackendUnavailable, InvalidArgument, RateLimited
from orchestrator import AIMessage, ToolOrchestrator, annotate, build_instructions
from providers import ERROR, FILTERED, TEXT, TRUNCATED, BackendResponse
from rate_limiter import LeakyBucketRateLimiter
from conftest import FakeBackend, FakeTools, tool_calls


def _orchestrator(backend, tools=None, capacity=10, **kwargs):
    return ToolOrchestrator(backend, tools or FakeTools(), LeakyBucketRateLimiter(capacity, 60), **kwargs)


INPUTS = [AIMessage(is_self=False, message="weather?", participant_name="Mary Jane")]


class TestBuildInstructions:

    def test_roles_and_names(self):
        messages = build_instructions("system", [
            AIMessage(is_self=False, message="hi", participant_name="Mary Jane"),
            AIMessage(is_self=True, message="hello", participant_name="Wernstrom"),
            AIMessage(is_self=False, message="opener"),
        ])
        assert messages[0] == {"role": "system", "content": "system"}
        assert messages[1] == {"role": "user", "content": "hi", "name": "Mary_Jane"}
        assert messages[2]["role"] == "assistant"
        assert "name" not in messages[3]

    def test_annotate(self):
        assert annotate("done", 0) == "done"
        assert annotate("done", 1) == "done [1 tool call]"
        assert annotate("done", 3) == "done [3 tool calls]"


class TestToolLoop:

    @pytest.mark.asyncio
    async def test_plain_text_reply(self):
        backend = FakeBackend([BackendResponse(kind=TEXT, text="Sunny.")])
        assert await _orchestrator(backend).generate_response("sys", INPUTS) == "Sunny."
        assert len(backend.calls) == 1
        assert backend.calls[0]["tools"]

    @pytest.mark.asyncio
    async def test_tool_round_then_text(self):
        backend = FakeBackend([tool_calls("get_current_weather"), BackendResponse(kind=TEXT, text="It is 20°C.")])
        tools = FakeTools({"get_current_weather": "20°C, clear"})
        reply = await _orchestrator(backend, tools).generate_response("sys", INPUTS)

        assert reply == "It is 20°C. [1 tool call]"
        second = backend.calls[1]["messages"]
        assert second[-2]["tool_calls"][0]["function"]["name"] == "get_current_weather"
        assert second[-1] == {"role": "tool", "tool_call_id": "call_0", "content": "20°C, clear"}

    @pytest.mark.asyncio
    async def test_annotation_can_be_disabled(self):
        backend = FakeBackend([tool_calls("get_vehicle_status"), BackendResponse(kind=TEXT, text="Charged.")])
        tools = FakeTools({"get_vehicle_status": "80%"})
        reply = await _orchestrator(backend, tools, annotate_tool_calls=False).generate_response("sys", INPUTS)
        assert reply == "Charged."

    @pytest.mark.asyncio
    async def test_depth_ceiling(self):
        backend = FakeBackend(default=tool_calls("get_vehicle_status"))
        tools = FakeTools({"get_vehicle_status": "80%"})
        reply = await _orchestrator(backend, tools, max_depth=3).generate_response("sys", INPUTS)

        assert reply == RECURSION_LIMIT_MESSAGE
        assert len(backend.calls) == 4
        assert len(tools.calls) == 3

    @pytest.mark.asyncio
    async def test_depth_zero_allows_no_tools(self):
        backend = FakeBackend(default=tool_calls("get_vehicle_status"))
        tools = FakeTools({"get_vehicle_status": "80%"})
        reply = await _orchestrator(backend, tools, max_depth=0).generate_response("sys", INPUTS)
        assert reply == RECURSION_LIMIT_MESSAGE
        assert len(backend.calls) == 1
        assert tools.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool_reported_to_model(self):
        backend = FakeBackend([tool_calls("launch_rocket"), BackendResponse(kind=TEXT, text="Can't.")])
        reply = await _orchestrator(backend).generate_response("sys", INPUTS)
        assert reply == "Can't. [1 tool call]"
        assert backend.calls[1]["messages"][-1]["content"] == "Unknown tool: launch_rocket"

    @pytest.mark.asyncio
    async def test_tool_failures_become_results(self):
        backend = FakeBackend([
            tool_calls("get_current_weather", "get_headlines", "web_search"),
            BackendResponse(kind=TEXT, text="Partial."),
        ])
        tools = FakeTools({
            "get_current_weather": BackendUnavailable("no key"),
            "get_headlines": InvalidArgument("bad source"),
            "web_search": RuntimeError("socket closed"),
        })
        reply = await _orchestrator(backend, tools).generate_response("sys", INPUTS)

        assert reply == "Partial. [3 tool calls]"
        results = [m["content"] for m in backend.calls[1]["messages"] if m["role"] == "tool"]
        assert "unavailable" in results[0]
        assert "rejected" in results[1]
        assert "socket closed" in results[2]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [ERROR, FILTERED, TRUNCATED])
    async def test_unsuccessful_outcomes_get_fallbacks(self, kind):
        backend = FakeBackend([BackendResponse(kind=kind)])
        assert await _orchestrator(backend).generate_response("sys", INPUTS) == LLM_FALLBACKS[kind]

    @pytest.mark.asyncio
    async def test_rate_limited_turn_submits_nothing(self):
        backend = FakeBackend()
        orchestrator = _orchestrator(backend, capacity=1)
        await orchestrator.generate_response("sys", INPUTS)
        with pytest.raises(RateLimited):
            await orchestrator.generate_response("sys", INPUTS)
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_tool_rounds_are_not_charged(self):
        backend = FakeBackend([tool_calls("get_vehicle_status"), tool_calls("get_vehicle_status")])
        tools = FakeTools({"get_vehicle_status": "80%"})
        reply = await _orchestrator(backend, tools, capacity=1).generate_response("sys", INPUTS)
        assert reply.endswith("[2 tool calls]")


class TestGeneratePlain:

    @pytest.mark.asyncio
    async def test_no_tools_offered(self):
        backend = FakeBackend([BackendResponse(kind=TEXT, text="line")])
        assert await _orchestrator(backend).generate_plain("sys", "Go.", 50) == "line"
        assert backend.calls[0]["tools"] is None
        assert backend.calls[0]["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_non_text_is_none(self):
        backend = FakeBackend([BackendResponse(kind=FILTERED)])
        assert await _orchestrator(backend).generate_plain("sys", "Go.") is None
