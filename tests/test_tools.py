"""Tests for tool execution, dependencies and completion detection."""

import asyncio
import json

import pytest
from pydantic import BaseModel

from llm_relay.cancellation import CancelToken
from llm_relay.errors import RateLimitedError, SecurityError
from llm_relay.tools import (
    CompletionDetector,
    ToolDefinition,
    ToolExecutionAborted,
    execute_tool_calls,
    update_tool_call_context,
)
from llm_relay.types import ToolCallContext, ToolCallRequest, ToolCallResult


class EchoArgs(BaseModel):
    text: str


def _request(call_id, name, arguments="{}"):
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


class TestToolDefinition:
    def test_openai_tool_from_args_model(self):
        tool = ToolDefinition(name="echo", executor=lambda args: args.text, args_model=EchoArgs)

        definition = tool.to_openai_tool()

        assert definition["type"] == "function"
        assert definition["function"]["name"] == "echo"
        assert definition["function"]["parameters"]["properties"]["text"]["type"] == "string"

    @pytest.mark.asyncio
    async def test_invoke_validates_and_supports_async(self):
        async def executor(args):
            return args.text.upper()

        tool = ToolDefinition(name="echo", executor=executor, args_model=EchoArgs)

        assert await tool.invoke({"text": "hi"}) == "HI"


class TestExecuteToolCalls:
    @pytest.mark.asyncio
    async def test_failing_call_does_not_abort_sibling(self):
        def boom(args):
            raise RuntimeError("kaput")

        tools = [
            ToolDefinition(name="ok", executor=lambda args: {"value": 1}),
            ToolDefinition(name="boom", executor=boom),
        ]

        results = await execute_tool_calls([_request("1", "ok"), _request("2", "boom")], tools)

        assert [r.id for r in results] == ["1", "2"]
        assert results[0].result == {"value": 1}
        assert not results[0].is_error
        assert results[1].is_error
        assert "kaput" in results[1].error

    @pytest.mark.asyncio
    async def test_invalid_json_is_a_result_error(self):
        tools = [ToolDefinition(name="ok", executor=lambda args: "fine")]

        results = await execute_tool_calls(
            [_request("1", "ok", "{broken"), _request("2", "ok", "")], tools
        )

        assert results[0].is_error
        assert "Invalid JSON" in results[0].error
        assert results[1].result == "fine"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [RateLimitedError("slow down", retry_delay_ms=1000), SecurityError("blocked path")],
    )
    async def test_rate_limit_and_security_errors_propagate(self, error):
        def refuse(args):
            raise error

        tools = [
            ToolDefinition(name="ok", executor=lambda args: "fine"),
            ToolDefinition(name="refuse", executor=refuse),
        ]

        with pytest.raises(type(error)) as info:
            await execute_tool_calls([_request("1", "ok"), _request("2", "refuse")], tools)

        assert info.value is error

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        results = await execute_tool_calls([_request("1", "missing")], [])

        assert results[0].error == "Unknown tool: missing"

    @pytest.mark.asyncio
    async def test_validation_error_is_a_result_error(self):
        tools = [ToolDefinition(name="echo", executor=lambda args: args.text, args_model=EchoArgs)]

        results = await execute_tool_calls([_request("1", "echo", '{"other": 1}')], tools)

        assert results[0].is_error
        assert "ValidationError" in results[0].error

    @pytest.mark.asyncio
    async def test_dependency_runs_after_its_dependency(self):
        order = []

        async def fetch(args):
            await asyncio.sleep(0.01)
            order.append("fetch")
            return "data"

        def render(args):
            order.append("render")
            return "page"

        tools = [
            ToolDefinition(name="render", executor=render, depends_on=("fetch",)),
            ToolDefinition(name="fetch", executor=fetch),
        ]

        results = await execute_tool_calls([_request("1", "render"), _request("2", "fetch")], tools)

        assert order == ["fetch", "render"]
        assert [r.id for r in results] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependent(self):
        def fetch(args):
            raise ValueError("offline")

        tools = [
            ToolDefinition(name="fetch", executor=fetch),
            ToolDefinition(name="render", executor=lambda args: "page", depends_on=("fetch",)),
        ]

        results = await execute_tool_calls([_request("1", "fetch"), _request("2", "render")], tools)

        assert results[1].error == "Dependency fetch failed"

    @pytest.mark.asyncio
    async def test_dependency_cycle_yields_errors(self):
        tools = [
            ToolDefinition(name="a", executor=lambda args: 1, depends_on=("b",)),
            ToolDefinition(name="b", executor=lambda args: 2, depends_on=("a",)),
        ]

        results = await execute_tool_calls([_request("1", "a"), _request("2", "b")], tools)

        assert all(r.is_error for r in results)
        assert "Unresolvable" in results[0].error

    @pytest.mark.asyncio
    async def test_cancellation_keeps_completed_results(self):
        cancel = CancelToken()

        def quick(args):
            return "quick"

        async def slow(args):
            cancel.cancel()
            await asyncio.sleep(10)

        tools = [
            ToolDefinition(name="quick", executor=quick),
            ToolDefinition(name="slow", executor=slow),
        ]

        with pytest.raises(ToolExecutionAborted) as info:
            await execute_tool_calls(
                [_request("1", "quick"), _request("2", "slow")], tools, cancel=cancel
            )

        assert [r.id for r in info.value.results] == ["1"]
        assert info.value.results[0].result == "quick"


class TestCompletionDetection:
    def test_first_completion_tool_wins(self):
        detector = CompletionDetector(["finish"])
        results = [
            ToolCallResult("1", "search", result="x"),
            ToolCallResult("2", "finish", result="first summary"),
            ToolCallResult("3", "finish", result={"summary": "second summary"}),
        ]

        signal = detector.detect_completion(results)

        assert signal.signaled
        assert signal.tool_name == "finish"
        assert signal.summary == "first summary"

    def test_failed_completion_tool_does_not_signal(self):
        detector = CompletionDetector(["finish"])

        assert detector.detect_completion([ToolCallResult("1", "finish", error="no")]) is None

    def test_signal_is_set_once(self):
        detector = CompletionDetector(["finish"])
        assistant = {"role": "assistant", "content": "", "tool_calls": []}

        first = update_tool_call_context(
            ToolCallContext(), assistant, [ToolCallResult("1", "finish", result="done once")], detector
        )
        second = update_tool_call_context(
            first, assistant, [ToolCallResult("2", "finish", result="done twice")], detector
        )

        assert second.completion_signal is first.completion_signal
        assert second.completion_signal.summary == "done once"


class TestUpdateContext:
    def test_appends_assistant_then_results_in_order(self):
        assistant = {
            "role": "assistant",
            "content": "",
            "tool_calls": [_request("1", "a").to_message_dict(), _request("2", "b").to_message_dict()],
        }
        results = [ToolCallResult("1", "a", result={"n": 1}), ToolCallResult("2", "b")]

        context = update_tool_call_context(None, assistant, results)

        assert context.depth == 1
        assert context.messages[0] is assistant
        assert [m["tool_call_id"] for m in context.messages[1:]] == ["1", "2"]
        assert json.loads(context.messages[1]["content"]) == {"n": 1}
        assert context.messages[2]["content"] == "done"

    def test_results_without_name_are_skipped(self):
        context = update_tool_call_context(
            ToolCallContext(), {"role": "assistant", "content": ""}, [ToolCallResult("1", "")]
        )

        assert len(context.messages) == 1
