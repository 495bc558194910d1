"""Tests for ToolRegistry -- registration, definitions and dispatch."""

from unittest.mock import AsyncMock

import pytest

from talon.agent.models import Tool
from talon.agent.tools import FunctionTool, ToolRegistry


class UpperTool:
    name = "upper"
    description = "Uppercase text"
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, args: dict) -> str:
        return args["text"].upper()


class TestRegistration:
    def test_register_class_tool(self):
        registry = ToolRegistry()
        registry.register(UpperTool())
        assert "upper" in registry
        assert len(registry) == 1
        assert registry.names() == ["upper"]

    def test_function_tool_matches_contract(self):
        async def handler(args):
            return "ok"

        assert isinstance(FunctionTool("noop", handler), Tool)

    def test_definitions_openai_format(self, echo_tools):
        definitions = echo_tools.definitions()
        assert definitions[0] == {
            "type": "function",
            "function": {
                "name": "echo",
                "description": "Echo a message back",
                "parameters": {
                    "type": "object",
                    "properties": {"message": {"type": "string"}},
                    "required": ["message"],
                },
            },
        }
        assert definitions[1]["function"]["parameters"] == {"type": "object", "properties": {}}

    def test_describe(self, echo_tools):
        assert echo_tools.describe() == ["echo: Echo a message back", "broken: Always fails"]

    def test_reregister_replaces(self):
        registry = ToolRegistry()
        registry.register(UpperTool())
        registry.register(UpperTool())
        assert len(registry) == 1


class TestDispatch:
    @pytest.mark.asyncio
    async def test_handler_receives_arguments(self):
        handler = AsyncMock(return_value="recorded")
        registry = ToolRegistry()
        registry.register_function("record", handler)

        outcome = await registry.dispatch("record", {"key": 1})

        assert outcome.output == "recorded"
        handler.assert_awaited_once_with({"key": 1})

    @pytest.mark.asyncio
    async def test_success(self, echo_tools):
        outcome = await echo_tools.dispatch("echo", {"message": "hi"})
        assert outcome.success
        assert outcome.output == "Echo: hi"
        assert outcome.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_unknown_tool(self, echo_tools):
        outcome = await echo_tools.dispatch("nope", {})
        assert not outcome.success
        assert outcome.output == 'Error: Unknown tool "nope"'

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_data(self, echo_tools):
        outcome = await echo_tools.dispatch("broken", {})
        assert not outcome.success
        assert outcome.output == "Error: tool exploded"

    @pytest.mark.asyncio
    async def test_bad_arguments_become_data(self):
        registry = ToolRegistry()
        registry.register(UpperTool())
        outcome = await registry.dispatch("upper", {})
        assert not outcome.success
        assert outcome.output.startswith("Error:")

    @pytest.mark.asyncio
    async def test_non_string_output_coerced(self):
        registry = ToolRegistry()

        async def count(args):
            return 42

        registry.register_function("count", count)
        outcome = await registry.dispatch("count", {})
        assert outcome.output == "42"

    @pytest.mark.asyncio
    async def test_long_output_trimmed(self):
        registry = ToolRegistry(max_output_chars=100)

        async def big(args):
            return "h" * 500 + "t" * 500

        registry.register_function("big", big)
        outcome = await registry.dispatch("big", {})

        assert outcome.success
        assert outcome.output.startswith("h" * 75)
        assert outcome.output.endswith("t" * 25)
        assert "trimmed (kept 75 head + 25 tail of 1000 chars)" in outcome.output
