"""
Tool definition and dispatch unit tests
"""

import json

import pytest
from pydantic import BaseModel, Field

from copilot_sdk import Tool, ToolInvocation, ToolRegistry, define_tool


def invocation(tool_name: str, arguments=None) -> ToolInvocation:
    return {
        "session_id": "s1",
        "tool_call_id": "call_1",
        "tool_name": tool_name,
        "arguments": arguments,
    }


class CityParams(BaseModel):
    city: str = Field(description="City to look up")
    days: int = 1


class TestDefineTool:
    def test_decorator_infers_schema_from_annotation(self):
        @define_tool(description="Get the weather")
        def get_weather(params: CityParams) -> str:
            return params.city

        assert isinstance(get_weather, Tool)
        assert get_weather.name == "get_weather"
        assert get_weather.description == "Get the weather"
        schema = get_weather.parameters
        assert schema is not None
        assert schema["properties"]["city"]["description"] == "City to look up"
        assert schema["required"] == ["city"]

    def test_direct_call_with_explicit_name_and_params_type(self):
        def handler(params):
            return params.days

        tool = define_tool("forecast", description="Forecast", handler=handler, params_type=CityParams)

        assert tool.name == "forecast"
        assert tool.parameters == CityParams.model_json_schema()

    def test_description_defaults_to_docstring(self):
        @define_tool()
        def shout(params: dict) -> str:
            """Repeat the text loudly."""
            return params["text"].upper()

        assert shout.description == "Repeat the text loudly."
        assert shout.parameters is None

    @pytest.mark.asyncio
    async def test_handler_receives_validated_params_and_invocation(self):
        seen = []

        @define_tool(description="Record a call")
        async def record(params: CityParams, inv: ToolInvocation) -> str:
            seen.append((params, inv["tool_call_id"]))
            return "ok"

        assert record.handler is not None
        result = await record.handler(invocation("record", {"city": "Oslo", "days": "3"}))

        assert result == {"textResultForLlm": "ok", "resultType": "success"}
        assert seen == [(CityParams(city="Oslo", days=3), "call_1")]

    @pytest.mark.asyncio
    async def test_handler_without_parameters(self):
        @define_tool(description="Current time")
        def now() -> str:
            return "noon"

        assert now.handler is not None
        assert (await now.handler(invocation("now")))["textResultForLlm"] == "noon"

    @pytest.mark.asyncio
    async def test_invalid_arguments_produce_failure(self):
        @define_tool(description="Get the weather")
        def get_weather(params: CityParams) -> str:
            raise AssertionError("not reached")

        assert get_weather.handler is not None
        result = await get_weather.handler(invocation("get_weather", {"days": 2}))

        assert result["resultType"] == "failure"
        assert result["textResultForLlm"].startswith("Invalid arguments for tool 'get_weather'")
        assert "city" in result["error"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, ""),
            ("plain", "plain"),
            ({"temperature": 21}, json.dumps({"temperature": 21})),
            ([1, 2], "[1, 2]"),
            (CityParams(city="Rome"), CityParams(city="Rome").model_dump_json()),
        ],
    )
    async def test_return_values_are_normalised(self, value, expected):
        @define_tool(description="Returns a value")
        def give() -> object:
            return value

        assert give.handler is not None
        result = await give.handler(invocation("give"))
        assert result == {"textResultForLlm": expected, "resultType": "success"}

    @pytest.mark.asyncio
    async def test_tool_result_passes_through(self):
        custom = {"textResultForLlm": "no", "resultType": "rejected", "sessionLog": "why"}

        @define_tool(description="Rejects")
        def reject() -> dict:
            return custom

        assert reject.handler is not None
        assert await reject.handler(invocation("reject")) == custom


class TestToolRegistry:
    def test_definitions_exclude_handlers(self):
        registry = ToolRegistry(
            [
                Tool(name="a", description="first", handler=lambda inv: None),
                Tool(name="b", description="second", parameters={"type": "object"}),
            ]
        )

        assert registry.names() == ["a", "b"]
        assert registry.definitions() == [
            {"name": "a", "description": "first"},
            {"name": "b", "description": "second", "parameters": {"type": "object"}},
        ]

    def test_duplicate_names_are_rejected(self):
        with pytest.raises(ValueError, match="Duplicate tool name: a"):
            ToolRegistry([Tool(name="a", description="x"), Tool(name="a", description="y")])

    def test_empty_names_are_rejected(self):
        with pytest.raises(ValueError, match="must not be empty"):
            ToolRegistry([Tool(name="", description="x")])

    def test_register_replaces_and_clear_empties(self):
        registry = ToolRegistry([Tool(name="a", description="x")])
        registry.register([Tool(name="b", description="y")])
        assert registry.names() == ["b"]

        registry.clear()
        assert registry.names() == []
        assert registry.definitions() == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await ToolRegistry().invoke(invocation("missing"))

        assert result["resultType"] == "failure"
        assert result["error"] == "tool 'missing' not supported"

    @pytest.mark.asyncio
    async def test_tool_without_handler_is_unsupported(self):
        registry = ToolRegistry([Tool(name="declared", description="no handler")])

        result = await registry.invoke(invocation("declared"))
        assert result["error"] == "tool 'declared' not supported"

    @pytest.mark.asyncio
    async def test_handler_exception_is_hidden_from_the_model(self):
        def explode(inv):
            raise RuntimeError("secret stack detail")

        registry = ToolRegistry([Tool(name="boom", description="x", handler=explode)])
        result = await registry.invoke(invocation("boom"))

        assert result["resultType"] == "failure"
        assert "secret" not in result["textResultForLlm"]
        assert result["error"] == "secret stack detail"

    @pytest.mark.asyncio
    async def test_none_from_low_level_handler_is_a_failure(self):
        registry = ToolRegistry([Tool(name="void", description="x", handler=lambda inv: None)])

        result = await registry.invoke(invocation("void"))
        assert result["resultType"] == "failure"
        assert result["error"] == "tool returned no result"

    @pytest.mark.asyncio
    async def test_async_low_level_handler(self):
        async def handler(inv):
            return {"textResultForLlm": str(inv["arguments"]["n"] * 2), "resultType": "success"}

        registry = ToolRegistry([Tool(name="double", description="x", handler=handler)])

        result = await registry.invoke(invocation("double", {"n": 21}))
        assert result == {"textResultForLlm": "42", "resultType": "success"}
