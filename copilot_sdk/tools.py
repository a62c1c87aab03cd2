"""
Custom tools: declaring them and dispatching the agent's calls to them.

Use :func:`define_tool` to turn a plain function into a :class:`Tool` whose
parameter schema comes from a pydantic model, or build a :class:`Tool`
directly with a hand-written JSON schema.

Example:
    >>> from pydantic import BaseModel, Field
    >>> from copilot_sdk import define_tool
    >>>
    >>> class WeatherParams(BaseModel):
    ...     city: str = Field(description="City to look up")
    >>>
    >>> @define_tool(description="Get the current weather for a city")
    ... async def get_weather(params: WeatherParams) -> str:
    ...     return f"Sunny in {params.city}"
"""

import inspect
import json
import logging
import threading
import typing
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from .types import Tool, ToolHandler, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)


def define_tool(
    name: Optional[str] = None,
    *,
    description: Optional[str] = None,
    handler: Optional[Callable[..., Any]] = None,
    params_type: Optional[type[BaseModel]] = None,
) -> Any:
    """
    Define a tool backed by a Python function.

    Works as a decorator (``@define_tool(description=...)``) or as a direct
    call (``define_tool("name", description=..., handler=fn)``).

    The handler may accept no arguments, the validated parameters, or the
    parameters and the raw :class:`ToolInvocation`, and may be sync or async.
    When ``params_type`` is not given it is taken from the annotation of the
    handler's first parameter, if that is a pydantic model; otherwise the
    handler receives the raw argument dict.

    Args:
        name: Tool name; defaults to the function name.
        description: Shown to the model; defaults to the function docstring.
        handler: The function, when not used as a decorator.
        params_type: Pydantic model describing the arguments.

    Returns:
        A :class:`Tool`, or a decorator producing one.
    """

    def decorator(fn: Callable[..., Any]) -> Tool:
        tool_name = name or fn.__name__
        model = params_type or _infer_params_type(fn)
        arity = _positional_arity(fn)

        async def invoke(invocation: ToolInvocation) -> ToolResult:
            arguments = invocation.get("arguments") or {}
            params: Any = arguments
            if model is not None:
                try:
                    params = model.model_validate(arguments)
                except ValidationError as e:
                    return ToolResult(
                        textResultForLlm=f"Invalid arguments for tool '{tool_name}': {e}",
                        resultType="failure",
                        error=str(e),
                        toolTelemetry={},
                    )

            call_args = (params, invocation)[:arity]
            result = fn(*call_args)
            if inspect.isawaitable(result):
                result = await result
            return _to_tool_result(result)

        return Tool(
            name=tool_name,
            description=description or inspect.getdoc(fn) or "",
            handler=invoke,
            parameters=model.model_json_schema() if model is not None else None,
        )

    if handler is not None:
        return decorator(handler)
    return decorator


def _infer_params_type(fn: Callable[..., Any]) -> Optional[type[BaseModel]]:
    params = [
        p
        for p in inspect.signature(fn).parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    if not params:
        return None

    try:
        annotation = typing.get_type_hints(fn).get(params[0].name)
    except (NameError, TypeError):
        annotation = params[0].annotation

    if inspect.isclass(annotation) and issubclass(annotation, BaseModel):
        return annotation
    return None


def _positional_arity(fn: Callable[..., Any]) -> int:
    count = 0
    for p in inspect.signature(fn).parameters.values():
        if p.kind == p.VAR_POSITIONAL:
            return 2
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD):
            count += 1
    return min(count, 2)


def _to_tool_result(value: Any) -> ToolResult:
    if value is None:
        return ToolResult(textResultForLlm="", resultType="success")
    if isinstance(value, str):
        return ToolResult(textResultForLlm=value, resultType="success")
    if isinstance(value, dict) and "textResultForLlm" in value and "resultType" in value:
        return typing.cast(ToolResult, value)
    if isinstance(value, BaseModel):
        return ToolResult(textResultForLlm=value.model_dump_json(), resultType="success")
    return ToolResult(textResultForLlm=json.dumps(value, default=str), resultType="success")


def unsupported_tool_result(tool_name: str) -> ToolResult:
    return ToolResult(
        textResultForLlm=f"Tool '{tool_name}' is not supported.",
        resultType="failure",
        error=f"tool '{tool_name}' not supported",
        toolTelemetry={},
    )


class ToolRegistry:
    """Tools declared by one session, keyed by name."""

    def __init__(self, tools: Optional[list[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        self._lock = threading.Lock()
        if tools:
            self.register(tools)

    def register(self, tools: Optional[list[Tool]]) -> None:
        """
        Replace the registered tools.

        Raises:
            ValueError: If a tool has no name or two tools share a name.
        """
        registered: dict[str, Tool] = {}
        for tool in tools or []:
            if not tool.name:
                raise ValueError("Tool name must not be empty")
            if tool.name in registered:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            registered[tool.name] = tool
        with self._lock:
            self._tools = registered

    def clear(self) -> None:
        with self._lock:
            self._tools = {}

    def get(self, name: str) -> Optional[ToolHandler]:
        with self._lock:
            tool = self._tools.get(name)
        return tool.handler if tool else None

    def names(self) -> list[str]:
        with self._lock:
            return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Tool declarations in wire format, handlers excluded."""
        with self._lock:
            return [tool.to_wire() for tool in self._tools.values()]

    async def invoke(self, invocation: ToolInvocation) -> ToolResult:
        """
        Run the handler for ``invocation`` and return a result for the agent.

        Never raises: unknown tools, handler exceptions and empty results all
        become failure results. Exception details go to the ``error`` field,
        which the agent logs but does not show the model.
        """
        tool_name = invocation["tool_name"]
        handler = self.get(tool_name)
        if handler is None:
            return unsupported_tool_result(tool_name)

        try:
            result = handler(invocation)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning("Tool %s (call %s) failed: %s", tool_name, invocation["tool_call_id"], e)
            return ToolResult(
                textResultForLlm="Invoking this tool produced an error. "
                "Detailed information is not available.",
                resultType="failure",
                error=str(e),
                toolTelemetry={},
            )

        if result is None:
            return ToolResult(
                textResultForLlm="Tool returned no result.",
                resultType="failure",
                error="tool returned no result",
                toolTelemetry={},
            )
        return result
