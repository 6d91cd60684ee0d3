"""Server-side tool registry used by the orchestration loop."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from llm_gateway.errors import ToolExecutionError
from llm_gateway.types import FunctionSpec, ToolSpec

_logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    """A named tool with a JSON schema and an async handler."""

    name: str
    handler: ToolHandler
    description: str = ""
    json_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    validate: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    def to_spec(self) -> ToolSpec:
        return ToolSpec(
            function=FunctionSpec(
                name=self.name,
                description=self.description,
                parameters=self.json_schema,
            )
        )


def _stringify(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


class ToolRegistry:
    """Registry of available tools with async execution."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: Tool) -> None:
        """Register a tool instance."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        """Look up a tool by name."""
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        """Return OpenAI function-calling specs for all registered tools."""
        return [tool.to_spec() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: str | Mapping[str, Any] | None) -> str:
        """Run a tool and return its output as text.

        Unknown tools, malformed arguments and handler exceptions become
        explanatory output instead of raising.
        """
        tool = self._tools.get(name)
        if tool is None:
            return f"Unknown tool: {name}"
        try:
            args = self._parse_arguments(name, arguments)
            if tool.validate is not None:
                args = tool.validate(args)
            output = await tool.handler(args)
        except ToolExecutionError as exc:
            _logger.warning("%s", exc)
            return str(exc)
        except Exception as exc:
            _logger.warning("Tool %s raised %s: %s", name, type(exc).__name__, exc)
            return str(ToolExecutionError(name, str(exc) or type(exc).__name__))
        return _stringify(output)

    @staticmethod
    def _parse_arguments(name: str, arguments: str | Mapping[str, Any] | None) -> dict[str, Any]:
        if arguments is None or arguments == "":
            return {}
        if isinstance(arguments, Mapping):
            return dict(arguments)
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(name, f"invalid JSON arguments ({exc.msg})") from exc
        if not isinstance(parsed, dict):
            raise ToolExecutionError(name, "arguments must be a JSON object")
        return parsed


def _validate_no_arguments(args: dict[str, Any]) -> dict[str, Any]:
    if args:
        raise ValueError("get_time takes no arguments")
    return {}


async def _get_time(_: dict[str, Any]) -> dict[str, str]:
    now = datetime.now().astimezone()
    return {
        "iso": now.isoformat(),
        "human": now.strftime("%Y-%m-%d %H:%M:%S %Z"),
        "timezone": now.tzname() or "UTC",
    }


GET_TIME = Tool(
    name="get_time",
    description="Get the current time in ISO format with timezone information",
    handler=_get_time,
    validate=_validate_no_arguments,
)


def default_registry() -> ToolRegistry:
    """Registry holding the built-in tools."""
    return ToolRegistry([GET_TIME])
