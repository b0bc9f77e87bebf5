"""Tool registry and batch execution for the tool runner.

Provides:
- ToolDefinition: name, schema, optional input normaliser, run callable
- ToolRegistry: registers tools, looks them up by name, emits API definitions
- build_tool_results_message: runs every tool_use block of an assistant
  message concurrently and returns one user message of tool_result blocks
- PermissionEngine: the decide() contract an outer caller may use to gate
  tool execution

A failing tool never raises out of the batch: missing tools and tool
errors come back as tool_result blocks with is_error=True.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


@dataclass
class ToolDefinition:
    """A callable capability the model can invoke.

    run may be sync or async; a sync run executes in a worker thread.
    parse, when set, normalises the raw model input before run sees it;
    raising from parse is reported as a tool error.
    """

    name: str
    run: Callable[[Any], Any] | None
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    parse: Callable[[Any], Any] | None = None

    def api_definition(self) -> dict[str, Any]:
        """Tool definition in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Name -> ToolDefinition lookup.

    Later registrations replace earlier ones with the same name.
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool
        logger.debug("Registered tool '%s'", tool.name)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [tool.api_definition() for tool in self._tools.values()]

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _to_result_content(output: Any) -> str | list[Any]:
    """Shape a tool's return value as tool_result content."""
    if isinstance(output, (str, list)):
        return output
    if output is None:
        return ""
    return json.dumps(output, default=str)


def _error_result(tool_use_id: str, message: str) -> dict[str, Any]:
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": message,
        "is_error": True,
    }


async def execute_tool_use(registry: ToolRegistry, tool_use: dict[str, Any]) -> dict[str, Any]:
    """Execute one tool_use block and return its tool_result block."""
    name = tool_use.get("name", "")
    tool_use_id = tool_use.get("id", "")
    tool = registry.get(name)
    if tool is None or tool.run is None:
        logger.warning("Model requested unknown tool '%s' (%s)", name, tool_use_id)
        return _error_result(tool_use_id, f"Error: Tool '{name}' not found")

    try:
        tool_input = tool_use.get("input", {})
        if tool.parse is not None:
            tool_input = tool.parse(tool_input)
        if inspect.iscoroutinefunction(tool.run):
            output = await tool.run(tool_input)
        else:
            # Sync tools run in worker threads so a batch stays concurrent
            output = await asyncio.to_thread(tool.run, tool_input)
            if inspect.isawaitable(output):
                output = await output
    except Exception as e:
        logger.exception("Tool execution error for %s", name)
        return _error_result(tool_use_id, f"Error: {e}")

    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": _to_result_content(output),
    }


async def build_tool_results_message(
    registry: ToolRegistry,
    message: dict[str, Any] | None,
) -> dict[str, Any] | None:
    """Tool response for the latest history message, or None.

    Only an assistant message with at least one tool_use block qualifies.
    Calls run concurrently; results keep the order of the tool_use blocks.
    """
    if not message or message.get("role") != "assistant":
        return None
    content = message.get("content")
    if not content or isinstance(content, str):
        return None

    tool_uses = [block for block in content if block.get("type") == "tool_use"]
    if not tool_uses:
        return None

    results = await asyncio.gather(*(execute_tool_use(registry, tu) for tu in tool_uses))
    return {"role": "user", "content": list(results)}


# ---------------------------------------------------------------------------
# Permission gate contract
# ---------------------------------------------------------------------------


class PermissionDecision(BaseModel):
    """Outcome of a permission check for one tool call."""

    behavior: Literal["allow", "deny", "ask"]
    message: str | None = None
    updated_input: dict[str, Any] | None = None


class PermissionEngine(Protocol):
    """Decides whether a tool call may run. Supplied by the outer session driver."""

    def decide(self, tool_name: str, tool_input: dict[str, Any]) -> PermissionDecision: ...
