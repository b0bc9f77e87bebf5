"""Tests for the tool registry and batch tool execution.

Covers:
- ToolRegistry registration, lookup and API definitions
- execute_tool_use(): sync/async tools, parse, output shaping
- Missing tools and raising tools reported as is_error results
- build_tool_results_message(): ordering and concurrency
"""

import asyncio
import threading

import pytest

from agentloop.api.tools import (
    PermissionDecision,
    ToolDefinition,
    ToolRegistry,
    build_tool_results_message,
    execute_tool_use,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _echo(tool_input):
    return tool_input["text"]


async def _async_echo(tool_input):
    await asyncio.sleep(0)
    return tool_input["text"]


def _boom(tool_input):
    raise ValueError("boom")


@pytest.fixture
def registry():
    return ToolRegistry([
        ToolDefinition(
            name="Echo",
            run=_echo,
            description="Echo the text back",
            input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        ),
        ToolDefinition(name="AsyncEcho", run=_async_echo),
        ToolDefinition(name="Boom", run=_boom),
    ])


def _tool_use(tool_use_id, name, tool_input=None):
    return {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input or {}}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_lookup(self, registry):
        assert registry.get("Echo").name == "Echo"
        assert registry.get("missing") is None
        assert "Boom" in registry
        assert len(registry) == 3

    def test_definitions_in_api_format(self, registry):
        defs = registry.tool_definitions()
        echo = next(d for d in defs if d["name"] == "Echo")
        assert echo == {
            "name": "Echo",
            "description": "Echo the text back",
            "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        }
        assert set(echo) == {"name", "description", "input_schema"}

    def test_default_schema(self):
        tool = ToolDefinition(name="Noop", run=lambda _: None)
        assert tool.api_definition()["input_schema"] == {"type": "object", "properties": {}}

    def test_later_registration_replaces(self, registry):
        registry.register(ToolDefinition(name="Echo", run=lambda _: "replaced"))
        assert len(registry) == 3
        assert registry.get("Echo").run({}) == "replaced"


# ---------------------------------------------------------------------------
# Single execution
# ---------------------------------------------------------------------------


class TestExecuteToolUse:
    @pytest.mark.asyncio
    async def test_sync_tool(self, registry):
        result = await execute_tool_use(registry, _tool_use("t1", "Echo", {"text": "hi"}))
        assert result == {"type": "tool_result", "tool_use_id": "t1", "content": "hi"}

    @pytest.mark.asyncio
    async def test_async_tool(self, registry):
        result = await execute_tool_use(registry, _tool_use("t1", "AsyncEcho", {"text": "hi"}))
        assert result["content"] == "hi"
        assert "is_error" not in result

    @pytest.mark.asyncio
    async def test_missing_tool(self, registry):
        result = await execute_tool_use(registry, _tool_use("t1", "Nope"))
        assert result == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": "Error: Tool 'Nope' not found",
            "is_error": True,
        }

    @pytest.mark.asyncio
    async def test_tool_without_run_is_not_found(self):
        registry = ToolRegistry([ToolDefinition(name="Declared", run=None)])
        result = await execute_tool_use(registry, _tool_use("t1", "Declared"))
        assert result["is_error"] is True
        assert "not found" in result["content"]

    @pytest.mark.asyncio
    async def test_raising_tool(self, registry):
        result = await execute_tool_use(registry, _tool_use("t1", "Boom"))
        assert result["is_error"] is True
        assert result["content"] == "Error: boom"

    @pytest.mark.asyncio
    async def test_parse_normalises_input(self):
        registry = ToolRegistry([
            ToolDefinition(name="Upper", run=lambda s: s, parse=lambda raw: raw["text"].upper()),
        ])
        result = await execute_tool_use(registry, _tool_use("t1", "Upper", {"text": "abc"}))
        assert result["content"] == "ABC"

    @pytest.mark.asyncio
    async def test_parse_failure_is_tool_error(self):
        registry = ToolRegistry([
            ToolDefinition(name="Strict", run=lambda s: s, parse=lambda raw: raw["required"]),
        ])
        result = await execute_tool_use(registry, _tool_use("t1", "Strict", {}))
        assert result["is_error"] is True
        assert result["content"].startswith("Error: ")

    @pytest.mark.asyncio
    async def test_non_string_output_serialised(self):
        registry = ToolRegistry([
            ToolDefinition(name="Dict", run=lambda _: {"count": 2}),
            ToolDefinition(name="Blocks", run=lambda _: [{"type": "text", "text": "x"}]),
            ToolDefinition(name="Nothing", run=lambda _: None),
        ])
        assert (await execute_tool_use(registry, _tool_use("a", "Dict")))["content"] == '{"count": 2}'
        assert (await execute_tool_use(registry, _tool_use("b", "Blocks")))["content"] == [{"type": "text", "text": "x"}]
        assert (await execute_tool_use(registry, _tool_use("c", "Nothing")))["content"] == ""


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


class TestBuildToolResultsMessage:
    @pytest.mark.asyncio
    async def test_error_alongside_success(self, registry):
        message = {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Running both"},
                _tool_use("t1", "Echo", {"text": "fine"}),
                _tool_use("t2", "Boom"),
            ],
        }

        result = await build_tool_results_message(registry, message)

        assert result["role"] == "user"
        first, second = result["content"]
        assert first == {"type": "tool_result", "tool_use_id": "t1", "content": "fine"}
        assert second["tool_use_id"] == "t2"
        assert second["is_error"] is True
        assert second["content"] == "Error: boom"

    @pytest.mark.asyncio
    async def test_results_keep_block_order(self):
        async def slow(tool_input):
            await asyncio.sleep(0.02)
            return "slow"

        async def fast(tool_input):
            return "fast"

        registry = ToolRegistry([ToolDefinition(name="Slow", run=slow), ToolDefinition(name="Fast", run=fast)])
        message = {"role": "assistant", "content": [_tool_use("t1", "Slow"), _tool_use("t2", "Fast")]}

        result = await build_tool_results_message(registry, message)

        assert [b["tool_use_id"] for b in result["content"]] == ["t1", "t2"]
        assert [b["content"] for b in result["content"]] == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_tools_run_concurrently(self):
        started = []
        release = asyncio.Event()

        async def waits(tool_input):
            started.append(tool_input["n"])
            await release.wait()
            return "done"

        async def releases(tool_input):
            started.append(tool_input["n"])
            release.set()
            return "released"

        registry = ToolRegistry([ToolDefinition(name="Wait", run=waits), ToolDefinition(name="Release", run=releases)])
        message = {
            "role": "assistant",
            "content": [_tool_use("t1", "Wait", {"n": 1}), _tool_use("t2", "Release", {"n": 2})],
        }

        result = await asyncio.wait_for(build_tool_results_message(registry, message), timeout=1)

        assert sorted(started) == [1, 2]
        assert [b["content"] for b in result["content"]] == ["done", "released"]

    @pytest.mark.asyncio
    async def test_sync_tools_run_concurrently(self):
        # Each call blocks until both are inside run(); a serial batch times out the barrier
        barrier = threading.Barrier(2, timeout=2)

        def blocking(tool_input):
            barrier.wait()
            return tool_input["n"]

        registry = ToolRegistry([ToolDefinition(name="Block", run=blocking)])
        message = {
            "role": "assistant",
            "content": [_tool_use("t1", "Block", {"n": 1}), _tool_use("t2", "Block", {"n": 2})],
        }

        result = await build_tool_results_message(registry, message)

        assert [b.get("is_error") for b in result["content"]] == [None, None]
        assert [b["content"] for b in result["content"]] == ["1", "2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        None,
        {"role": "user", "content": [_tool_use("t1", "Echo")]},
        {"role": "assistant", "content": "plain text"},
        {"role": "assistant", "content": [{"type": "text", "text": "no tools"}]},
        {"role": "assistant", "content": []},
    ])
    async def test_no_tool_response(self, registry, message):
        assert await build_tool_results_message(registry, message) is None


class TestPermissionDecision:
    def test_defaults(self):
        decision = PermissionDecision(behavior="allow")
        assert decision.message is None
        assert decision.updated_input is None

    def test_rejects_unknown_behavior(self):
        with pytest.raises(ValueError):
            PermissionDecision(behavior="maybe")
