"""Shared fixtures: settings, transcript entry builders, and a scripted model caller."""

from __future__ import annotations

import uuid
from typing import Any

import pytest

from agentloop.api.models import ApiResponse, RequestOptions
from agentloop.config import Settings
from agentloop.transcript.schemas import (
    Attachment,
    AttachmentEntry,
    MessageBody,
    MessageEntry,
    ProgressData,
    ProgressEntry,
    SystemEntry,
)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's .env and environment."""
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY="test-key",
        ANTHROPIC_AUTH_TOKEN="",
        model="claude-sonnet-4-5-20250514",
        max_tokens=1024,
        prompt_cache_ttl=None,
    )


# ---------------------------------------------------------------------------
# Transcript entry builders
# ---------------------------------------------------------------------------


def tool_use_block(tool_use_id: str, name: str = "Echo", tool_input: dict | None = None) -> dict:
    return {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input or {}}


def tool_result_block(tool_use_id: str, content: Any = "ok", is_error: bool | None = None) -> dict:
    block = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error is not None:
        block["is_error"] = is_error
    return block


def user(content: str | list[dict], **fields: Any) -> MessageEntry:
    return MessageEntry(type="user", message=MessageBody(role="user", content=content), **fields)


def assistant(content: str | list[dict], message_id: str | None = None, **fields: Any) -> MessageEntry:
    return MessageEntry(
        type="assistant",
        message=MessageBody(role="assistant", content=content, id=message_id),
        **fields,
    )


def hook(
    tool_use_id: str | None,
    hook_event: str = "PreToolUse",
    hook_name: str = "lint",
    kind: str = "hook_success",
) -> AttachmentEntry:
    return AttachmentEntry(
        attachment=Attachment(
            type=kind,
            tool_use_id=tool_use_id,
            hook_event=hook_event,
            hook_name=hook_name,
        )
    )


def hook_progress(parent_tool_use_id: str, hook_event: str = "PreToolUse") -> ProgressEntry:
    return ProgressEntry(
        parent_tool_use_id=parent_tool_use_id,
        tool_use_id=parent_tool_use_id,
        data=ProgressData(type="hook_progress", hook_event=hook_event),
    )


def api_error(label: str = "") -> SystemEntry:
    return SystemEntry(subtype="api_error", content=label or f"error-{uuid.uuid4().hex[:6]}")


def info(label: str) -> SystemEntry:
    return SystemEntry(subtype="informational", content=label)


# ---------------------------------------------------------------------------
# Scripted model caller
# ---------------------------------------------------------------------------


def make_api_response(
    text: str = "",
    stop_reason: str = "end_turn",
    tool_uses: list[dict] | None = None,
) -> ApiResponse:
    """Build an ApiResponse with text and/or tool_use blocks."""
    content = []
    if text:
        content.append({"type": "text", "text": text})
    for tu in tool_uses or []:
        content.append(tool_use_block(
            tu.get("id", f"toolu_{uuid.uuid4().hex[:12]}"),
            tu["name"],
            tu.get("input", {}),
        ))
    return ApiResponse(content=content, stop_reason=stop_reason)


class ScriptedClient:
    """Model caller returning preset responses in order.

    Records a snapshot of each request's messages. A callable script
    entry is invoked with the request and its return value used instead.
    """

    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.requests: list[dict[str, Any]] = []
        self.options: list[RequestOptions | None] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def create(self, params: dict[str, Any], options: RequestOptions | None = None) -> ApiResponse:
        self.requests.append({**params, "messages": list(params["messages"])})
        self.options.append(options)
        if not self._responses:
            raise AssertionError("ScriptedClient ran out of responses")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(params)
        return item

    def stream(self, params: dict[str, Any], options: RequestOptions | None = None):
        raise NotImplementedError("use a streaming fake")
