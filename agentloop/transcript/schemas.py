"""Pydantic models for transcript entries.

A transcript is an arrival-ordered list of heterogeneous entries:
user/assistant messages, out-of-band attachments (hook notifications),
transient progress updates, and system entries. Persisted JSON keeps the
camelCase keys; Python code uses the snake_case attribute names.

Content blocks are left as plain dicts in the Anthropic wire shape.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

ContentBlock = dict[str, Any]
MessageContent = Union[str, list[ContentBlock]]

HookEvent = str  # "PreToolUse", "PostToolUse", ...

PRE_TOOL_USE = "PreToolUse"
POST_TOOL_USE = "PostToolUse"

HOOK_ATTACHMENT_TYPES = frozenset({
    "hook_blocking_error",
    "hook_cancelled",
    "hook_error_during_execution",
    "hook_non_blocking_error",
    "hook_success",
    "hook_system_message",
    "hook_additional_context",
    "hook_stopped_continuation",
})


def new_uuid() -> str:
    return str(uuid4())


class _EntryModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class MessageBody(_EntryModel):
    """The API-shaped payload of a message entry."""

    content: MessageContent
    role: Literal["user", "assistant", "system"] | None = None
    id: str | None = None  # API message id, shared by all blocks of one response
    context_management: Any = None


class MessageEntry(_EntryModel):
    """A user or assistant turn."""

    type: Literal["user", "assistant"]
    message: MessageBody
    uuid: str = Field(default_factory=new_uuid)
    timestamp: str | None = None
    request_id: str | None = Field(None, alias="requestId")
    is_meta: bool | None = Field(None, alias="isMeta")
    is_visible_in_transcript_only: bool | None = Field(None, alias="isVisibleInTranscriptOnly")
    is_compact_summary: bool | None = Field(None, alias="isCompactSummary")
    tool_use_result: Any = Field(None, alias="toolUseResult")
    mcp_meta: Any = Field(None, alias="mcpMeta")
    image_paste_ids: list[str] | None = Field(None, alias="imagePasteIds")
    source_tool_use_id: str | None = Field(None, alias="sourceToolUseID")
    error: Any = None
    is_api_error_message: bool | None = Field(None, alias="isApiErrorMessage")


class Attachment(_EntryModel):
    type: str
    tool_use_id: str | None = Field(None, alias="toolUseID")
    hook_event: HookEvent | None = Field(None, alias="hookEvent")
    hook_name: str | None = Field(None, alias="hookName")


class AttachmentEntry(_EntryModel):
    """Out-of-band notification, most importantly hook results."""

    type: Literal["attachment"] = "attachment"
    attachment: Attachment
    uuid: str = Field(default_factory=new_uuid)
    timestamp: str | None = None


class ProgressData(_EntryModel):
    type: str
    hook_event: HookEvent | None = Field(None, alias="hookEvent")


class ProgressEntry(_EntryModel):
    """Transient in-flight notification for a running tool or hook."""

    type: Literal["progress"] = "progress"
    data: ProgressData
    uuid: str = Field(default_factory=new_uuid)
    timestamp: str | None = None
    tool_use_id: str | None = Field(None, alias="toolUseID")
    parent_tool_use_id: str | None = Field(None, alias="parentToolUseID")


class SystemEntry(_EntryModel):
    """Informational or error entry; subtype ``api_error`` is collapsed on render."""

    type: Literal["system"] = "system"
    uuid: str = Field(default_factory=new_uuid)
    timestamp: str | None = None
    subtype: str | None = None
    tool_use_id: str | None = Field(None, alias="toolUseID")
    content: Any = None
    level: str | None = None
    is_meta: bool | None = Field(None, alias="isMeta")


ConversationEntry = Annotated[
    Union[MessageEntry, AttachmentEntry, ProgressEntry, SystemEntry],
    Field(discriminator="type"),
]

_entries_adapter: TypeAdapter[list[ConversationEntry]] = TypeAdapter(list[ConversationEntry])


def parse_entries(data: list[dict[str, Any]]) -> list[ConversationEntry]:
    """Validate raw (persisted) entry dicts into typed entries."""
    return _entries_adapter.validate_python(data)


def dump_entries(entries: list[ConversationEntry]) -> list[dict[str, Any]]:
    """Serialise entries with their persisted (camelCase) keys, omitting unset fields."""
    return [entry.model_dump(by_alias=True, exclude_none=True) for entry in entries]
