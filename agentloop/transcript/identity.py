"""Entry-identity helpers: which tool call does an entry belong to.

Every helper treats absent optional fields as "no match" and never raises
on malformed shapes.
"""

from __future__ import annotations

from typing import Any

from agentloop.transcript.schemas import (
    HOOK_ATTACHMENT_TYPES,
    AttachmentEntry,
    ConversationEntry,
    MessageEntry,
    ProgressEntry,
    SystemEntry,
)


def first_block(entry: ConversationEntry) -> dict[str, Any] | None:
    """First content block of a message entry, or None for string/empty content."""
    if not isinstance(entry, MessageEntry):
        return None
    content = entry.message.content
    if isinstance(content, list) and content:
        return content[0]
    return None


def is_hook_attachment(entry: ConversationEntry) -> bool:
    return isinstance(entry, AttachmentEntry) and entry.attachment.type in HOOK_ATTACHMENT_TYPES


def is_api_error(entry: ConversationEntry) -> bool:
    return isinstance(entry, SystemEntry) and entry.subtype == "api_error"


def is_assistant_tool_use(entry: ConversationEntry) -> bool:
    """True when an assistant entry carries at least one tool_use block."""
    if not isinstance(entry, MessageEntry) or entry.type != "assistant":
        return False
    content = entry.message.content
    return isinstance(content, list) and any(b.get("type") == "tool_use" for b in content)


def is_user_tool_result(entry: ConversationEntry) -> bool:
    if not isinstance(entry, MessageEntry) or entry.type != "user":
        return False
    block = first_block(entry)
    return (block is not None and block.get("type") == "tool_result") or bool(entry.tool_use_result)


def leading_tool_use_id(entry: ConversationEntry) -> str | None:
    """id of the tool_use block leading an assistant entry."""
    if not isinstance(entry, MessageEntry) or entry.type != "assistant":
        return None
    block = first_block(entry)
    if block is not None and block.get("type") == "tool_use":
        return block.get("id")
    return None


def leading_tool_result(entry: ConversationEntry) -> dict[str, Any] | None:
    """The tool_result block leading a user entry."""
    if not isinstance(entry, MessageEntry) or entry.type != "user":
        return None
    block = first_block(entry)
    if block is not None and block.get("type") == "tool_result":
        return block
    return None


def get_tool_use_id(entry: ConversationEntry) -> str | None:
    """The tool_use id an entry correlates to, if any."""
    if isinstance(entry, AttachmentEntry):
        return entry.attachment.tool_use_id if is_hook_attachment(entry) else None
    if isinstance(entry, MessageEntry):
        if entry.type == "assistant":
            return leading_tool_use_id(entry)
        if entry.source_tool_use_id:
            return entry.source_tool_use_id
        result = leading_tool_result(entry)
        return result.get("tool_use_id") if result is not None else None
    if isinstance(entry, ProgressEntry):
        return entry.tool_use_id
    if isinstance(entry, SystemEntry) and entry.subtype == "informational":
        return entry.tool_use_id
    return None
