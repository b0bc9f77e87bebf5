"""Message shaping for Anthropic API requests.

- Prompt-cache markers on the tail of the history
- Transcript entries -> API messages when resuming a conversation
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from agentloop.config import Settings
from agentloop.transcript.reconcile import remove_orphan_tool_uses
from agentloop.transcript.schemas import ConversationEntry, MessageEntry

# Number of trailing messages that receive a cache breakpoint
CACHED_TAIL_MESSAGES = 3

_UNCACHEABLE_BLOCKS = frozenset({"thinking", "redacted_thinking"})


def cache_control(settings: Settings) -> dict[str, Any]:
    """Ephemeral cache_control marker, with TTL when configured."""
    marker: dict[str, Any] = {"type": "ephemeral"}
    if settings.prompt_cache_ttl:
        marker["ttl"] = settings.prompt_cache_ttl
    return marker


def should_enable_prompt_caching(model: str, settings: Settings) -> bool:
    """Global switch plus per-family opt-outs matched on the model id."""
    if not settings.prompt_caching:
        return False
    families = {
        "haiku": settings.prompt_caching_haiku,
        "sonnet": settings.prompt_caching_sonnet,
        "opus": settings.prompt_caching_opus,
    }
    return all(enabled or family not in model for family, enabled in families.items())


def _mark_last_block(
    content: str | list[dict[str, Any]],
    marker: dict[str, Any],
) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content, "cache_control": marker}]
    if not content:
        return content
    last = content[-1]
    if last.get("type") in _UNCACHEABLE_BLOCKS:
        return content
    return [*content[:-1], {**last, "cache_control": marker}]


def add_cache_control(
    messages: list[dict[str, Any]],
    settings: Settings,
) -> list[dict[str, Any]]:
    """Return a copy of messages with cache breakpoints on the last few.

    Input dicts are left untouched.
    """
    start = max(0, len(messages) - CACHED_TAIL_MESSAGES)
    marker = cache_control(settings)
    return [
        {**msg, "content": _mark_last_block(msg["content"], marker)} if i >= start else msg
        for i, msg in enumerate(messages)
    ]


def to_api_message(entry: MessageEntry) -> dict[str, Any]:
    return {"role": entry.type, "content": entry.message.content}


def messages_from_transcript(entries: Iterable[ConversationEntry]) -> list[dict[str, Any]]:
    """Rebuild request history from a persisted transcript.

    Orphan tool_use blocks (calls interrupted before a result was
    recorded) are dropped so the model is never handed a dangling
    request. Non-message entries are not part of the API history.
    """
    return [
        to_api_message(entry)
        for entry in remove_orphan_tool_uses(entries)
        if isinstance(entry, MessageEntry)
    ]
