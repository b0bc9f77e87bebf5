"""Grouping and lookup primitives over a transcript.

build_tool_context() makes one pass and returns an immutable snapshot
used by renderers to answer "what ran alongside this call", "which
progress updates belong to it" and "is a hook still running for it".

Hook liveness is count-based: a hook is pending for (tool_use_id,
hook_event) while more hook_progress entries were seen than distinct
hook names reported an attachment. Two hooks sharing a name can
desynchronise this bookkeeping.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from agentloop.transcript.identity import (
    get_tool_use_id,
    is_hook_attachment,
    leading_tool_result,
    leading_tool_use_id,
)
from agentloop.transcript.schemas import (
    AttachmentEntry,
    ConversationEntry,
    HookEvent,
    MessageEntry,
    ProgressEntry,
)

HookKey = tuple[str | None, HookEvent]


def _empty() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class ToolContext:
    """Lookup snapshot built once per render."""

    sibling_tool_use_ids: Mapping[str, frozenset[str]] = field(default_factory=_empty)
    progress_by_tool_use_id: Mapping[str | None, tuple[ProgressEntry, ...]] = field(default_factory=_empty)
    in_progress_hook_counts: Mapping[HookKey, int] = field(default_factory=_empty)
    resolved_hook_counts: Mapping[HookKey, int] = field(default_factory=_empty)


def build_tool_context(
    entries: Iterable[ConversationEntry],
    messages: Iterable[ConversationEntry],
) -> ToolContext:
    """Index entries (display sequence) against messages (authoritative history).

    Siblings are grouped by API message id; assistant entries without one
    fall back to their own uuid so unrelated responses never merge.
    """
    ids_by_message: dict[str, set[str]] = defaultdict(set)
    message_by_tool_use: dict[str, str] = {}
    for entry in messages:
        if not isinstance(entry, MessageEntry) or entry.type != "assistant":
            continue
        content = entry.message.content
        if not isinstance(content, list):
            continue
        message_id = entry.message.id or entry.uuid
        bucket = ids_by_message[message_id]
        for block in content:
            if block.get("type") == "tool_use" and block.get("id"):
                bucket.add(block["id"])
                message_by_tool_use[block["id"]] = message_id

    frozen_buckets = {mid: frozenset(ids) for mid, ids in ids_by_message.items()}
    siblings = {tid: frozen_buckets[mid] for tid, mid in message_by_tool_use.items()}

    progress: dict[str | None, list[ProgressEntry]] = defaultdict(list)
    in_progress: Counter[HookKey] = Counter()
    hook_names: dict[HookKey, set[str | None]] = defaultdict(set)

    for entry in entries:
        if isinstance(entry, ProgressEntry):
            progress[entry.parent_tool_use_id].append(entry)
            if entry.data.type == "hook_progress" and entry.data.hook_event:
                in_progress[(entry.parent_tool_use_id, entry.data.hook_event)] += 1
        elif is_hook_attachment(entry):
            attachment = entry.attachment
            if attachment.hook_event:
                hook_names[(attachment.tool_use_id, attachment.hook_event)].add(attachment.hook_name)

    return ToolContext(
        sibling_tool_use_ids=MappingProxyType(siblings),
        progress_by_tool_use_id=MappingProxyType({k: tuple(v) for k, v in progress.items()}),
        in_progress_hook_counts=MappingProxyType(dict(in_progress)),
        resolved_hook_counts=MappingProxyType({k: len(v) for k, v in hook_names.items()}),
    )


def get_sibling_tool_use_ids(entry: ConversationEntry, ctx: ToolContext) -> frozenset[str]:
    """All tool_use ids requested in the same assistant response as entry's call."""
    tool_use_id = get_tool_use_id(entry)
    if not tool_use_id:
        return frozenset()
    return ctx.sibling_tool_use_ids.get(tool_use_id, frozenset())


def get_progress_for_entry(entry: ConversationEntry, ctx: ToolContext) -> tuple[ProgressEntry, ...]:
    tool_use_id = get_tool_use_id(entry)
    if not tool_use_id:
        return ()
    return ctx.progress_by_tool_use_id.get(tool_use_id, ())


def has_in_progress_hooks(tool_use_id: str, hook_event: HookEvent, ctx: ToolContext) -> bool:
    key = (tool_use_id, hook_event)
    return ctx.in_progress_hook_counts.get(key, 0) > ctx.resolved_hook_counts.get(key, 0)


def count_hook_progress_entries(
    entries: Iterable[ConversationEntry],
    tool_use_id: str,
    hook_event: HookEvent,
) -> int:
    return sum(
        1
        for entry in entries
        if isinstance(entry, ProgressEntry)
        and entry.data.type == "hook_progress"
        and entry.data.hook_event == hook_event
        and entry.parent_tool_use_id == tool_use_id
    )


def count_resolved_hooks(
    entries: Iterable[ConversationEntry],
    tool_use_id: str,
    hook_event: HookEvent,
) -> int:
    """Number of distinct hook names that reported for (tool_use_id, hook_event)."""
    return len({
        entry.attachment.hook_name
        for entry in entries
        if isinstance(entry, AttachmentEntry)
        and is_hook_attachment(entry)
        and entry.attachment.tool_use_id == tool_use_id
        and entry.attachment.hook_event == hook_event
    })


def tool_result_error_map(entries: Iterable[ConversationEntry]) -> dict[str, bool]:
    """tool_use_id -> is_error for every tool_result leading a user entry."""
    errors: dict[str, bool] = {}
    for entry in entries:
        result = leading_tool_result(entry)
        if result is not None and result.get("tool_use_id"):
            errors[result["tool_use_id"]] = bool(result.get("is_error", False))
    return errors


def get_tool_use_ids(entries: Iterable[ConversationEntry]) -> set[str]:
    """ids of tool_use blocks leading assistant entries (post-split shape)."""
    ids = set()
    for entry in entries:
        tool_use_id = leading_tool_use_id(entry)
        if tool_use_id:
            ids.add(tool_use_id)
    return ids


def get_error_tool_use_ids(entries: list[ConversationEntry]) -> set[str]:
    errors = tool_result_error_map(entries)
    return {tid for tid in get_tool_use_ids(entries) if errors.get(tid) is True}


def missing_tool_result_ids(entries: list[ConversationEntry]) -> set[str]:
    """tool_use ids with no tool_result anywhere in entries (orphans)."""
    return get_tool_use_ids(entries) - tool_result_error_map(entries).keys()
