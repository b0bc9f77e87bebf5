"""Transcript reconciliation: canonical ordering for render and storage.

Pure transformations over arrival-ordered entries. Inputs are never
mutated; derived entries are copies.

Pipeline (reconcile()):
  1. split_message_blocks: one entry per content block
  2. remove_orphan_tool_uses (optional): drop calls that never resolved
  3. reorder_tool_use_and_hook_messages: tool_use, pre-hooks, tool_result,
     post-hooks as one contiguous group; api_error entries collapsed

attach_attachments_to_neighbors() is a separate utility for positional
(rather than id-based) hook placement.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from agentloop.transcript.identity import (
    is_api_error,
    is_hook_attachment,
    leading_tool_result,
    leading_tool_use_id,
)
from agentloop.transcript.indexing import missing_tool_result_ids
from agentloop.transcript.schemas import (
    POST_TOOL_USE,
    PRE_TOOL_USE,
    AttachmentEntry,
    ConversationEntry,
    MessageEntry,
    new_uuid,
)

# ------------------------------------------------------------------
# (a) Block splitting
# ------------------------------------------------------------------


def _split_uuid(entry: MessageEntry, index: int, seen_before: bool) -> str:
    # Only the first block of the first multi-block message keeps its uuid;
    # once any message has been split, every later split entry is re-keyed.
    if index == 0 and not seen_before:
        return entry.uuid
    return new_uuid()


def _split_entry(entry: MessageEntry, seen_before: bool) -> tuple[list[MessageEntry], bool]:
    content = entry.message.content

    if isinstance(content, str):
        if entry.type != "user":
            return [entry], seen_before
        wrapped = entry.model_copy(update={
            "uuid": _split_uuid(entry, 0, seen_before),
            "message": entry.message.model_copy(update={
                "content": [{"type": "text", "text": content}],
            }),
        })
        return [wrapped], seen_before

    if not content:
        return [entry], seen_before

    seen_after = seen_before or len(content) > 1
    parts: list[MessageEntry] = []
    image_index = 0
    for index, block in enumerate(content):
        update = {
            "uuid": _split_uuid(entry, index, seen_before),
            "message": entry.message.model_copy(update={
                "content": [block],
                "context_management": entry.message.context_management,
            }),
        }
        if entry.type == "user" and entry.image_paste_ids is not None:
            paste_id = None
            if block.get("type") == "image":
                if image_index < len(entry.image_paste_ids):
                    paste_id = entry.image_paste_ids[image_index]
                image_index += 1
            update["image_paste_ids"] = [paste_id] if paste_id is not None else None
        parts.append(entry.model_copy(update=update))
    return parts, seen_after


def split_message_blocks(entries: Iterable[ConversationEntry]) -> list[ConversationEntry]:
    """Explode multi-block messages into one entry per block.

    Plain-string user content is always wrapped into a single text block.
    Idempotent: a second application leaves ids and content unchanged.
    """
    output: list[ConversationEntry] = []
    seen_multi_block = False
    for entry in entries:
        if not isinstance(entry, MessageEntry):
            output.append(entry)
            continue
        parts, seen_multi_block = _split_entry(entry, seen_multi_block)
        output.extend(parts)
    return output


# ------------------------------------------------------------------
# (b) + (c) Grouping and canonical re-emission
# ------------------------------------------------------------------


@dataclass
class ToolUseGroup:
    """Everything correlated to one tool_use id."""

    tool_use: ConversationEntry | None = None
    pre_hooks: list[ConversationEntry] = field(default_factory=list)
    tool_result: ConversationEntry | None = None
    post_hooks: list[ConversationEntry] = field(default_factory=list)

    def emit(self) -> list[ConversationEntry]:
        if self.tool_use is None:
            return []
        out = [self.tool_use, *self.pre_hooks]
        if self.tool_result is not None:
            out.append(self.tool_result)
        out.extend(self.post_hooks)
        return out


def _hook_id(entry: ConversationEntry, hook_event: str) -> str | None:
    if not isinstance(entry, AttachmentEntry) or not is_hook_attachment(entry):
        return None
    if entry.attachment.hook_event != hook_event:
        return None
    return entry.attachment.tool_use_id


def group_by_tool_use_id(entries: Sequence[ConversationEntry]) -> dict[str, ToolUseGroup]:
    """Collect tool_use, hooks and tool_result entries per tool_use id.

    Shapes are matched on the leading content block, so entries are
    expected to be split already.
    """
    groups: dict[str, ToolUseGroup] = {}
    for entry in entries:
        tool_use_id = leading_tool_use_id(entry)
        if tool_use_id:
            groups.setdefault(tool_use_id, ToolUseGroup()).tool_use = entry
            continue

        pre_id = _hook_id(entry, PRE_TOOL_USE)
        if pre_id:
            groups.setdefault(pre_id, ToolUseGroup()).pre_hooks.append(entry)
            continue

        result = leading_tool_result(entry)
        if result is not None and result.get("tool_use_id"):
            groups.setdefault(result["tool_use_id"], ToolUseGroup()).tool_result = entry
            continue

        post_id = _hook_id(entry, POST_TOOL_USE)
        if post_id:
            groups.setdefault(post_id, ToolUseGroup()).post_hooks.append(entry)
    return groups


def _is_absorbed(entry: ConversationEntry) -> bool:
    """True for hooks and tool_results that are only emitted with their group."""
    if _hook_id(entry, PRE_TOOL_USE) or _hook_id(entry, POST_TOOL_USE):
        return True
    result = leading_tool_result(entry)
    return result is not None and bool(result.get("tool_use_id"))


def reorder_tool_use_and_hook_messages(
    entries: Sequence[ConversationEntry],
    tail: Iterable[ConversationEntry] = (),
) -> list[ConversationEntry]:
    """Emit each tool call as a contiguous group at its tool_use position.

    Consecutive api_error entries collapse to the newest, and only the
    api_error that ends up last in the output survives at all. tail is
    appended verbatim before that final filter.
    """
    groups = group_by_tool_use_id(entries)
    output: list[ConversationEntry] = []
    emitted: set[str] = set()

    for entry in entries:
        tool_use_id = leading_tool_use_id(entry)
        if tool_use_id:
            if tool_use_id not in emitted:
                emitted.add(tool_use_id)
                output.extend(groups[tool_use_id].emit())
            continue

        if _is_absorbed(entry):
            continue

        if is_api_error(entry):
            if output and is_api_error(output[-1]):
                output[-1] = entry
            else:
                output.append(entry)
            continue

        output.append(entry)

    output.extend(tail)
    if not output:
        return output
    last = output[-1]
    return [entry for entry in output if not is_api_error(entry) or entry is last]


# ------------------------------------------------------------------
# (d) Orphan removal
# ------------------------------------------------------------------


def remove_orphan_tool_uses(entries: Iterable[ConversationEntry]) -> list[ConversationEntry]:
    """Drop tool_use entries that have no tool_result anywhere.

    Used before replaying history to the model on resumption: a call
    interrupted mid-flight must not be sent back as a dangling request.
    """
    normalized = split_message_blocks(entries)
    missing = missing_tool_result_ids(normalized)
    return [entry for entry in normalized if leading_tool_use_id(entry) not in missing]


# ------------------------------------------------------------------
# (e) Attachment-to-neighbour gluing
# ------------------------------------------------------------------


def _is_tool_anchor(entry: ConversationEntry) -> bool:
    if not isinstance(entry, MessageEntry):
        return False
    return entry.type == "assistant" or leading_tool_result(entry) is not None


def attach_attachments_to_neighbors(entries: Sequence[ConversationEntry]) -> list[ConversationEntry]:
    """Move each run of attachments to sit right after the nearest earlier tool anchor.

    Scans backwards; attachments with no anchor before them go to the front.
    """
    output: deque[ConversationEntry] = deque()
    pending: deque[ConversationEntry] = deque()

    for entry in reversed(entries):
        if isinstance(entry, AttachmentEntry):
            pending.appendleft(entry)
            continue
        if _is_tool_anchor(entry) and pending:
            output.extendleft(reversed(pending))
            pending.clear()
        output.appendleft(entry)

    output.extendleft(reversed(pending))
    return list(output)


# ------------------------------------------------------------------
# Composed pipeline
# ------------------------------------------------------------------


def reconcile(
    entries: Iterable[ConversationEntry],
    tail: Iterable[ConversationEntry] = (),
    *,
    drop_orphans: bool = False,
) -> list[ConversationEntry]:
    """Canonical transcript for rendering or persistence."""
    normalized = split_message_blocks(entries)
    if drop_orphans:
        normalized = remove_orphan_tool_uses(normalized)
    return reorder_tool_use_and_hook_messages(normalized, tail)
