"""Transcript reconciler.

Turns the arrival-ordered entry stream produced around a tool loop
(model turns, tool results, hook notifications, progress) into a
canonical, causally-ordered transcript for rendering and storage.
"""

from agentloop.transcript.identity import (
    get_tool_use_id,
    is_assistant_tool_use,
    is_hook_attachment,
    is_user_tool_result,
)
from agentloop.transcript.indexing import (
    ToolContext,
    build_tool_context,
    count_hook_progress_entries,
    count_resolved_hooks,
    get_error_tool_use_ids,
    get_progress_for_entry,
    get_sibling_tool_use_ids,
    get_tool_use_ids,
    has_in_progress_hooks,
    missing_tool_result_ids,
    tool_result_error_map,
)
from agentloop.transcript.reconcile import (
    attach_attachments_to_neighbors,
    reconcile,
    remove_orphan_tool_uses,
    reorder_tool_use_and_hook_messages,
    split_message_blocks,
)
from agentloop.transcript.schemas import (
    Attachment,
    AttachmentEntry,
    ConversationEntry,
    MessageBody,
    MessageEntry,
    ProgressData,
    ProgressEntry,
    SystemEntry,
    dump_entries,
    parse_entries,
)

__all__ = [
    "Attachment",
    "AttachmentEntry",
    "ConversationEntry",
    "MessageBody",
    "MessageEntry",
    "ProgressData",
    "ProgressEntry",
    "SystemEntry",
    "ToolContext",
    "attach_attachments_to_neighbors",
    "build_tool_context",
    "count_hook_progress_entries",
    "count_resolved_hooks",
    "dump_entries",
    "get_error_tool_use_ids",
    "get_progress_for_entry",
    "get_sibling_tool_use_ids",
    "get_tool_use_id",
    "get_tool_use_ids",
    "has_in_progress_hooks",
    "is_assistant_tool_use",
    "is_hook_attachment",
    "is_user_tool_result",
    "missing_tool_result_ids",
    "parse_entries",
    "reconcile",
    "remove_orphan_tool_uses",
    "reorder_tool_use_and_hook_messages",
    "split_message_blocks",
    "tool_result_error_map",
]
