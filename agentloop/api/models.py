"""Shared data models for the API layer.

Kept separate from client.py and runner.py so the tool runner can be
driven by any model caller that produces these shapes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ApiResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str | None = None  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None
    id: str | None = None
    model: str | None = None
    role: str = "assistant"

    def as_message(self) -> dict[str, Any]:
        """This response as a history entry for the next request."""
        return {"role": self.role, "content": self.content}


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, thinking_delta, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0


@dataclass
class RequestOptions:
    """Transport-level options for one model call."""

    timeout: float | None = None  # overrides the client read timeout
    headers: dict[str, str] = field(default_factory=dict)
    signal: asyncio.Event | None = None  # set() to abort the in-flight request

    def with_headers(self, headers: dict[str, str]) -> RequestOptions:
        """Copy with headers merged underneath the caller's own."""
        return RequestOptions(
            timeout=self.timeout,
            headers={**headers, **self.headers},
            signal=self.signal,
        )
