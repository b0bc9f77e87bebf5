"""Anthropic Messages API client over httpx.

The model-calling capability the tool runner drives:
- create(): one request, retried on 429/500/529 and timeouts
- stream(): SSE stream of StreamEvents plus the aggregated final message

No SDK; payloads are built here and posted directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Awaitable
from typing import Any, TypeVar

import httpx

from agentloop.api.messages import add_cache_control, cache_control, should_enable_prompt_caching
from agentloop.api.models import ApiResponse, RequestOptions, StreamEvent
from agentloop.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRY_STATUSES = frozenset({429, 500, 529})
_MAX_RETRY_AFTER = 30.0


class RequestAborted(RuntimeError):
    """The caller's cancellation signal fired while a request was in flight."""


def build_auth_headers(settings: Settings) -> dict[str, str]:
    """Auth headers for the Anthropic API.

    OAT tokens (sk-ant-oat*) require Bearer auth plus OAuth beta headers.
    Regular API keys use x-api-key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    api_key = settings.anthropic_api_key or ""
    auth_token = settings.anthropic_auth_token or ""

    if auth_token:
        headers["authorization"] = f"Bearer {auth_token}"
        if "sk-ant-oat" in auth_token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        if "sk-ant-oat" in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        else:
            headers["x-api-key"] = api_key
    else:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "API calls will fail"
        )
    return headers


def normalize_system_blocks(system: str | list[Any] | None) -> list[dict[str, Any]]:
    """Accept str, list of str, or list of text blocks."""
    if not system:
        return []
    if isinstance(system, str):
        return [{"type": "text", "text": system}]
    return [{"type": "text", "text": s} if isinstance(s, str) else dict(s) for s in system]


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse Anthropic SSE event dict into StreamEvent.

    Ping keepalives are skipped. stop_reason arrives in
    message_delta.delta, not message_start. In-stream errors arrive with
    HTTP 200 and an error body.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        if delta.get("type") == "thinking_delta":
            return StreamEvent(type="thinking_delta", text=delta.get("thinking", ""), block_index=block_index)
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", ""),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


async def _race_signal(awaitable: Awaitable[T], signal: asyncio.Event | None) -> T:
    """Await awaitable unless signal fires first."""
    if signal is None:
        return await awaitable
    if signal.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestAborted("Request aborted before it was sent")

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task.done():
        return task.result()
    task.cancel()
    raise RequestAborted("Request aborted")


class MessageStream:
    """One streaming request.

    Iterate it for StreamEvents; await final_message() for the aggregated
    ApiResponse (drains whatever the caller did not consume).
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        payload: dict[str, Any],
        options: RequestOptions,
    ) -> None:
        self._http = http
        self._payload = payload
        self._options = options
        self._events = self._iterate()
        self._message: dict[str, Any] = {}
        self._blocks: dict[int, dict[str, Any]] = {}
        self._json_parts: dict[int, list[str]] = {}
        self._final: ApiResponse | None = None
        self._error: Exception | None = None

    def __aiter__(self) -> MessageStream:
        return self

    async def __anext__(self) -> StreamEvent:
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            raise
        except Exception as e:
            self._error = e
            raise

    async def final_message(self) -> ApiResponse:
        async for _ in self:
            pass
        if self._error is not None:
            raise RuntimeError(f"Stream failed: {self._error}") from self._error
        if self._final is None:
            raise RuntimeError("Stream ended without a message_stop event")
        return self._final

    async def _iterate(self) -> AsyncGenerator[StreamEvent, None]:
        signal = self._options.signal
        kwargs: dict[str, Any] = {"json": self._payload, "headers": self._options.headers}
        if self._options.timeout is not None:
            kwargs["timeout"] = self._options.timeout

        async with self._http.stream("POST", "/v1/messages", **kwargs) as response:
            if response.status_code != 200:
                error_body = await response.aread()
                raise RuntimeError(
                    f"Anthropic API error ({response.status_code}): "
                    f"{error_body.decode(errors='replace')[:500]}"
                )

            async for line in response.aiter_lines():
                if signal is not None and signal.is_set():
                    raise RequestAborted("Stream aborted")
                # Only data: lines carry payloads; event: lines are redundant
                if not line.startswith("data: "):
                    continue
                data = json.loads(line[6:])
                self._accumulate(data)
                event = parse_sse_event(data)
                if event is None:
                    continue
                if event.type == "error":
                    raise RuntimeError(f"Anthropic stream error: {event.text}")
                yield event

    def _accumulate(self, data: dict[str, Any]) -> None:
        """Fold one SSE payload into the message being assembled."""
        event_type = data.get("type")
        index = data.get("index", 0)

        if event_type == "message_start":
            self._message = dict(data.get("message", {}))
        elif event_type == "content_block_start":
            self._blocks[index] = dict(data.get("content_block", {}))
        elif event_type == "content_block_delta":
            block = self._blocks.setdefault(index, {})
            delta = data.get("delta", {})
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                block["text"] = block.get("text", "") + delta.get("text", "")
            elif delta_type == "input_json_delta":
                self._json_parts.setdefault(index, []).append(delta.get("partial_json", ""))
            elif delta_type == "thinking_delta":
                block["thinking"] = block.get("thinking", "") + delta.get("thinking", "")
            elif delta_type == "signature_delta":
                block["signature"] = delta.get("signature", "")
        elif event_type == "content_block_stop":
            parts = self._json_parts.pop(index, None)
            if parts is not None:
                input_json = "".join(parts)
                try:
                    self._blocks[index]["input"] = json.loads(input_json) if input_json else {}
                except json.JSONDecodeError:
                    logger.warning("Unparseable tool input JSON for block %d", index)
                    self._blocks[index]["input"] = {}
        elif event_type == "message_delta":
            delta = data.get("delta", {})
            if "stop_reason" in delta:
                self._message["stop_reason"] = delta["stop_reason"]
            usage = data.get("usage")
            if usage:
                self._message["usage"] = {**self._message.get("usage", {}), **usage}
        elif event_type == "message_stop":
            self._final = ApiResponse(
                content=[self._blocks[i] for i in sorted(self._blocks)],
                stop_reason=self._message.get("stop_reason"),
                usage=self._message.get("usage"),
                id=self._message.get("id"),
                model=self._message.get("model"),
                role=self._message.get("role", "assistant"),
            )


class AnthropicClient:
    """Direct httpx client for the Anthropic Messages API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_auth_headers(settings),
            timeout=timeout,
            limits=limits,
            transport=transport,
        )
        logger.info("httpx client initialized (base_url: %s)", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _require_http(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def build_payload(self, params: dict[str, Any], stream: bool = False) -> dict[str, Any]:
        """Build the Messages API request body from runner/caller params.

        Known keys are normalised; anything else is passed through.
        """
        settings = self._settings
        params = dict(params)
        model = params.pop("model", None) or settings.model
        caching = should_enable_prompt_caching(model, settings)

        system = normalize_system_blocks(params.pop("system", None))
        if caching and system:
            system[-1] = {**system[-1], "cache_control": cache_control(settings)}

        messages = list(params.pop("messages", []))
        if caching:
            messages = add_cache_control(messages, settings)

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": params.pop("max_tokens", None) or settings.max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        tools = params.pop("tools", None)
        if tools:
            payload["tools"] = tools
        tool_choice = params.pop("tool_choice", None)
        if tool_choice:
            payload["tool_choice"] = tool_choice
        payload["metadata"] = params.pop("metadata", None) or {
            "user_id": f"user_{settings.user_id}_session_{settings.session_id}",
        }
        payload.update({k: v for k, v in params.items() if v is not None})
        if stream:
            payload["stream"] = True
        return payload

    async def create(
        self,
        params: dict[str, Any],
        options: RequestOptions | None = None,
    ) -> ApiResponse:
        """Call the Messages API with retry for 429/500/529 and timeouts.

        Returns parsed ApiResponse. Raises RuntimeError on persistent
        errors and RequestAborted when options.signal fires.
        """
        http = self._require_http()
        options = options or RequestOptions()
        payload = self.build_payload(params)
        kwargs: dict[str, Any] = {"json": payload, "headers": options.headers}
        if options.timeout is not None:
            kwargs["timeout"] = options.timeout

        attempts = self._settings.api_max_retries + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            can_retry = attempt < attempts - 1
            try:
                response = await _race_signal(http.post("/v1/messages", **kwargs), options.signal)

                if response.status_code == 200:
                    data = response.json()
                    return ApiResponse(
                        content=data["content"],
                        stop_reason=data.get("stop_reason"),
                        usage=data.get("usage"),
                        id=data.get("id"),
                        model=data.get("model"),
                        role=data.get("role", "assistant"),
                    )

                # Parse error body
                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and can_retry:
                    retry_after = float(response.headers.get("retry-after", "1"))
                    retry_after = min(retry_after, _MAX_RETRY_AFTER)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await _race_signal(asyncio.sleep(retry_after), options.signal)
                    continue

                last_error = RuntimeError(
                    f"Anthropic API error ({response.status_code}): "
                    f"{error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = RuntimeError(f"API request timed out: {e}")
                if can_retry:
                    logger.warning("API timeout, retrying: %s", e)
                    await _race_signal(asyncio.sleep(1), options.signal)
                    continue
            except httpx.HTTPError as e:
                last_error = RuntimeError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or RuntimeError("API call failed with unknown error")

    def stream(
        self,
        params: dict[str, Any],
        options: RequestOptions | None = None,
    ) -> MessageStream:
        """Start a streaming request. Nothing is sent until the stream is iterated."""
        return MessageStream(self._require_http(), self.build_payload(params, stream=True), options or RequestOptions())
