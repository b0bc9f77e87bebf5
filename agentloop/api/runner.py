"""Tool runner -- drives the model/tool-execution loop for one turn.

Call the model, execute any tool_use blocks it returns, append the
results, and repeat until the model stops asking for tools, the
iteration cap is hit, or the caller stops iterating.

The runner is single-consumer and not re-entrant:

    IDLE --iterate--> RUNNING --finish--> COMPLETED
                         |
                         +--error--> FAILED --iterate--> RUNNING ...
                         |
                         +--iterator closed early--> IDLE

A failed run rejects whoever is waiting on done(); the next iteration
starts over from the current params (no automatic retry).

Callers may mutate params between yields (set_params / push_messages).
That marks the params dirty: the in-flight response is not appended and
the loop runs at least one more round against the new history.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Generator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from agentloop.api.client import MessageStream
from agentloop.api.models import ApiResponse, RequestOptions
from agentloop.api.tools import ToolDefinition, ToolRegistry, build_tool_results_message
from agentloop.config import Settings

logger = logging.getLogger(__name__)

# Identifies requests made by the runner (merged under caller headers)
RUNNER_HELPER_HEADER = {"x-agentloop-helper": "tool-runner"}


class ModelCaller(Protocol):
    """The model-calling capability the runner depends on."""

    async def create(self, params: dict[str, Any], options: RequestOptions | None = None) -> ApiResponse: ...

    def stream(self, params: dict[str, Any], options: RequestOptions | None = None) -> MessageStream: ...


class RunnerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunnerParams:
    """Request parameters owned by one runner."""

    model: str
    messages: list[dict[str, Any]]
    tools: list[ToolDefinition] = field(default_factory=list)
    system: str | list[Any] | None = None
    max_tokens: int | None = None
    max_iterations: int | None = None  # loop-internal, never sent
    stream: bool = False
    tool_choice: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)  # passed through to the request

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        messages: list[dict[str, Any]],
        **fields: Any,
    ) -> RunnerParams:
        """Params with model, max_tokens and the iteration cap taken from settings.

        Explicit keyword fields win over the settings values.
        """
        defaults: dict[str, Any] = {
            "model": settings.model,
            "max_tokens": settings.max_tokens,
            "max_iterations": settings.max_iterations,
        }
        return cls(messages=messages, **{**defaults, **fields})

    def to_request(self) -> dict[str, Any]:
        """Model call parameters (without the loop-only fields)."""
        request: dict[str, Any] = {
            "model": self.model,
            "messages": list(self.messages),
            **self.extra,
        }
        if self.system is not None:
            request["system"] = self.system
        if self.max_tokens is not None:
            request["max_tokens"] = self.max_tokens
        if self.tools:
            request["tools"] = ToolRegistry(self.tools).tool_definitions()
        if self.tool_choice is not None:
            request["tool_choice"] = self.tool_choice
        return request


class ToolRunner:
    """Runs the request -> tool_use -> tool_result cycle to completion.

    Iterate with ``async for`` to observe each model response (or the live
    MessageStream when params.stream is set), or ``await runner`` /
    ``await runner.run_until_done()`` for just the final response.
    """

    def __init__(
        self,
        client: ModelCaller,
        params: RunnerParams,
        options: RequestOptions | None = None,
    ) -> None:
        self._client = client
        # Deep-copy history so the caller's list is never aliased
        self._params = dataclasses.replace(params, messages=copy.deepcopy(params.messages))
        self._options = (options or RequestOptions()).with_headers(RUNNER_HELPER_HEADER)
        self._state = RunnerState.IDLE
        self._iteration = 0
        self._params_dirty = False
        self._last_response: ApiResponse | None = None
        self._tool_response: asyncio.Future[dict[str, Any] | None] | None = None
        self._result: asyncio.Future[ApiResponse] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def params(self) -> RunnerParams:
        return self._params

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def iteration(self) -> int:
        return self._iteration

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[ApiResponse | MessageStream]:
        if self._state in (RunnerState.RUNNING, RunnerState.COMPLETED):
            raise RuntimeError("Cannot iterate over a consumed ToolRunner")
        self._state = RunnerState.RUNNING
        return self._run()

    async def _run(self) -> AsyncGenerator[ApiResponse | MessageStream, None]:
        self._params_dirty = True
        self._tool_response = None
        try:
            while True:
                max_iterations = self._params.max_iterations
                if max_iterations is not None and self._iteration >= max_iterations:
                    logger.debug("Tool runner reached max_iterations=%d", max_iterations)
                    break

                self._params_dirty = False
                self._tool_response = None
                self._iteration += 1
                logger.debug("Tool runner iteration %d", self._iteration)

                request = self._params.to_request()
                if self._params.stream:
                    stream = self._client.stream(request, self._options)
                    yield stream
                    response = await stream.final_message()
                    self._last_response = response
                else:
                    response = await self._client.create(request, self._options)
                    self._last_response = response
                    yield response

                if not self._params_dirty and response is not None:
                    self._params.messages.append(response.as_message())

                tool_response = await self.generate_tool_response()
                if tool_response is not None:
                    self._params.messages.append(tool_response)

                if tool_response is None and not self._params_dirty:
                    break

            if self._last_response is None:
                raise RuntimeError("ToolRunner concluded without a message from the server")

            self._state = RunnerState.COMPLETED
            self._complete(self._last_response)
        except GeneratorExit:
            # Consumer stopped iterating early; the run can be resumed later
            self._state = RunnerState.IDLE
            raise
        except (Exception, asyncio.CancelledError) as e:
            logger.warning("Tool runner failed on iteration %d: %r", self._iteration, e)
            self._state = RunnerState.FAILED
            self._fail(e)
            raise

    # ------------------------------------------------------------------
    # External mutation
    # ------------------------------------------------------------------

    def set_params(self, update: RunnerParams | Callable[[RunnerParams], RunnerParams]) -> None:
        """Replace params (value or transform). Forces another round."""
        self._params = update(self._params) if callable(update) else update
        self._params_dirty = True
        self._tool_response = None

    def push_messages(self, *messages: dict[str, Any]) -> None:
        """Append messages to the history. Forces another round."""
        self.set_params(lambda p: dataclasses.replace(p, messages=[*p.messages, *messages]))

    async def generate_tool_response(self) -> dict[str, Any] | None:
        """Tool results for the latest history message (cached until params change)."""
        if self._tool_response is None:
            last = self._params.messages[-1] if self._params.messages else None
            self._tool_response = asyncio.ensure_future(
                build_tool_results_message(ToolRegistry(self._params.tools), last)
            )
        return await self._tool_response

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _result_future(self) -> asyncio.Future[ApiResponse]:
        if self._result is None:
            self._result = asyncio.get_running_loop().create_future()
        return self._result

    def _fail(self, error: BaseException) -> None:
        """Reject current waiters and arm a fresh future for a retry."""
        future = self._result_future()
        if not future.done():
            if isinstance(error, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(error)
                future.exception()  # mark retrieved: no waiter is not an error
        self._result = None

    def _complete(self, response: ApiResponse) -> None:
        future = self._result_future()
        if future.done():
            # Settled by an earlier run; waiters of this run need a fresh one
            self._result = None
            future = self._result_future()
        future.set_result(response)

    async def done(self) -> ApiResponse:
        """Wait for the final model response of the current run.

        Cancelling one waiter (e.g. a wait_for timeout) leaves the run and
        other waiters unaffected.
        """
        return await asyncio.shield(self._result_future())

    async def run_until_done(self) -> ApiResponse:
        """Drive the loop to completion (if nobody else is) and return the final response."""
        if self._state not in (RunnerState.RUNNING, RunnerState.COMPLETED):
            async for _ in self:
                pass
        return await self.done()

    def __await__(self) -> Generator[Any, None, ApiResponse]:
        return self.run_until_done().__await__()
