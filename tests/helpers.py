"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files::

    from helpers import ScriptedTransport, deltas, make_settings
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from sidekick.ai.client import ChatRequest, StreamDelta
from sidekick.ai.orchestration.operation_guard import CancellationSignal
from sidekick.ai.tools.types import ToolCallRequest, ToolExecutionResult
from sidekick.services.settings import Settings


def make_settings(**overrides: Any) -> Settings:
    """Settings with one OpenAI model selected and tools disabled unless overridden."""

    values: dict[str, Any] = {
        "models": [{"id": "test-model", "host": "openai"}],
        "selected_model": "test-model",
        "openai_api_key": "sk-test",
        "use_tools": False,
    }
    values.update(overrides)
    return Settings(**values)


def deltas(*texts: str) -> list[StreamDelta]:
    """Cumulative deltas for ``texts`` followed by the finishing delta."""

    steps = [StreamDelta(text) for text in texts]
    steps.append(StreamDelta(texts[-1] if texts else "", finished=True))
    return steps


class ScriptedTransport:
    """Plays back one scripted leg per ``stream`` call.

    A leg is a list of steps: a :class:`StreamDelta` is yielded, an exception
    is raised and an :class:`asyncio.Event` blocks the leg until it is set.
    The transport stops yielding as soon as the signal fires, like the real one.
    """

    def __init__(self, *legs: Sequence[Any]) -> None:
        self._legs = [list(leg) for leg in legs]
        self.requests: list[ChatRequest] = []
        self.signals: list[CancellationSignal] = []
        self.closed = False

    async def stream(self, request: ChatRequest, *, signal: CancellationSignal) -> AsyncIterator[StreamDelta]:
        self.requests.append(request)
        self.signals.append(signal)
        script = self._legs.pop(0) if self._legs else deltas("")
        for step in script:
            if isinstance(step, asyncio.Event):
                await step.wait()
                continue
            if isinstance(step, BaseException):
                raise step
            await asyncio.sleep(0)
            if signal.cancelled:
                return
            yield step

    async def aclose(self) -> None:
        self.closed = True

    def messages(self, index: int = -1) -> list[dict[str, Any]]:
        return self.requests[index].payload["messages"]


class RecordingExecutor:
    """Tool executor returning canned results (or raising) and recording requests."""

    def __init__(self, result: Any = "ok", *, error: BaseException | None = None) -> None:
        self._result = result
        self._error = error
        self.requests: list[ToolCallRequest] = []

    async def execute(self, request: ToolCallRequest) -> ToolExecutionResult:
        self.requests.append(request)
        if self._error is not None:
            raise self._error
        return ToolExecutionResult(tool_call_id=request.id, name=request.name, result=str(self._result))


async def wait_until(predicate: Callable[[], bool], *, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""

    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def roles(turns: Iterable[Any]) -> list[str]:
    return [turn.role for turn in turns]
