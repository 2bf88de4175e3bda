"""Types shared by the tool registry, the executor and the tool-call loop."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "AsyncToolHandler",
    "FunctionTool",
    "Tool",
    "ToolCallRequest",
    "ToolExecutionResult",
    "ToolHandler",
    "ToolSpec",
]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Name, description and JSON Schema of a tool the model may request.

    ``parameters`` doubles as the validation schema for incoming arguments.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def schema(self) -> dict[str, Any]:
        return dict(self.parameters) if self.parameters else {"type": "object", "properties": {}}

    def to_prompt_entry(self) -> dict[str, Any]:
        """Entry listed in the system prompt's tool catalogue."""
        return {"name": self.name, "description": self.description, "parameters": self.schema()}


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool call as handed to the executor; ``arguments`` is a JSON string."""

    id: str
    name: str
    arguments: str


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    tool_call_id: str
    name: str
    result: str


ToolHandler = Callable[[Mapping[str, Any]], Any]
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        ...


@dataclass
class FunctionTool:
    """Adapts a plain sync or async callable to the :class:`Tool` protocol.

    Example::

        tool = FunctionTool(
            spec=ToolSpec(name="add", description="Add two numbers"),
            handler=lambda args: args["a"] + args["b"],
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        return self.handler(arguments)
