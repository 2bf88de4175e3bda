"""Registry-backed tool executor.

Each call is decoded, validated against the tool's JSON Schema and run under
a timeout. Every failure is reported as :class:`ToolExecutionError`; the
tool-call loop turns that into tool-turn content rather than aborting.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol

import jsonschema

from .registry import ToolRegistry
from .types import ToolCallRequest, ToolExecutionResult

__all__ = [
    "ExecutorConfig",
    "RegistryToolExecutor",
    "ToolExecutionError",
    "ToolExecutor",
    "stringify_tool_result",
]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5


class ToolExecutionError(Exception):
    """Raised when tool execution fails."""

    def __init__(
        self,
        message: str,
        tool_name: str = "",
        cause: Exception | None = None,
    ) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)


class ToolExecutor(Protocol):
    """Anything the tool-call loop can hand a :class:`ToolCallRequest` to."""

    async def execute(self, request: ToolCallRequest) -> ToolExecutionResult:
        ...


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Seconds a single tool may run; ``None`` or ``0`` disables the limit.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        validate_arguments: Whether to check arguments against the tool's schema.
    """

    default_timeout: float | None = 30.0
    log_arguments: bool = False
    validate_arguments: bool = True


def stringify_tool_result(result: Any) -> str:
    """Render a tool's return value as message content."""

    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


def _format_schema_path(path: Iterable[Any]) -> str:
    return ".".join(str(part) for part in path)


class RegistryToolExecutor:
    """Runs tools from a :class:`ToolRegistry`."""

    def __init__(self, registry: ToolRegistry, config: ExecutorConfig | None = None) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(self, request: ToolCallRequest) -> ToolExecutionResult:
        name = request.name
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", name, request.id, request.arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, request.id)

        tool = self._registry.get(name)
        if tool is None:
            LOGGER.warning("Tool '%s' not found or disabled", name)
            raise ToolExecutionError(f"Tool '{name}' not found or disabled", tool_name=name)

        arguments = self._decode_arguments(name, request.arguments)
        if self._config.validate_arguments:
            self._validate(name, tool.spec.schema(), arguments)

        timeout = self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if timeout is not None and timeout > 0:
                result = await asyncio.wait_for(tool.execute(arguments), timeout=timeout)
            else:
                result = await tool.execute(arguments)
        except asyncio.TimeoutError as exc:
            LOGGER.warning("Tool %s timed out after %.1fs", name, timeout)
            raise ToolExecutionError(f"timed out after {timeout:g}s", tool_name=name, cause=exc) from exc
        except ToolExecutionError:
            raise
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            raise ToolExecutionError(str(exc) or exc.__class__.__name__, tool_name=name, cause=exc) from exc

        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
        return ToolExecutionResult(tool_call_id=request.id, name=name, result=stringify_tool_result(result))

    @staticmethod
    def _decode_arguments(name: str, raw: str) -> Mapping[str, Any]:
        if not raw or not raw.strip():
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(f"invalid JSON arguments: {exc.msg}", tool_name=name, cause=exc) from exc
        if not isinstance(decoded, Mapping):
            raise ToolExecutionError("arguments must be a JSON object", tool_name=name)
        return decoded

    @staticmethod
    def _validate(name: str, schema: Mapping[str, Any], arguments: Mapping[str, Any]) -> None:
        try:
            validator = jsonschema.Draft202012Validator(schema)
        except jsonschema.exceptions.SchemaError as exc:
            raise ToolExecutionError(f"invalid tool schema: {exc.message}", tool_name=name, cause=exc) from exc

        messages: list[str] = []
        for issue in validator.iter_errors(arguments):
            path = _format_schema_path(issue.absolute_path)
            messages.append(f"{path}: {issue.message}" if path else issue.message)
            if len(messages) >= MAX_SCHEMA_ERRORS:
                break
        if messages:
            raise ToolExecutionError("; ".join(messages), tool_name=name)
