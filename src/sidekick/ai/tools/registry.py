"""Name-indexed registry of the tools offered to the model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from .types import AsyncToolHandler, FunctionTool, Tool, ToolHandler, ToolSpec

__all__ = ["DuplicateToolError", "ToolRegistration", "ToolRegistry"]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


@dataclass(slots=True)
class ToolRegistration:
    name: str
    tool: Tool
    enabled: bool = True

    @property
    def spec(self) -> ToolSpec:
        return self.tool.spec


class ToolRegistry:
    """Registry for tools, kept in registration order.

    Disabled tools stay registered but are neither advertised in the prompt
    nor resolvable by the executor.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(self, tool: Tool, *, enabled: bool = True, allow_override: bool = False) -> ToolRegistration:
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        registration = ToolRegistration(name=name, tool=tool, enabled=enabled)
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
    ) -> ToolRegistration:
        """Register a bare function under ``spec``."""
        return self.register(FunctionTool(spec=spec, handler=handler), enabled=enabled, allow_override=allow_override)

    def unregister(self, name: str) -> bool:
        if self._tools.pop(name, None) is None:
            return False
        LOGGER.debug("Unregistered tool: %s", name)
        return True

    def get(self, name: str) -> Tool | None:
        """Return the enabled tool called ``name``, if any."""
        registration = self._tools.get(name)
        if registration is None or not registration.enabled:
            return None
        return registration.tool

    def set_enabled(self, name: str, enabled: bool) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = enabled
        return True

    def specs(self) -> list[ToolSpec]:
        """Specs of every enabled tool."""
        return [registration.spec for registration in self._tools.values() if registration.enabled]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._tools))
