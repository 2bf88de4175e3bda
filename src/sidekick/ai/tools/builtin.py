"""Tools the ``sidekick`` command offers the model out of the box."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from ..orchestration.context import fetch_url_text
from .executor import ToolExecutionError
from .registry import ToolRegistry
from .types import ToolSpec

__all__ = [
    "CURRENT_TIME_SPEC",
    "FETCH_WEB_PAGE_SPEC",
    "current_time",
    "default_registry",
    "make_fetch_web_page",
    "register_builtin_tools",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_CHARS = 8000

CURRENT_TIME_SPEC = ToolSpec(
    name="current_time",
    description="Current date and time. Pass an IANA time zone such as 'Europe/Paris' to convert it.",
    parameters={
        "type": "object",
        "properties": {"timezone": {"type": "string"}},
        "additionalProperties": False,
    },
)

FETCH_WEB_PAGE_SPEC = ToolSpec(
    name="fetch_web_page",
    description="Download a web page and return its readable text.",
    parameters={
        "type": "object",
        "properties": {
            "url": {"type": "string", "pattern": "^https?://"},
            "max_chars": {"type": "integer", "minimum": 100, "maximum": 50000},
        },
        "required": ["url"],
        "additionalProperties": False,
    },
)


def current_time(arguments: Mapping[str, Any], *, now: datetime | None = None) -> dict[str, str]:
    moment = now or datetime.now().astimezone()
    zone_name = (arguments.get("timezone") or "").strip()
    if zone_name:
        try:
            moment = moment.astimezone(ZoneInfo(zone_name))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ToolExecutionError(f"Unknown time zone '{zone_name}'", tool_name=CURRENT_TIME_SPEC.name) from exc
    return {
        "datetime": moment.isoformat(timespec="seconds"),
        "weekday": moment.strftime("%A"),
        "timezone": zone_name or str(moment.tzname()),
    }


def make_fetch_web_page(
    client: httpx.AsyncClient | None = None,
) -> Callable[[Mapping[str, Any]], Awaitable[str]]:
    """Handler for :data:`FETCH_WEB_PAGE_SPEC`; ``client`` is reused when given."""

    async def fetch_web_page(arguments: Mapping[str, Any]) -> str:
        url = arguments["url"]
        limit = int(arguments.get("max_chars") or DEFAULT_PAGE_CHARS)
        text = await fetch_url_text(url, client=client)
        if len(text) > limit:
            LOGGER.debug("Truncating %s from %d to %d characters", url, len(text), limit)
            text = text[:limit]
        return text

    return fetch_web_page


def register_builtin_tools(registry: ToolRegistry, *, client: httpx.AsyncClient | None = None) -> ToolRegistry:
    registry.register_function(CURRENT_TIME_SPEC, current_time)
    registry.register_function(FETCH_WEB_PAGE_SPEC, make_fetch_web_page(client))
    return registry


def default_registry(*, client: httpx.AsyncClient | None = None) -> ToolRegistry:
    return register_builtin_tools(ToolRegistry(), client=client)
