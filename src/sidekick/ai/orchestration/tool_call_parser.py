"""Tool call parsing utilities for JSON tool requests embedded in model text.

Models are asked to answer with a bare JSON object when they want a tool, but
in practice they wrap it in Markdown fences or surround it with prose. The
helpers here recover the object and normalize the two accepted payload shapes
(``tool_name``/``tool_arguments`` and ``name``/``arguments``) into a single
:class:`ToolInvocation`.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

__all__ = [
    "JSON_FENCE_RE",
    "GENERIC_FENCE_RE",
    "ToolInvocation",
    "looks_like_tool_invocation",
    "make_tool_call_id",
    "parse_tool_invocation",
    "robust_parse_json",
    "try_parse_json_block",
]

PayloadShape = Literal["tool_name", "name"]

JSON_FENCE_RE = re.compile(r"```json\n(.*?)\n```", re.DOTALL)
GENERIC_FENCE_RE = re.compile(r"```\n(.*?)\n```", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")

# (name key, arguments key, shape tag), checked in order.
_PAYLOAD_SHAPES: tuple[tuple[str, str, PayloadShape], ...] = (
    ("tool_name", "tool_arguments", "tool_name"),
    ("name", "arguments", "name"),
)


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """A normalized tool request recovered from model output."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    shape: PayloadShape = "tool_name"

    def serialized_arguments(self) -> str:
        """Return the arguments as the JSON string sent back to the model."""

        return json.dumps(self.arguments)


def try_parse_json_block(text: str) -> Any | None:
    """Attempt to parse text as JSON, returning None on failure."""
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


def robust_parse_json(text: str | None) -> Any | None:
    """Parse JSON out of free-form model text.

    Tries, in order: the whole text, a ```` ```json ```` fenced block, a plain
    fenced block, and finally the span between the first ``{`` and the last
    ``}``. Returns ``None`` when none of them decode.
    """

    if not text or not isinstance(text, str):
        return None

    parsed = try_parse_json_block(text)
    if parsed is not None:
        return parsed

    for pattern in (JSON_FENCE_RE, GENERIC_FENCE_RE):
        match = pattern.search(text)
        if match and match.group(1):
            parsed = try_parse_json_block(match.group(1))
            if parsed is not None:
                return parsed

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return try_parse_json_block(text[first : last + 1])
    return None


def _normalize_payload(payload: Any) -> ToolInvocation | None:
    if not isinstance(payload, Mapping):
        return None
    for name_key, args_key, shape in _PAYLOAD_SHAPES:
        name = payload.get(name_key)
        arguments = payload.get(args_key)
        if isinstance(name, str) and name.strip() and isinstance(arguments, Mapping):
            return ToolInvocation(name=name.strip(), arguments=dict(arguments), shape=shape)
    return None


def parse_tool_invocation(text: str | None) -> ToolInvocation | None:
    """Return the tool invocation embedded in ``text`` or ``None``.

    Scalar or array ``arguments`` values do not count as an invocation; the
    text is then treated as an ordinary answer.
    """

    return _normalize_payload(robust_parse_json(text))


def looks_like_tool_invocation(text: str | None) -> bool:
    return parse_tool_invocation(text) is not None


def make_tool_call_id(operation_id: int, tool_name: str, *, now_ms: int | None = None) -> str:
    """Build the id that correlates an assistant tool call with its tool turn."""

    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    safe_name = _WHITESPACE_RE.sub("_", tool_name)
    return f"tool_{operation_id}_{safe_name}_{stamp}"
