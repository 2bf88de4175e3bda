"""Conversation turn data model and the append-only turn ledger."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, Literal, Optional, Sequence

LOGGER = logging.getLogger(__name__)

ChatRole = Literal["user", "assistant", "system", "tool"]
TurnStatus = Literal["streaming", "complete", "error", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"complete", "error", "cancelled"})

LedgerListener = Callable[[int, "Turn"], None]

_UNSET: Any = object()


class LedgerError(RuntimeError):
    """Raised when a caller attempts to mutate a finalized turn."""


@dataclass(slots=True, frozen=True)
class ToolCall:
    """Structured tool invocation attached to an assistant turn."""

    id: str
    name: str
    arguments: str

    def as_payload(self) -> Dict[str, Any]:
        """Return the OpenAI-compatible ``tool_calls`` entry."""

        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class Turn:
    """One entry of the conversation ledger."""

    role: ChatRole
    content: Optional[str] = ""
    status: TurnStatus = "complete"
    timestamp: int = 0
    tool_calls: Optional[list[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    web_display_content: Optional[str] = None

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role="user", content=content, status="complete")

    @classmethod
    def placeholder(cls) -> "Turn":
        return cls(role="assistant", content="", status="streaming")

    @classmethod
    def tool(cls, *, tool_call_id: str, name: str, content: str) -> "Turn":
        return cls(role="tool", content=content, status="complete", tool_call_id=tool_call_id, name=name)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the turn for persistence or display."""

        payload: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            payload["tool_calls"] = [call.as_payload() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        if self.web_display_content:
            payload["web_display_content"] = self.web_display_content
        return payload


def _copy(turn: Turn) -> Turn:
    return replace(turn, tool_calls=list(turn.tool_calls) if turn.tool_calls is not None else None)


class TurnLedger:
    """Ordered, append-only sequence of turns.

    Only the trailing turn may change, and only while its status is
    ``streaming``. Readers always receive copies so a finalized turn cannot be
    altered from the outside.
    """

    def __init__(self, turns: Sequence[Turn] | None = None) -> None:
        self._turns: list[Turn] = []
        self._listeners: list[LedgerListener] = []
        self._last_timestamp = 0
        for turn in turns or ():
            self.append(turn)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.snapshot())

    def __getitem__(self, index: int) -> Turn:
        return _copy(self._turns[index])

    def snapshot(self) -> list[Turn]:
        """Return copies of every turn in order."""

        return [_copy(turn) for turn in self._turns]

    def trailing(self) -> Turn | None:
        """Return a copy of the last turn, if any."""

        if not self._turns:
            return None
        return _copy(self._turns[-1])

    def has_streaming_assistant(self) -> bool:
        """Return ``True`` when the trailing turn is an assistant turn still streaming."""

        if not self._turns:
            return False
        last = self._turns[-1]
        return last.role == "assistant" and last.status == "streaming"

    def append(self, turn: Turn) -> Turn:
        """Append ``turn`` (stamped with a fresh timestamp) and return a copy."""

        stored = _copy(turn)
        stored.timestamp = self._next_timestamp()
        self._turns.append(stored)
        LOGGER.debug("Ledger append #%s role=%s status=%s", len(self._turns) - 1, stored.role, stored.status)
        self._notify(len(self._turns) - 1, stored)
        return _copy(stored)

    def update_trailing(
        self,
        *,
        content: Optional[str] = _UNSET,
        status: TurnStatus | None = None,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> Turn:
        """Mutate the trailing streaming turn in place and return a copy."""

        target = self._mutable_trailing()
        if content is not _UNSET:
            target.content = content
        if status is not None:
            target.status = status
        if tool_calls is not None:
            target.tool_calls = list(tool_calls)
        target.timestamp = self._next_timestamp()
        self._notify(len(self._turns) - 1, target)
        return _copy(target)

    def annotate_trailing(self, *, web_display_content: str | None) -> Turn:
        """Attach display-only annotations to the trailing streaming turn."""

        target = self._mutable_trailing()
        target.web_display_content = web_display_content
        self._notify(len(self._turns) - 1, target)
        return _copy(target)

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        """Register ``listener`` for append/update notifications; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _mutable_trailing(self) -> Turn:
        if not self._turns:
            raise LedgerError("Ledger is empty; nothing to update")
        target = self._turns[-1]
        if target.status != "streaming":
            raise LedgerError(
                f"Trailing {target.role} turn is {target.status}; finalized turns are immutable"
            )
        return target

    def _next_timestamp(self) -> int:
        now_ms = int(time.time() * 1000)
        self._last_timestamp = max(now_ms, self._last_timestamp + 1)
        return self._last_timestamp

    def _notify(self, index: int, turn: Turn) -> None:
        for listener in list(self._listeners):
            try:
                listener(index, _copy(turn))
            except Exception:  # pragma: no cover
                LOGGER.debug("Ledger listener failed", exc_info=True)


__all__ = [
    "ChatRole",
    "TurnStatus",
    "TERMINAL_STATUSES",
    "LedgerError",
    "LedgerListener",
    "ToolCall",
    "Turn",
    "TurnLedger",
]
