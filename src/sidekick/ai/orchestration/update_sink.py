"""Guarded application of streamed model output to the turn ledger."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ...chat.message_model import ToolCall, Turn, TurnLedger, TurnStatus
from .operation_guard import Operation, OperationGuard
from .status import ChatStatus, StatusIndicator
from .tool_call_parser import looks_like_tool_invocation

__all__ = [
    "CANCELLATION_NOTICE",
    "DEFAULT_GRACE_PERIOD",
    "StreamingUpdateSink",
    "is_benign_late_signal",
]

LOGGER = logging.getLogger(__name__)

CANCELLATION_NOTICE = "[Operation cancelled by user]"
DEFAULT_GRACE_PERIOD = 2.0

_CANCELLATION_MARKERS = ("Operation cancelled by user", "Streaming operation cancelled")


def is_benign_late_signal(text: str, *, finished: bool, error: bool, cancelled: bool) -> bool:
    """Return ``True`` for terminal signals that only echo an already-finished operation."""

    if finished and not error and not cancelled and not text:
        return True
    if error or cancelled:
        return any(marker in (text or "") for marker in _CANCELLATION_MARKERS)
    return False


class StreamingUpdateSink:
    """Apply cumulative stream updates to the trailing assistant turn.

    Every update carries the id of the operation that produced it. Updates
    from operations the guard no longer recognizes are dropped, so a
    superseded stream can never write into the newer operation's turn.
    Terminal updates also drive the status indicator, release the guard and,
    after a tool-call finish, arm the grace timer that keeps the guard held
    until the chained second leg starts.
    """

    def __init__(
        self,
        ledger: TurnLedger,
        guard: OperationGuard,
        indicator: StatusIndicator,
        *,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._ledger = ledger
        self._guard = guard
        self._indicator = indicator
        self._grace_period = max(0.0, float(grace_period))
        self._loop = loop
        self._grace_handle: asyncio.TimerHandle | None = None
        self._grace_operation: Operation | None = None

    @property
    def grace_period(self) -> float:
        return self._grace_period

    @property
    def grace_pending(self) -> bool:
        return self._grace_handle is not None

    @property
    def pending_operation(self) -> Operation | None:
        """Operation waiting for its chained leg, even after the grace timer released the guard."""

        operation = self._grace_operation
        if operation is None or operation.cancelled:
            return None
        return operation

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------
    def apply(
        self,
        operation_id: int,
        text: str | None,
        *,
        finished: bool = False,
        error: bool = False,
        cancelled: bool = False,
        tool_calls: Sequence[ToolCall] | None = None,
        detect_tool_call: bool = True,
    ) -> bool:
        """Apply one update and return whether the ledger was mutated."""

        text = text or ""
        terminal = finished or error or cancelled
        current = self._guard.current

        if not terminal and current != operation_id:
            if current is not None:
                LOGGER.debug("[%s] Dropping stale delta; current operation is %s", operation_id, current)
            return False

        if terminal and current is None and is_benign_late_signal(
            text, finished=finished, error=error, cancelled=cancelled
        ):
            LOGGER.debug("[%s] Terminal signal after operation already finalized; keeping ledger", operation_id)
            self._indicator.reset_idle()
            return False

        if terminal and current is not None and current != operation_id:
            LOGGER.debug(
                "[%s] Dropping terminal update from superseded operation; current is %s",
                operation_id,
                current,
            )
            return False

        mutated = self._mutate_ledger(operation_id, text, finished, error, cancelled, tool_calls)

        if terminal:
            tool_call_finish = (
                detect_tool_call
                and finished
                and not error
                and not cancelled
                and looks_like_tool_invocation(text)
            )
            self._indicator.set_loading(False)
            if tool_call_finish:
                self._start_grace_timer(operation_id)
            else:
                self._cancel_grace_timer()
                self._indicator.set_status(ChatStatus.IDLE if (error or cancelled) else ChatStatus.DONE)
                if not self._guard.release(operation_id):
                    LOGGER.debug("[%s] Guard already cleared or reassigned; not releasing", operation_id)
        return mutated

    def _mutate_ledger(
        self,
        operation_id: int,
        text: str,
        finished: bool,
        error: bool,
        cancelled: bool,
        tool_calls: Sequence[ToolCall] | None,
    ) -> bool:
        if not self._ledger.has_streaming_assistant():
            if error:
                LOGGER.debug("[%s] No streaming assistant turn; appending error turn", operation_id)
                self._ledger.append(
                    Turn(
                        role="assistant",
                        content=f"Error: {text or 'Unknown operation error'}",
                        status="error",
                        tool_calls=list(tool_calls) if tool_calls else None,
                    )
                )
                return True
            LOGGER.debug("[%s] No streaming assistant turn to update", operation_id)
            return False

        status: TurnStatus
        if error:
            status = "error"
            content = f"Error: {text or 'Unknown stream/handler error'}"
        elif cancelled:
            status = "cancelled"
            trailing = self._ledger.trailing()
            existing = (trailing.content if trailing is not None else "") or ""
            content = existing + (" " if existing else "") + text
        else:
            status = "complete" if finished else "streaming"
            content = text

        self._ledger.update_trailing(content=content, status=status, tool_calls=tool_calls)
        return True

    # ------------------------------------------------------------------
    # Chained legs
    # ------------------------------------------------------------------
    def resume(self, operation_id: int) -> bool:
        """Prepare for a chained second leg of ``operation_id``.

        Returns ``False`` when the leg must not run: another operation owns the
        guard or this operation has been cancelled.
        """

        self._cancel_grace_timer(keep_operation=True)
        candidate = self._grace_operation
        self._grace_operation = None

        current = self._guard.current_operation
        if current is not None:
            if current.operation_id != operation_id:
                LOGGER.debug("[%s] Cannot resume; operation %s is current", operation_id, current.operation_id)
                return False
            if current.cancelled:
                return False
        else:
            if candidate is None or candidate.operation_id != operation_id or candidate.cancelled:
                LOGGER.debug("[%s] Cannot resume; operation already finalized", operation_id)
                return False
            self._guard.acquire(candidate)
            LOGGER.debug("[%s] Re-claimed guard released by the grace timer", operation_id)

        self._indicator.set_loading(True)
        self._indicator.set_status(ChatStatus.THINKING)
        return True

    def reset_idle(self) -> None:
        self._indicator.reset_idle()

    def settle_aborted(self, operation_id: int) -> None:
        """Quietly end a cancelled operation whose turn was finalized elsewhere.

        Indicators are only touched while no newer operation owns the guard.
        """

        current = self._guard.current
        if current is not None and current != operation_id:
            return
        self._cancel_grace_timer()
        self._indicator.reset_idle()
        self._guard.release(operation_id)

    def close(self) -> None:
        """Cancel any pending grace timer."""

        self._cancel_grace_timer()

    # ------------------------------------------------------------------
    # Grace timer
    # ------------------------------------------------------------------
    def _start_grace_timer(self, operation_id: int) -> None:
        self._cancel_grace_timer()
        operation = self._guard.current_operation
        if operation is None or operation.operation_id != operation_id:
            operation = None
        self._grace_operation = operation

        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("[%s] No running event loop; expiring grace period immediately", operation_id)
            self._on_grace_expired(operation_id)
            return
        LOGGER.debug("[%s] Tool call detected; grace timer armed for %.2fs", operation_id, self._grace_period)
        self._grace_handle = loop.call_later(self._grace_period, self._on_grace_expired, operation_id)

    def _cancel_grace_timer(self, *, keep_operation: bool = False) -> None:
        if self._grace_handle is not None:
            self._grace_handle.cancel()
            self._grace_handle = None
        if not keep_operation:
            self._grace_operation = None

    def _on_grace_expired(self, operation_id: int) -> None:
        # The operation stays reachable through ``pending_operation`` until
        # its tool returns, so stop() and preemption can still cancel it.
        self._grace_handle = None
        self._indicator.set_status(ChatStatus.IDLE)
        if self._guard.release(operation_id):
            LOGGER.debug("[%s] Grace period elapsed without a second leg; guard released", operation_id)
