"""Single-flight guard for orchestrated operations.

Exactly one operation may be authoritative at a time. Callbacks carrying the id
of any other operation are stale: the guard lets them detect that cheaply and
without touching shared state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field

__all__ = [
    "CancellationSignal",
    "Operation",
    "OperationGuard",
    "next_operation_id",
]

LOGGER = logging.getLogger(__name__)


class CancellationSignal:
    """Cooperative cancellation flag shared by an operation's transport calls."""

    __slots__ = ("_cancelled", "_event", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the signal. Returns ``False`` if it had already fired."""

        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()
        return True

    async def wait(self) -> None:
        """Suspend until the signal fires."""

        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationSignal(cancelled={self._cancelled}, reason={self.reason!r})"


class _OperationIdSource:
    """Strictly increasing, millisecond-derived operation ids."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            now_ms = time.time_ns() // 1_000_000
            self._last = max(now_ms, self._last + 1)
            return self._last


_ID_SOURCE = _OperationIdSource()


def next_operation_id() -> int:
    """Return a process-unique operation id."""

    return _ID_SOURCE.next()


@dataclass(slots=True)
class Operation:
    """One orchestrator run: an id plus the signal that cancels it."""

    operation_id: int = field(default_factory=next_operation_id)
    signal: CancellationSignal = field(default_factory=CancellationSignal)

    @property
    def cancelled(self) -> bool:
        return self.signal.cancelled


class OperationGuard:
    """Holds at most one current operation.

    The operation id and its cancellation signal are reassigned together under
    a lock, so a reader never observes a new id paired with an old signal.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._current: Operation | None = None

    @property
    def current(self) -> int | None:
        with self._lock:
            return self._current.operation_id if self._current is not None else None

    @property
    def current_operation(self) -> Operation | None:
        with self._lock:
            return self._current

    def acquire(self, operation: Operation) -> Operation | None:
        """Make ``operation`` current, cancelling a different current operation first.

        Returns the superseded operation, if any.
        """

        with self._lock:
            previous = self._current
            if previous is not None and previous.operation_id != operation.operation_id:
                if previous.signal.cancel("superseded"):
                    LOGGER.debug(
                        "[%s] Superseded by operation %s; cancelled its signal",
                        previous.operation_id,
                        operation.operation_id,
                    )
            else:
                previous = None
            self._current = operation
            LOGGER.debug("[%s] Guard acquired", operation.operation_id)
            return previous

    def is_current(self, operation_id: int | None) -> bool:
        with self._lock:
            return (
                operation_id is not None
                and self._current is not None
                and self._current.operation_id == operation_id
            )

    def release(self, operation_id: int | None) -> bool:
        """Clear the guard if ``operation_id`` is current; stale releases are no-ops."""

        with self._lock:
            if self._current is None or self._current.operation_id != operation_id:
                LOGGER.debug(
                    "[%s] Ignoring release; current operation is %s",
                    operation_id,
                    self._current.operation_id if self._current is not None else None,
                )
                return False
            self._current = None
            LOGGER.debug("[%s] Guard released", operation_id)
            return True

    def cancel_current(self, reason: str | None = None) -> int | None:
        """Fire the current operation's signal without releasing the guard."""

        with self._lock:
            if self._current is None:
                return None
            self._current.signal.cancel(reason)
            return self._current.operation_id
