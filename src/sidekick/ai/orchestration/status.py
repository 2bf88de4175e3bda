"""Externally visible exchange status: the loading flag and the chat phase."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

LOGGER = logging.getLogger(__name__)


class ChatStatus(str, Enum):
    """Phase indicator surfaced to whatever renders the conversation."""

    IDLE = "idle"
    THINKING = "thinking"
    SEARCHING = "searching"
    READING = "reading"
    DONE = "done"


StatusListener = Callable[[ChatStatus, bool], None]


class StatusIndicator:
    """Tracks ``status`` and ``loading`` and fans changes out to listeners."""

    def __init__(self) -> None:
        self._status = ChatStatus.IDLE
        self._loading = False
        self._listeners: list[StatusListener] = []
        self.history: list[ChatStatus] = []

    @property
    def status(self) -> ChatStatus:
        return self._status

    @property
    def loading(self) -> bool:
        return self._loading

    def set_status(self, status: ChatStatus) -> None:
        self._status = status
        self.history.append(status)
        self._notify()

    def set_loading(self, loading: bool) -> None:
        if self._loading == loading:
            return
        self._loading = loading
        self._notify()

    def reset_idle(self) -> None:
        self._loading = False
        self.set_status(ChatStatus.IDLE)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._status, self._loading)
            except Exception:  # pragma: no cover
                LOGGER.debug("Status listener failed", exc_info=True)


__all__ = ["ChatStatus", "StatusIndicator", "StatusListener"]
