"""Logging setup for the sidekick command.

Records are tagged with the operation that produced them. The orchestrator
binds the id with :func:`operation_scope` for the duration of a send, so
transport, tool and context-phase messages can be grouped per exchange in
the log file even when they carry no id of their own.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterator

__all__ = ["OperationFilter", "current_operation_id", "operation_scope", "setup_logging"]

LOG_FILE_NAME = "sidekick.log"
_DEFAULT_LOG_DIR = Path.home() / ".sidekick" / "logs"
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | op=%(operation_id)s | %(name)s | %(message)s"
# stdout carries the streamed answer; diagnostics stay short on stderr.
_CONSOLE_FORMAT = "sidekick: %(levelname)s: %(message)s"

_operation_id: contextvars.ContextVar[int | None] = contextvars.ContextVar("sidekick_operation_id", default=None)


def current_operation_id() -> int | None:
    return _operation_id.get()


@contextlib.contextmanager
def operation_scope(operation_id: int) -> Iterator[None]:
    """Tag log records emitted inside the block (and tasks spawned from it) with ``operation_id``."""

    token = _operation_id.set(operation_id)
    try:
        yield
    finally:
        _operation_id.reset(token)


class OperationFilter(logging.Filter):
    """Adds ``operation_id`` to every record; ``-`` outside an operation."""

    def filter(self, record: logging.LogRecord) -> bool:
        operation_id = _operation_id.get()
        record.operation_id = "-" if operation_id is None else operation_id
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Log to a rotating file under ``log_dir`` and warnings to stderr.

    ``log_dir`` defaults to ``$SIDEKICK_LOG_DIR`` or ``~/.sidekick/logs``.
    Calling again without ``force`` keeps the existing handlers.
    """

    target_dir = Path(log_dir or os.environ.get("SIDEKICK_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    log_path = target_dir / LOG_FILE_NAME
    root = logging.getLogger()
    if not force and any(_is_sidekick_handler(handler) for handler in root.handlers):
        return log_path

    target_dir.mkdir(parents=True, exist_ok=True)
    operation_filter = OperationFilter()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    file_handler.addFilter(operation_filter)
    handlers: list[logging.Handler] = [file_handler]

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(max(level, logging.WARNING))
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        console_handler.addFilter(operation_filter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return log_path


def _is_sidekick_handler(handler: logging.Handler) -> bool:
    return any(isinstance(item, OperationFilter) for item in handler.filters)
