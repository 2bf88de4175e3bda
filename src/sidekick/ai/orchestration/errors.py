"""Exception taxonomy for request orchestration."""

from __future__ import annotations

from ..tools.executor import ToolExecutionError

__all__ = [
    "OrchestrationError",
    "ConfigurationError",
    "EmptyRequestError",
    "AuxiliaryFailure",
    "TransportError",
    "ToolExecutionFailure",
]


class OrchestrationError(Exception):
    """Base class for orchestration failures."""


class ConfigurationError(OrchestrationError):
    """No model, host or endpoint could be resolved; raised before any operation starts."""


class EmptyRequestError(ConfigurationError):
    """The composed message was empty and no auxiliary context was produced."""


class AuxiliaryFailure(OrchestrationError):
    """A context provider (search, scrape, page read) failed; always recovered locally."""

    def __init__(self, phase: str, cause: BaseException | None = None) -> None:
        self.phase = phase
        self.cause = cause
        detail = str(cause) if cause is not None else "unknown error"
        super().__init__(f"{phase} failed: {detail}")


class TransportError(OrchestrationError):
    """A non-cancellation network or stream failure reported by the model transport."""

    def __init__(self, message: str, *, host: str | None = None, cause: BaseException | None = None) -> None:
        self.host = host
        self.cause = cause
        super().__init__(message)


ToolExecutionFailure = ToolExecutionError
