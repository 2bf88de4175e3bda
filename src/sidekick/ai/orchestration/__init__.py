"""Request orchestration: operation guard, streaming sink and tool-call parsing.

The orchestrator itself lives in :mod:`.orchestrator`; it depends on the
client and host modules, which in turn import the leaf modules exported here.
"""

from .errors import (
    AuxiliaryFailure,
    ConfigurationError,
    EmptyRequestError,
    OrchestrationError,
    ToolExecutionFailure,
    TransportError,
)
from .operation_guard import CancellationSignal, Operation, OperationGuard
from .status import ChatStatus, StatusIndicator
from .tool_call_parser import ToolInvocation, parse_tool_invocation, robust_parse_json
from .update_sink import CANCELLATION_NOTICE, StreamingUpdateSink

__all__ = [
    "AuxiliaryFailure",
    "CANCELLATION_NOTICE",
    "CancellationSignal",
    "ChatStatus",
    "ConfigurationError",
    "EmptyRequestError",
    "Operation",
    "OperationGuard",
    "OrchestrationError",
    "StatusIndicator",
    "StreamingUpdateSink",
    "ToolExecutionFailure",
    "ToolInvocation",
    "TransportError",
    "parse_tool_invocation",
    "robust_parse_json",
]
