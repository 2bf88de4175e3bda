"""Tools the model can invoke through the JSON tool-call protocol."""

from .executor import ExecutorConfig, RegistryToolExecutor, ToolExecutionError, ToolExecutor
from .registry import DuplicateToolError, ToolRegistry
from .types import FunctionTool, Tool, ToolCallRequest, ToolExecutionResult, ToolSpec

__all__ = [
    "DuplicateToolError",
    "ExecutorConfig",
    "FunctionTool",
    "RegistryToolExecutor",
    "Tool",
    "ToolCallRequest",
    "ToolExecutionError",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolRegistry",
    "ToolSpec",
]
