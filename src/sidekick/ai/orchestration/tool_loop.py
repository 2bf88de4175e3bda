"""Streaming legs and the single tool-call round trip of an operation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from ...chat.message_model import ToolCall, Turn, TurnLedger
from ..client import ChatRequest, ChatTransport
from ..tools.executor import ToolExecutionError, ToolExecutor
from ..tools.types import ToolCallRequest
from .message_builder import tool_result_content, turn_to_api_message
from .operation_guard import Operation
from .tool_call_parser import ToolInvocation, make_tool_call_id
from .update_sink import CANCELLATION_NOTICE, StreamingUpdateSink

__all__ = ["ToolCallLoop", "stream_leg", "tool_failure_content"]

LOGGER = logging.getLogger(__name__)


def tool_failure_content(name: str, reason: str) -> str:
    return f"Error executing tool {name}: {reason}"


async def stream_leg(
    transport: ChatTransport,
    request: ChatRequest,
    operation: Operation,
    sink: StreamingUpdateSink,
) -> str | None:
    """Drive one transport call, forwarding partial text to ``sink``.

    Errors and cancellation are finalized here. On a successful end of stream
    the final cumulative text is returned so the caller decides how the turn
    is finished; ``None`` means the leg already ended the operation.
    """

    operation_id = operation.operation_id
    signal = operation.signal
    text = ""
    try:
        async for delta in transport.stream(request, signal=signal):
            text = delta.text
            if delta.error:
                if signal.cancelled:
                    sink.settle_aborted(operation_id)
                else:
                    sink.apply(operation_id, text, finished=True, error=True)
                return None
            if delta.finished:
                break
            if signal.cancelled:
                break
            sink.apply(operation_id, text)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        if signal.cancelled:
            LOGGER.debug("[%s] Transport failed after cancellation: %s", operation_id, exc)
            sink.settle_aborted(operation_id)
            return None
        LOGGER.warning("[%s] Transport failed: %s", operation_id, exc)
        sink.apply(operation_id, str(exc) or exc.__class__.__name__, finished=True, error=True)
        return None

    if signal.cancelled:
        LOGGER.debug("[%s] Stream ended after cancellation", operation_id)
        sink.apply(operation_id, CANCELLATION_NOTICE, finished=True, cancelled=True)
        return None
    return text


class ToolCallLoop:
    """Executes a detected tool invocation and chains the second leg.

    Runs at most once per operation: the second leg's answer is never scanned
    for another tool call.
    """

    def __init__(
        self,
        *,
        ledger: TurnLedger,
        sink: StreamingUpdateSink,
        transport: ChatTransport,
        executor: ToolExecutor | None,
    ) -> None:
        self._ledger = ledger
        self._sink = sink
        self._transport = transport
        self._executor = executor

    async def run(
        self,
        operation: Operation,
        invocation: ToolInvocation,
        raw_text: str,
        request: ChatRequest,
    ) -> bool:
        """Run the round trip; returns ``True`` when the second leg was issued."""

        operation_id = operation.operation_id
        call = ToolCall(
            id=make_tool_call_id(operation_id, invocation.name),
            name=invocation.name,
            arguments=invocation.serialized_arguments(),
        )
        LOGGER.debug("[%s] Detected tool call %s (%s)", operation_id, call.name, call.id)
        self._sink.apply(operation_id, raw_text, finished=True, tool_calls=[call])

        tool_turn = await self._execute(operation_id, call, request.host)

        # The tool turn is only appended once the second leg owns the guard.
        if operation.cancelled or not self._sink.resume(operation_id):
            LOGGER.debug("[%s] Operation ended while tool %s ran; dropping its result", operation_id, call.name)
            return False
        self._ledger.append(tool_turn)
        self._ledger.append(Turn.placeholder())

        messages: List[Dict[str, Any]] = list(request.payload.get("messages") or [])
        messages.append({"role": "assistant", "tool_calls": [call.as_payload()]})
        messages.append(turn_to_api_message(tool_turn))
        follow_up = request.with_messages(messages)

        LOGGER.debug("[%s] Sending tool result back to the model", operation_id)
        final_text = await stream_leg(self._transport, follow_up, operation, self._sink)
        if final_text is not None:
            self._sink.apply(operation_id, final_text, finished=True, detect_tool_call=False)
        return True

    async def _execute(self, operation_id: int, call: ToolCall, host: str) -> Turn:
        request = ToolCallRequest(id=call.id, name=call.name, arguments=call.arguments)
        tool_call_id = call.id
        name = call.name
        if self._executor is None:
            content = tool_failure_content(call.name, "no tool executor is configured")
        else:
            try:
                result = await self._executor.execute(request)
            except asyncio.CancelledError:
                raise
            except ToolExecutionError as exc:
                LOGGER.warning("[%s] Tool %s failed: %s", operation_id, call.name, exc)
                content = tool_failure_content(call.name, str(exc) or "unknown error")
            except Exception as exc:
                LOGGER.warning("[%s] Tool %s raised: %s", operation_id, call.name, exc, exc_info=True)
                content = tool_failure_content(call.name, str(exc) or exc.__class__.__name__)
            else:
                content = tool_result_content(result.result, host)
                tool_call_id = result.tool_call_id or call.id
                name = result.name or call.name
        return Turn.tool(tool_call_id=tool_call_id, name=name, content=content)
