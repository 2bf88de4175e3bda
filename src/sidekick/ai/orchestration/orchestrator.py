"""Top-level request orchestration for one conversational exchange at a time."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Sequence, Tuple

from ...chat.message_model import Turn, TurnLedger
from ...services.settings import Settings
from ...utils.logging import operation_scope
from ..client import ChatRequest, ChatTransport, OpenAIChatTransport
from ..hosts import ResolvedModel, resolve_model
from ..tools.executor import ExecutorConfig, RegistryToolExecutor, ToolExecutor
from ..tools.registry import ToolRegistry
from ..tools.types import ToolSpec
from .context import (
    ContextProviders,
    ModelQueryOptimizer,
    RetrieverOutcome,
    find_urls,
    optimize_query,
    read_page,
    run_retriever,
    run_web_search,
    scrape_urls,
)
from .errors import ConfigurationError, EmptyRequestError
from .message_builder import Note, build_messages, build_payload, build_system_prompt, compose_user_message
from .operation_guard import Operation, OperationGuard
from .status import ChatStatus, StatusIndicator
from .tool_call_parser import parse_tool_invocation
from .tool_loop import ToolCallLoop, stream_leg
from .update_sink import CANCELLATION_NOTICE, StreamingUpdateSink

__all__ = ["RequestOrchestrator"]

LOGGER = logging.getLogger(__name__)

_MODE_STATUS = {"web": ChatStatus.SEARCHING, "page": ChatStatus.READING}


class RequestOrchestrator:
    """Runs exchanges against the selected model, one authoritative operation at a time.

    A new :meth:`send` preempts whatever operation is current: the old one is
    cancelled and its trailing turn finalized as cancelled before the new
    operation takes the guard.
    """

    def __init__(
        self,
        settings: Settings | None,
        *,
        transport: ChatTransport | None = None,
        registry: ToolRegistry | None = None,
        executor: ToolExecutor | None = None,
        providers: ContextProviders | None = None,
        ledger: TurnLedger | None = None,
        guard: OperationGuard | None = None,
        indicator: StatusIndicator | None = None,
        grace_period: float | None = None,
        cancellation_notice: str = CANCELLATION_NOTICE,
    ) -> None:
        self._settings = settings
        self._transport = transport or OpenAIChatTransport.from_settings(settings or Settings())
        self._registry = registry
        if executor is None and registry is not None:
            config = ExecutorConfig(default_timeout=settings.tool_timeout) if settings is not None else None
            executor = RegistryToolExecutor(registry, config)
        self._executor = executor
        self._providers = providers or ContextProviders()
        self._ledger = ledger or TurnLedger()
        self._guard = guard or OperationGuard()
        self._indicator = indicator or StatusIndicator()
        if grace_period is None:
            grace_period = settings.grace_period if settings is not None else 2.0
        self._sink = StreamingUpdateSink(self._ledger, self._guard, self._indicator, grace_period=grace_period)
        self._tool_loop = ToolCallLoop(
            ledger=self._ledger,
            sink=self._sink,
            transport=self._transport,
            executor=self._executor,
        )
        self._cancellation_notice = cancellation_notice

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def ledger(self) -> TurnLedger:
        return self._ledger

    @property
    def guard(self) -> OperationGuard:
        return self._guard

    @property
    def sink(self) -> StreamingUpdateSink:
        return self._sink

    @property
    def indicator(self) -> StatusIndicator:
        return self._indicator

    @property
    def status(self) -> ChatStatus:
        return self._indicator.status

    @property
    def loading(self) -> bool:
        return self._indicator.loading

    @property
    def busy(self) -> bool:
        return self._guard.current is not None

    @property
    def settings(self) -> Settings | None:
        return self._settings

    def update_settings(self, settings: Settings | None) -> None:
        self._settings = settings

    def tool_specs(self) -> List[ToolSpec]:
        if self._registry is None:
            return []
        return self._registry.specs()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send(
        self,
        message: str,
        *,
        notes: Sequence[Note] = (),
        retriever_query: str | None = None,
    ) -> int | None:
        """Run one exchange for ``message``.

        Returns the operation id, or ``None`` when the operation was cancelled
        during an auxiliary phase. Raises :class:`ConfigurationError` (before
        anything is appended to the ledger) when the request cannot start.
        """

        operation = Operation()
        with operation_scope(operation.operation_id):
            return await self._send(operation, message or "", notes, retriever_query)

    def stop(self) -> int | None:
        """Cancel the current operation, or just reset the indicators when idle."""

        operation = self._guard.current_operation
        if operation is None:
            detached = self._cancel_pending_tool_operation("stopped by user")
            if detached is None:
                LOGGER.debug("stop() with no operation in progress")
                self._sink.reset_idle()
            return detached
        LOGGER.debug("[%s] stop() requested", operation.operation_id)
        operation.signal.cancel("stopped by user")
        self._sink.apply(operation.operation_id, self._cancellation_notice, finished=True, cancelled=True)
        return operation.operation_id

    async def aclose(self) -> None:
        self._sink.close()
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _send(
        self,
        operation: Operation,
        raw_message: str,
        notes: Sequence[Note],
        retriever_query: str | None,
    ) -> int | None:
        operation_id = operation.operation_id
        LOGGER.debug("[%s] send() with %d note(s), retriever=%s", operation_id, len(notes), bool(retriever_query))

        retrieved = RetrieverOutcome()
        if retriever_query and retriever_query.strip():
            self._set_status_when_idle(ChatStatus.SEARCHING)
            top_k = self._settings.retriever_top_k if self._settings is not None else 3
            retrieved = await run_retriever(
                self._providers.retriever, retriever_query, top_k, operation_id=operation_id
            )
            self._set_status_when_idle(ChatStatus.THINKING)

        composed = compose_user_message(
            raw_message,
            retriever_results=retrieved.results,
            retriever_error=retrieved.error,
            notes=notes,
        )
        settings, resolved = self._check_entry(operation_id, composed, notes, retrieved)

        self._preempt(operation_id)
        self._guard.acquire(operation)
        self._indicator.set_loading(True)
        self._indicator.set_status(_MODE_STATUS.get(settings.chat_mode, ChatStatus.THINKING))

        try:
            return await self._run(operation, settings, resolved, raw_message, composed)
        except asyncio.CancelledError:
            operation.signal.cancel("task cancelled")
            self._sink.apply(operation_id, self._cancellation_notice, finished=True, cancelled=True)
            raise
        except Exception as exc:
            if operation.cancelled:
                self._sink.settle_aborted(operation_id)
                return None
            LOGGER.error("[%s] Error during send operation: %s", operation_id, exc, exc_info=True)
            self._sink.apply(operation_id, str(exc) or exc.__class__.__name__, finished=True, error=True)
            return operation_id

    def _check_entry(
        self,
        operation_id: int,
        composed: str,
        notes: Sequence[Note],
        retrieved: RetrieverOutcome,
    ) -> Tuple[Settings, ResolvedModel]:
        settings = self._settings
        try:
            if settings is None:
                raise ConfigurationError("Configuration error: No settings loaded.")
            if not composed.strip() and not notes and not retrieved.results:
                raise EmptyRequestError("Nothing to send: the message is empty and no context was attached.")
            return settings, resolve_model(settings)
        except ConfigurationError as exc:
            LOGGER.debug("[%s] Refusing to start: %s", operation_id, exc)
            if self._guard.current is None:
                self._indicator.reset_idle()
            raise

    def _set_status_when_idle(self, status: ChatStatus) -> None:
        if self._guard.current is None and self._sink.pending_operation is None:
            self._indicator.set_status(status)

    def _cancel_pending_tool_operation(self, reason: str) -> int | None:
        """Cancel an operation whose tool outlived the grace period.

        Such an operation no longer holds the guard but will still try to
        resume its second leg once the tool returns.
        """

        pending = self._sink.pending_operation
        if pending is None:
            return None
        LOGGER.debug("[%s] Cancelling operation waiting on its tool (%s)", pending.operation_id, reason)
        pending.signal.cancel(reason)
        self._sink.settle_aborted(pending.operation_id)
        return pending.operation_id

    def _preempt(self, operation_id: int) -> None:
        previous = self._guard.current_operation
        if previous is None:
            self._cancel_pending_tool_operation("superseded")
            return
        LOGGER.info(
            "[%s] Operation %s is still in progress; cancelling it", operation_id, previous.operation_id
        )
        previous.signal.cancel("superseded")
        self._sink.apply(previous.operation_id, self._cancellation_notice, finished=True, cancelled=True)

    def _abort_if_cancelled(self, operation: Operation) -> bool:
        if not operation.cancelled:
            return False
        LOGGER.debug("[%s] Cancelled during an auxiliary phase", operation.operation_id)
        self._sink.apply(operation.operation_id, self._cancellation_notice, finished=True, cancelled=True)
        return True

    async def _run(
        self,
        operation: Operation,
        settings: Settings,
        resolved: ResolvedModel,
        raw_message: str,
        composed: str,
    ) -> int | None:
        operation_id = operation.operation_id
        signal = operation.signal
        history = self._ledger.snapshot()

        scraped = ""
        urls = find_urls(raw_message)
        if urls:
            self._indicator.set_status(ChatStatus.SEARCHING)
            scraped = await scrape_urls(self._providers.url_scraper, urls, signal, operation_id=operation_id)
            self._indicator.set_status(ChatStatus.THINKING)
            if self._abort_if_cancelled(operation):
                return None

        self._ledger.append(Turn.user(raw_message))
        self._ledger.append(Turn.placeholder())

        web_content = ""
        if settings.chat_mode == "web":
            web_content = await self._web_phase(operation, settings, resolved, composed, history)
            if web_content is None:
                return None

        page_content = ""
        if settings.chat_mode == "page":
            self._indicator.set_status(ChatStatus.READING)
            page_content = await read_page(
                self._providers.page_reader, signal, settings.context_limit, operation_id=operation_id
            )
            self._indicator.set_status(ChatStatus.THINKING)
            if self._abort_if_cancelled(operation):
                return None

        tool_mode = bool(settings.use_tools and self._executor is not None)
        system_prompt = build_system_prompt(
            settings,
            scraped_content=scraped,
            page_content=page_content,
            web_content=web_content,
            tools=self.tool_specs() if tool_mode else (),
        )
        messages = build_messages(system_prompt, history, composed)
        request = ChatRequest(
            url=resolved.url,
            base_url=resolved.base_url,
            payload=build_payload(resolved.model_id, messages, settings),
            host=resolved.host,
            api_key=resolved.api_key,
        )
        LOGGER.debug(
            "[%s] Prompt built: %d message(s), system=%s, tools=%s, host=%s",
            operation_id,
            len(messages),
            bool(system_prompt),
            tool_mode,
            resolved.host,
        )

        self._indicator.set_status(ChatStatus.THINKING)
        final_text = await stream_leg(self._transport, request, operation, self._sink)
        if final_text is None:
            return operation_id

        invocation = parse_tool_invocation(final_text) if tool_mode else None
        if invocation is not None:
            await self._tool_loop.run(operation, invocation, final_text, request)
        else:
            self._sink.apply(operation_id, final_text, finished=True, detect_tool_call=tool_mode)
        return operation_id

    async def _web_phase(
        self,
        operation: Operation,
        settings: Settings,
        resolved: ResolvedModel,
        composed: str,
        history: Sequence[Turn],
    ) -> str | None:
        operation_id = operation.operation_id
        signal = operation.signal
        self._indicator.set_status(ChatStatus.THINKING)
        optimizer = self._providers.query_optimizer or ModelQueryOptimizer(self._transport, resolved, settings)
        prior: List[Dict[str, Any]] = [{"role": turn.role, "content": turn.content} for turn in history]
        optimized = await optimize_query(optimizer, composed, prior, signal, operation_id=operation_id)
        if self._abort_if_cancelled(operation):
            return None

        self._indicator.set_status(ChatStatus.SEARCHING)
        results = await run_web_search(
            self._providers.web_search, optimized.query, signal, settings.web_limit, operation_id=operation_id
        )
        self._indicator.set_status(ChatStatus.THINKING)
        if self._abort_if_cancelled(operation):
            return None

        if self._guard.is_current(operation_id) and self._ledger.has_streaming_assistant():
            self._ledger.annotate_trailing(web_display_content=optimized.display)
        return results
