"""Async AI client wrapper and the streaming chat transport built on it."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Protocol

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .orchestration.errors import TransportError
from .orchestration.operation_guard import CancellationSignal

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ChatRequest",
    "ChatTransport",
    "ClientSettings",
    "OpenAIChatTransport",
    "StreamDelta",
]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)
# Local hosts (Ollama, LM Studio) accept any bearer token but the SDK insists on one.
_PLACEHOLDER_API_KEY = "sk-no-key-required"
# Keys the streaming helper sets itself and rejects when passed explicitly.
_STREAM_MANAGED_KEYS = ("stream", "stream_options")


@dataclass(slots=True, frozen=True)
class StreamDelta:
    """Cumulative text seen so far on one leg; the last delta has ``finished=True``."""

    text: str
    finished: bool = False
    error: bool = False


@dataclass(slots=True)
class ChatRequest:
    """One chat-completions call: where to send it and what to send."""

    url: str
    base_url: str
    payload: Dict[str, Any]
    host: str = ""
    api_key: str | None = None

    @property
    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    @property
    def model(self) -> str:
        return str(self.payload.get("model") or "")

    def with_messages(self, messages: list[Mapping[str, Any]]) -> "ChatRequest":
        payload = dict(self.payload)
        payload["messages"] = [dict(message) for message in messages]
        return ChatRequest(url=self.url, base_url=self.base_url, payload=payload, host=self.host, api_key=self.api_key)


class ChatTransport(Protocol):
    """Streams one leg of an exchange as cumulative :class:`StreamDelta` values.

    Implementations stop yielding promptly once ``signal`` fires and raise
    :class:`TransportError` for failures that are not cancellations.
    """

    def stream(self, request: ChatRequest, *, signal: CancellationSignal) -> AsyncIterator[StreamDelta]:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        payload: Mapping[str, Any],
        *,
        signal: CancellationSignal | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream a chat completion for ``payload``.

        Failed attempts are retried only until the first content delta has
        been yielded; after that the error propagates so callers never see a
        restarted answer spliced onto a partial one.
        """

        request = self._build_chat_payload(payload)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            request.get("model"),
            len(request.get("messages") or ()),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(request)

        emitted = False

        def _retryable(exc: BaseException) -> bool:
            return not emitted and isinstance(exc, _RETRYABLE_ERRORS)

        async for attempt in self._retrying(_retryable):
            with attempt:
                async with self._client.chat.completions.stream(**request) as stream:
                    async for event in stream:
                        if signal is not None and signal.cancelled:
                            LOGGER.debug("Stream cancelled; closing response")
                            return
                        normalized = self._normalize_stream_event(event)
                        if normalized is not None:
                            emitted = True
                            yield normalized
                break

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or _PLACEHOLDER_API_KEY,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _retrying(self, predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(predicate),
        )

    def _build_chat_payload(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        request = {key: value for key, value in payload.items() if key not in _STREAM_MANAGED_KEYS}
        request.setdefault("model", self._settings.model)
        messages = request.get("messages")
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        request["messages"] = [dict(message) for message in messages]
        return request

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return AIStreamEvent(type=event_type, content=str(delta_text))
            return None
        if event_type == "content.done":
            return AIStreamEvent(type=event_type, content=getattr(event, "content", None))
        return None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def describe_transport_error(exc: BaseException) -> str:
    """Human-readable one-liner for a transport failure."""

    if isinstance(exc, APIStatusError):
        return f"HTTP {exc.status_code}: {exc.message}"
    if isinstance(exc, httpx.TimeoutException):
        return "Request timed out"
    return str(exc) or exc.__class__.__name__


@dataclass(slots=True)
class OpenAIChatTransport:
    """Default :class:`ChatTransport` speaking the OpenAI chat-completions protocol.

    One :class:`AIClient` is kept per ``(base_url, api_key)`` pair so both legs
    of an exchange reuse the same connection pool.
    """

    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False
    client_factory: Callable[[ClientSettings], AIClient] = AIClient
    _clients: Dict[tuple[str, str], AIClient] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "OpenAIChatTransport":
        return cls(
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers or {}) or None,
            debug_logging=settings.debug_logging,
        )

    async def stream(self, request: ChatRequest, *, signal: CancellationSignal) -> AsyncIterator[StreamDelta]:
        if signal.cancelled:
            return
        client = self._client_for(request)
        text = ""
        try:
            async for event in client.stream_chat(request.payload, signal=signal):
                if signal.cancelled:
                    return
                if event.type == "content.delta" and event.content:
                    text += event.content
                    yield StreamDelta(text)
                elif event.type == "content.done" and event.content:
                    text = event.content
        except asyncio.CancelledError:
            raise
        except TransportError:
            raise
        except Exception as exc:
            if signal.cancelled:
                LOGGER.debug("Transport failure after cancellation ignored: %s", exc)
                return
            LOGGER.warning("Chat stream to %s failed: %s", request.host or request.base_url, exc)
            raise TransportError(describe_transport_error(exc), host=request.host, cause=exc) from exc
        if signal.cancelled:
            return
        yield StreamDelta(text, finished=True)

    def _client_for(self, request: ChatRequest) -> AIClient:
        key = (request.base_url, request.api_key or "")
        client = self._clients.get(key)
        if client is None:
            client = self.client_factory(
                ClientSettings(
                    base_url=request.base_url,
                    api_key=request.api_key or "",
                    model=request.model,
                    request_timeout=self.request_timeout,
                    max_retries=self.max_retries,
                    retry_min_seconds=self.retry_min_seconds,
                    retry_max_seconds=self.retry_max_seconds,
                    default_headers=self.default_headers,
                    debug_logging=self.debug_logging,
                )
            )
            self._clients[key] = client
        return client

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
