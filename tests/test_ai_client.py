"""Tests for the OpenAI-compatible AI client and the chat transport built on it."""

from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, AsyncIterator, Iterable, cast

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from sidekick.ai.client import (
    AIClient,
    AIStreamEvent,
    ChatRequest,
    ClientSettings,
    OpenAIChatTransport,
    StreamDelta,
    describe_transport_error,
)
from sidekick.ai.orchestration.errors import TransportError
from sidekick.ai.orchestration.operation_guard import CancellationSignal
from sidekick.services.settings import Settings


@dataclass
class _FakeEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    content: str | None = None


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "http://local/chat/completions"))


class _FakeStream:
    def __init__(self, steps: Iterable[Any]):
        self._iterator = iter(list(steps))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> _FakeEvent:
        try:
            step = next(self._iterator)
        except StopIteration as exc:  # pragma: no cover - exhaust iterator
            raise StopAsyncIteration from exc
        if isinstance(step, BaseException):
            raise step
        return step


class _FakeStreamContext:
    def __init__(self, attempt: Any):
        self._attempt = attempt

    async def __aenter__(self) -> _FakeStream:
        if isinstance(self._attempt, BaseException):
            raise self._attempt
        return _FakeStream(self._attempt)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeCompletions:
    """Each ``stream()`` call consumes one attempt: an exception or a list of events."""

    def __init__(self, *attempts: Any):
        self._attempts = list(attempts)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        return _FakeStreamContext(self._attempts.pop(0))


def _make_client(*attempts: Any) -> tuple[AIClient, _FakeCompletions]:
    completions = _FakeCompletions(*attempts)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    client = AIClient(
        ClientSettings(
            base_url="http://local",
            api_key="test",
            model="stub",
            max_retries=3,
            retry_min_seconds=0.0,
            retry_max_seconds=0.0,
        ),
        client=cast(AsyncOpenAI, fake),
    )
    return client, completions


async def _collect(stream: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in stream]


PAYLOAD = {"stream": True, "stream_options": {"include_usage": True}, "messages": [{"role": "user", "content": "hi"}]}


@pytest.mark.asyncio
async def test_stream_chat_normalizes_content_events() -> None:
    client, completions = _make_client(
        [
            _FakeEvent(type="chunk"),
            _FakeEvent(type="content.delta", delta="Hel"),
            _FakeEvent(type="content.delta", delta=""),
            _FakeEvent(type="content.delta", delta="lo"),
            _FakeEvent(type="content.done", content="Hello"),
        ]
    )

    events = await _collect(client.stream_chat(PAYLOAD))

    assert events == [
        AIStreamEvent(type="content.delta", content="Hel"),
        AIStreamEvent(type="content.delta", content="lo"),
        AIStreamEvent(type="content.done", content="Hello"),
    ]
    request = completions.calls[0]
    assert "stream" not in request and "stream_options" not in request
    assert request["model"] == "stub"


@pytest.mark.asyncio
async def test_stream_chat_requires_messages() -> None:
    client, _ = _make_client([])

    with pytest.raises(ValueError):
        await _collect(client.stream_chat({"messages": []}))


@pytest.mark.asyncio
async def test_stream_chat_retries_before_first_delta() -> None:
    client, completions = _make_client(
        _connection_error(),
        [_FakeEvent(type="content.delta", delta="ok")],
    )

    events = await _collect(client.stream_chat(PAYLOAD))

    assert [event.content for event in events] == ["ok"]
    assert len(completions.calls) == 2


@pytest.mark.asyncio
async def test_stream_chat_does_not_retry_after_content() -> None:
    client, completions = _make_client(
        [_FakeEvent(type="content.delta", delta="partial"), _connection_error()],
        [_FakeEvent(type="content.delta", delta="restarted")],
    )
    seen: list[str | None] = []

    with pytest.raises(APIConnectionError):
        async for event in client.stream_chat(PAYLOAD):
            seen.append(event.content)

    assert seen == ["partial"]
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_stream_chat_stops_when_signal_fires() -> None:
    client, _ = _make_client(
        [_FakeEvent(type="content.delta", delta="a"), _FakeEvent(type="content.delta", delta="b")]
    )
    signal = CancellationSignal()
    seen: list[str | None] = []

    async for event in client.stream_chat(PAYLOAD, signal=signal):
        seen.append(event.content)
        signal.cancel("stop")

    assert seen == ["a"]


def test_describe_transport_error() -> None:
    response = httpx.Response(500, request=httpx.Request("POST", "http://local"))

    assert describe_transport_error(APIStatusError("boom", response=response, body=None)) == "HTTP 500: boom"
    assert describe_transport_error(httpx.ReadTimeout("slow")) == "Request timed out"
    assert describe_transport_error(RuntimeError()) == "RuntimeError"


class _ScriptedAIClient:
    instances: list["_ScriptedAIClient"] = []

    def __init__(self, settings: ClientSettings, events: list[Any] | None = None) -> None:
        self.settings = settings
        self.events = events if events is not None else []
        self.closed = False
        _ScriptedAIClient.instances.append(self)

    async def stream_chat(self, payload: Any, *, signal: CancellationSignal | None = None):
        for event in self.events:
            if isinstance(event, BaseException):
                raise event
            yield event

    async def aclose(self) -> None:
        self.closed = True


def _request(base_url: str = "http://local/v1") -> ChatRequest:
    return ChatRequest(
        url=f"{base_url}/chat/completions",
        base_url=base_url,
        payload={"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        host="custom",
        api_key="k",
    )


def _transport(events: list[Any]) -> OpenAIChatTransport:
    _ScriptedAIClient.instances = []
    return OpenAIChatTransport(
        max_retries=1,
        client_factory=lambda settings: _ScriptedAIClient(settings, list(events)),  # type: ignore[arg-type, return-value]
    )


@pytest.mark.asyncio
async def test_transport_yields_cumulative_deltas_and_finish() -> None:
    transport = _transport(
        [
            AIStreamEvent(type="content.delta", content="Hel"),
            AIStreamEvent(type="content.delta", content="lo"),
            AIStreamEvent(type="content.done", content="Hello!"),
        ]
    )

    deltas = await _collect(transport.stream(_request(), signal=CancellationSignal()))

    assert deltas == [StreamDelta("Hel"), StreamDelta("Hello"), StreamDelta("Hello!", finished=True)]
    created = _ScriptedAIClient.instances[0].settings
    assert created.base_url == "http://local/v1"
    assert created.api_key == "k"
    assert created.model == "m"
    assert created.max_retries == 1


@pytest.mark.asyncio
async def test_transport_reuses_clients_per_endpoint_and_closes_them() -> None:
    transport = _transport([AIStreamEvent(type="content.delta", content="x")])

    await _collect(transport.stream(_request(), signal=CancellationSignal()))
    await _collect(transport.stream(_request(), signal=CancellationSignal()))
    await _collect(transport.stream(_request("http://other/v1"), signal=CancellationSignal()))
    await transport.aclose()

    assert len(_ScriptedAIClient.instances) == 2
    assert all(client.closed for client in _ScriptedAIClient.instances)


@pytest.mark.asyncio
async def test_transport_maps_failures_to_transport_error() -> None:
    transport = _transport([AIStreamEvent(type="content.delta", content="x"), _connection_error()])

    with pytest.raises(TransportError) as excinfo:
        await _collect(transport.stream(_request(), signal=CancellationSignal()))

    assert str(excinfo.value) == "Connection error."
    assert excinfo.value.host == "custom"
    assert isinstance(excinfo.value.cause, APIConnectionError)


@pytest.mark.asyncio
async def test_transport_is_silent_once_cancelled() -> None:
    transport = _transport([AIStreamEvent(type="content.delta", content="x")])
    signal = CancellationSignal()
    signal.cancel("stop")

    assert await _collect(transport.stream(_request(), signal=signal)) == []
    assert _ScriptedAIClient.instances == []


def test_transport_from_settings() -> None:
    settings = Settings(request_timeout=12.0, max_retries=5, default_headers={"X-Title": "sidekick"})

    transport = OpenAIChatTransport.from_settings(settings)

    assert transport.request_timeout == 12.0
    assert transport.max_retries == 5
    assert transport.default_headers == {"X-Title": "sidekick"}
