"""Auxiliary context phases run before the model call.

Every phase degrades instead of failing the exchange: a provider error is
logged and replaced by the original content or a short annotation.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence

import httpx

from ..client import ChatRequest, ChatTransport
from ..hosts import ResolvedModel
from .errors import AuxiliaryFailure
from .message_builder import build_payload, truncate_context
from .operation_guard import CancellationSignal

__all__ = [
    "ContextProviders",
    "ModelQueryOptimizer",
    "OptimizedQuery",
    "RetrieverOutcome",
    "URL_RE",
    "fetch_url_text",
    "find_urls",
    "optimize_query",
    "read_page",
    "run_retriever",
    "run_web_search",
    "scrape_urls",
]

LOGGER = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://[^\s]+")
SCRAPE_FAILURE_TEXT = "[Error scraping one or more URLs]"

Retriever = Callable[[str, int], Awaitable[str]]
QueryOptimizer = Callable[[str, Sequence[Mapping[str, Any]], CancellationSignal], Awaitable[str]]
WebSearch = Callable[[str, CancellationSignal], Awaitable[str]]
PageReader = Callable[[CancellationSignal], Awaitable[str]]
UrlScraper = Callable[[str, CancellationSignal], Awaitable[str]]


def _reason(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


# ---------------------------------------------------------------------------
# URL scraping
# ---------------------------------------------------------------------------
class _TextExtractor(HTMLParser):
    _SKIPPED = {"script", "style", "noscript", "template", "svg"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._chunks: List[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: Any) -> None:
        if tag in self._SKIPPED:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIPPED and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:
        if not self._skip_depth and data.strip():
            self._chunks.append(data.strip())

    def text(self) -> str:
        return " ".join(self._chunks)


def html_to_text(markup: str) -> str:
    parser = _TextExtractor()
    parser.feed(markup)
    parser.close()
    return re.sub(r"\s+", " ", parser.text()).strip()


async def fetch_url_text(
    url: str,
    signal: CancellationSignal | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 15.0,
) -> str:
    """Download ``url`` and return its readable text.

    Returns ``""`` without issuing a request when ``signal`` already fired.
    """

    if signal is not None and signal.cancelled:
        return ""
    if client is None:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
            return await fetch_url_text(url, signal, client=owned, timeout=timeout)

    response = await client.get(url)
    response.raise_for_status()
    content_type = response.headers.get("content-type", "")
    if "html" in content_type or response.text.lstrip().startswith("<"):
        return html_to_text(response.text)
    return response.text.strip()


def find_urls(text: str | None) -> List[str]:
    return URL_RE.findall(text or "")


async def scrape_urls(
    scraper: UrlScraper | None,
    urls: Sequence[str],
    signal: CancellationSignal,
    *,
    operation_id: int | None = None,
) -> str:
    """Scrape all ``urls`` concurrently; any failure yields the scrape-failure marker."""

    if scraper is None or not urls:
        return ""
    try:
        pages = await asyncio.gather(*(scraper(url, signal) for url in urls))
    except Exception as exc:
        LOGGER.warning("[%s] %s", operation_id, AuxiliaryFailure("URL scraping", exc), exc_info=True)
        return SCRAPE_FAILURE_TEXT
    return "\n\n".join(f"Content from [{url}]:\n{page}" for url, page in zip(urls, pages))


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class RetrieverOutcome:
    results: str = ""
    error: str | None = None


async def run_retriever(
    retriever: Retriever | None,
    query: str,
    top_k: int,
    *,
    operation_id: int | None = None,
) -> RetrieverOutcome:
    if retriever is None or not (query or "").strip():
        return RetrieverOutcome()
    try:
        results = await retriever(query, top_k)
    except Exception as exc:
        LOGGER.warning("[%s] %s", operation_id, AuxiliaryFailure("Retriever search", exc), exc_info=True)
        return RetrieverOutcome(error=_reason(exc))
    return RetrieverOutcome(results=results or "")


# ---------------------------------------------------------------------------
# Web mode
# ---------------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class OptimizedQuery:
    query: str
    display: str


def _query_label(label: str, query: str) -> str:
    return f'**{label}:** "*{query}*"\n\n'


async def optimize_query(
    optimizer: QueryOptimizer | None,
    message: str,
    history: Sequence[Mapping[str, Any]],
    signal: CancellationSignal,
    *,
    operation_id: int | None = None,
) -> OptimizedQuery:
    """Rewrite ``message`` as a search query, labelling which query was used."""

    if optimizer is None:
        return OptimizedQuery(message, _query_label("Original query", message))
    try:
        candidate = await optimizer(message, history, signal)
    except Exception as exc:
        LOGGER.warning("[%s] %s", operation_id, AuxiliaryFailure("Query optimization", exc), exc_info=True)
        return OptimizedQuery(message, _query_label("Fallback query", message))
    candidate = (candidate or "").strip()
    if candidate and candidate != message:
        LOGGER.debug("[%s] Query optimized to %r", operation_id, candidate)
        return OptimizedQuery(candidate, _query_label("Optimized query", candidate))
    return OptimizedQuery(message, _query_label("Original query", message))


async def run_web_search(
    search: WebSearch | None,
    query: str,
    signal: CancellationSignal,
    limit: int | None,
    *,
    operation_id: int | None = None,
) -> str:
    if search is None:
        return ""
    try:
        results = await search(query, signal)
    except Exception as exc:
        if signal.cancelled:
            return ""
        LOGGER.warning("[%s] %s", operation_id, AuxiliaryFailure("Web search", exc), exc_info=True)
        return f"[Web search failed: {_reason(exc)}]"
    return truncate_context(results, limit)


async def read_page(
    reader: PageReader | None,
    signal: CancellationSignal,
    limit: int | None,
    *,
    operation_id: int | None = None,
) -> str:
    if reader is None:
        return ""
    try:
        content = await reader(signal)
    except Exception as exc:
        LOGGER.warning("[%s] %s", operation_id, AuxiliaryFailure("Page read", exc), exc_info=True)
        content = f"Error accessing page content: {_reason(exc)}"
    return truncate_context(content if isinstance(content, str) else "", limit)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ContextProviders:
    """Optional async collaborators that feed auxiliary context into a request."""

    retriever: Retriever | None = None
    query_optimizer: QueryOptimizer | None = None
    web_search: WebSearch | None = None
    page_reader: PageReader | None = None
    url_scraper: UrlScraper | None = fetch_url_text


class ModelQueryOptimizer:
    """Asks the selected model to turn the user's message into a search query."""

    SYSTEM_PROMPT = (
        "Rewrite the user's latest message as a short web search query. "
        "Use the conversation only to resolve references. Reply with the query alone."
    )

    def __init__(
        self,
        transport: ChatTransport,
        model: ResolvedModel,
        settings: Any = None,
        *,
        max_history: int = 6,
    ) -> None:
        self._transport = transport
        self._model = model
        self._settings = settings
        self._max_history = max(0, max_history)

    async def __call__(
        self,
        message: str,
        history: Sequence[Mapping[str, Any]],
        signal: CancellationSignal,
    ) -> str:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self.SYSTEM_PROMPT}]
        recent = [
            {"role": entry.get("role"), "content": entry.get("content")}
            for entry in history
            if entry.get("role") in ("user", "assistant") and entry.get("content")
        ]
        if self._max_history:
            messages.extend(recent[-self._max_history :])
        messages.append({"role": "user", "content": message})

        request = ChatRequest(
            url=self._model.url,
            base_url=self._model.base_url,
            payload=build_payload(self._model.model_id, messages, self._settings),
            host=self._model.host,
            api_key=self._model.api_key,
        )
        text = ""
        async for delta in self._transport.stream(request, signal=signal):
            text = delta.text
            if delta.error:
                raise RuntimeError(text or "query optimization failed")
        return self._clean(text)

    @staticmethod
    def _clean(text: str) -> str:
        lines = [line.strip() for line in (text or "").strip().splitlines() if line.strip()]
        if not lines:
            return ""
        return lines[0].strip("\"'` ")
