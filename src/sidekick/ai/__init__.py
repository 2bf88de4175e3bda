"""AI client, host resolution and tool wiring."""

from .client import AIClient, ChatRequest, ChatTransport, ClientSettings, OpenAIChatTransport, StreamDelta

__all__ = ["AIClient", "ChatRequest", "ChatTransport", "ClientSettings", "OpenAIChatTransport", "StreamDelta"]
