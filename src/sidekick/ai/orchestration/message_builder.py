"""Prompt assembly: system prompt parts, history conversion and request payloads."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from ...chat.message_model import Turn
from ..tools.types import ToolSpec

__all__ = [
    "UNLIMITED_CONTEXT",
    "Note",
    "build_messages",
    "build_payload",
    "build_system_prompt",
    "build_tools_prompt",
    "compose_user_message",
    "format_note_attachments",
    "history_messages",
    "tool_result_content",
    "truncate_context",
    "turn_to_api_message",
    "user_context_statement",
]

# A limit of 128 (thousand characters) means "send everything".
UNLIMITED_CONTEXT = 128

DEFAULT_PAYLOAD_OPTIONS: Mapping[str, Any] = {
    "temperature": 0.7,
    "max_tokens": 32048,
    "top_p": 1,
    "presence_penalty": 0,
}

TOOLS_PROMPT_HEADER = "## AVAILABLE TOOLS"
TOOLS_PROMPT_TEMPLATE = """You can call the tools listed below when they are genuinely needed.

Guidelines:
1. Answer directly from your own knowledge or the conversation whenever that is enough.
2. Use exact argument values; never placeholders or variable names.
3. Do not repeat a call with arguments you have already used.
4. To call a tool, reply with ONLY a single JSON object of the form {{"tool_name": "<tool name>", "tool_arguments": {{"<argument>": <value>}}}} and no other text.

Available tools:
{catalogue}
"""


@dataclass(slots=True, frozen=True)
class Note:
    """A user note attached to a single message."""

    title: str
    content: str


def user_context_statement(user_name: str | None, user_profile: str | None) -> str:
    name = (user_name or "").strip()
    profile = (user_profile or "").strip()
    if name and name.lower() != "user":
        statement = f'You are interacting with a user named "{name}".'
        if profile:
            statement += f' Their provided profile information is: "{profile}".'
        return statement
    if profile:
        return f'You are interacting with a user. Their provided profile information is: "{profile}".'
    return ""


def format_note_attachments(notes: Iterable[Note]) -> str:
    return "".join(
        f'\n\n---\nUser-provided note: "{note.title}"\nContent:\n{note.content}\n---' for note in notes
    )


def compose_user_message(
    message: str,
    *,
    retriever_results: str = "",
    retriever_error: str | None = None,
    notes: Sequence[Note] = (),
) -> str:
    """Build the text sent as the final user message of the request."""

    composed = (message or "").strip()
    if retriever_error is not None:
        composed = f"(Error fetching search results: {retriever_error})\n{composed}"
    if retriever_results:
        composed = f"{retriever_results}\n\n---\n\n{composed}"
    if notes:
        composed += format_note_attachments(notes)
    return composed


def truncate_context(text: str | None, limit: int | None) -> str:
    """Clip auxiliary context to ``limit`` thousand characters."""

    text = text or ""
    if limit == UNLIMITED_CONTEXT:
        return text
    return text[: 1000 * (limit or 1)]


def build_tools_prompt(tools: Sequence[ToolSpec]) -> str:
    catalogue = json.dumps([spec.to_prompt_entry() for spec in tools], indent=2)
    return f"{TOOLS_PROMPT_HEADER}\n" + TOOLS_PROMPT_TEMPLATE.format(catalogue=catalogue)


def build_system_prompt(
    settings: Any,
    *,
    scraped_content: str = "",
    page_content: str = "",
    web_content: str = "",
    tools: Sequence[ToolSpec] = (),
) -> str:
    """Join the non-empty system prompt parts in their fixed order."""

    parts: List[str] = []
    persona = settings.persona_text() if hasattr(settings, "persona_text") else ""
    if persona:
        parts.append(persona)
    statement = user_context_statement(getattr(settings, "user_name", ""), getattr(settings, "user_profile", ""))
    if statement:
        parts.append(statement)
    if getattr(settings, "use_note", False) and getattr(settings, "note_content", ""):
        parts.append(f"Refer to this note for context: {settings.note_content}")
    if scraped_content:
        parts.append(f"Use the following scraped content from URLs in the user's message:\n{scraped_content}")
    if page_content:
        parts.append(f"Use the following page content for context: {page_content}")
    if web_content:
        parts.append(f"Refer to this web search summary: {web_content}")
    if getattr(settings, "use_tools", True) and tools:
        parts.append(build_tools_prompt(tools))
    return "\n\n".join(parts).strip()


def turn_to_api_message(turn: Turn) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": turn.role, "content": turn.content or ""}
    if turn.role == "tool":
        if turn.name:
            message["name"] = turn.name
        if turn.tool_call_id:
            message["tool_call_id"] = turn.tool_call_id
    if turn.role == "assistant" and turn.tool_calls:
        message["tool_calls"] = [call.as_payload() for call in turn.tool_calls]
    return message


def history_messages(turns: Iterable[Turn]) -> List[Dict[str, Any]]:
    """Convert ledger turns to API messages, skipping unfinished or failed assistant turns.

    Tool calls that never received a tool result (the exchange was stopped
    while the tool ran) are sent as plain assistant text.
    """

    turns = list(turns)
    answered = {turn.tool_call_id for turn in turns if turn.role == "tool" and turn.tool_call_id}
    messages: List[Dict[str, Any]] = []
    for turn in turns:
        if turn.role == "assistant" and turn.status != "complete":
            continue
        message = turn_to_api_message(turn)
        calls = turn.tool_calls or []
        if calls and any(call.id not in answered for call in calls):
            message.pop("tool_calls", None)
        messages.append(message)
    return messages


def build_messages(system_prompt: str, history: Sequence[Turn], user_message: str) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})
    messages.extend(history_messages(history))
    messages.append({"role": "user", "content": user_message})
    return messages


def build_payload(model_id: str, messages: Sequence[Mapping[str, Any]], settings: Any = None) -> Dict[str, Any]:
    """Chat-completions body with the sampling options from ``settings``."""

    payload: Dict[str, Any] = {"stream": True, "model": model_id, "messages": [dict(m) for m in messages]}
    for key, default in DEFAULT_PAYLOAD_OPTIONS.items():
        value = getattr(settings, key, None) if settings is not None else None
        payload[key] = default if value is None else value
    return payload


def tool_result_content(result: str, host: str) -> str:
    """Encode a tool result the way ``host`` expects tool messages."""

    if host != "gemini":
        return result
    try:
        parsed = json.loads(result)
    except (TypeError, ValueError):
        parsed = result
    return json.dumps({"result": parsed})
