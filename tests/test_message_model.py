"""Tests for conversation turns and the append-only ledger."""

from __future__ import annotations

import pytest

from sidekick.chat.message_model import LedgerError, ToolCall, Turn, TurnLedger


def test_append_stamps_strictly_increasing_timestamps() -> None:
    ledger = TurnLedger()

    first = ledger.append(Turn.user("a"))
    second = ledger.append(Turn.user("b"))

    assert second.timestamp > first.timestamp
    assert len(ledger) == 2


def test_update_trailing_mutates_streaming_turn_only() -> None:
    ledger = TurnLedger([Turn.user("hi"), Turn.placeholder()])

    ledger.update_trailing(content="partial")
    ledger.update_trailing(content="final", status="complete")

    assert ledger[1].content == "final"
    assert ledger[1].status == "complete"
    with pytest.raises(LedgerError):
        ledger.update_trailing(content="rewrite")


def test_update_on_empty_ledger_raises() -> None:
    with pytest.raises(LedgerError):
        TurnLedger().update_trailing(content="x")


def test_snapshot_returns_copies() -> None:
    ledger = TurnLedger([Turn.placeholder()])

    copy = ledger.snapshot()[0]
    copy.content = "tampered"

    assert ledger[0].content == ""


def test_has_streaming_assistant() -> None:
    ledger = TurnLedger()
    assert not ledger.has_streaming_assistant()

    ledger.append(Turn.user("hi"))
    assert not ledger.has_streaming_assistant()

    ledger.append(Turn.placeholder())
    assert ledger.has_streaming_assistant()


def test_annotate_trailing_sets_display_content() -> None:
    ledger = TurnLedger([Turn.placeholder()])

    ledger.annotate_trailing(web_display_content="**Original query:**")

    assert ledger[0].web_display_content == "**Original query:**"
    assert ledger[0].status == "streaming"


def test_listeners_receive_appends_and_updates() -> None:
    ledger = TurnLedger()
    events: list[tuple[int, str, str | None]] = []
    unsubscribe = ledger.subscribe(lambda index, turn: events.append((index, turn.status, turn.content)))

    ledger.append(Turn.placeholder())
    ledger.update_trailing(content="x", status="complete")
    unsubscribe()
    ledger.append(Turn.user("ignored"))

    assert events == [(0, "streaming", ""), (0, "complete", "x")]


def test_to_dict_includes_tool_fields() -> None:
    call = ToolCall(id="tool_1", name="lookup", arguments="{}")
    assistant = Turn(role="assistant", content="", tool_calls=[call])
    tool = Turn.tool(tool_call_id="tool_1", name="lookup", content="result")

    assert assistant.to_dict()["tool_calls"] == [
        {"id": "tool_1", "type": "function", "function": {"name": "lookup", "arguments": "{}"}}
    ]
    payload = tool.to_dict()
    assert payload["tool_call_id"] == "tool_1"
    assert payload["name"] == "lookup"
    assert payload["role"] == "tool"
