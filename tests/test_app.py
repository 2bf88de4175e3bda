"""Tests covering the command-line entry point."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from helpers import ScriptedTransport, deltas, make_settings
from sidekick import app
from sidekick.ai.client import StreamDelta
from sidekick.ai.orchestration.errors import TransportError
from sidekick.ai.orchestration.orchestrator import RequestOrchestrator
from sidekick.chat.message_model import Turn


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, *, force=False: None)


class TestOverrides:
    def test_values_are_coerced_by_field_type(self) -> None:
        overrides = app._coerce_cli_overrides(
            [
                "temperature=0.25",
                "max_tokens=256",
                "use_tools=no",
                "selected_model=llama3",
                'models=[{"id": "llama3", "host": "ollama"}]',
                'personas={"Terse": "Be brief."}',
            ]
        )

        assert overrides == {
            "temperature": 0.25,
            "max_tokens": 256,
            "use_tools": False,
            "selected_model": "llama3",
            "models": [{"id": "llama3", "host": "ollama"}],
            "personas": {"Terse": "Be brief."},
        }

    def test_optional_fields_accept_none(self) -> None:
        assert app._coerce_cli_overrides(["selected_model=none"]) == {"selected_model": None}

    @pytest.mark.parametrize(
        "item",
        ["temperature", "=1", "bogus=1", "use_tools=maybe", "max_tokens=many", "models={}"],
    )
    def test_invalid_overrides(self, item: str) -> None:
        with pytest.raises(ValueError):
            app._coerce_cli_overrides([item])


def test_parse_notes() -> None:
    notes = app.parse_notes(["Todo=buy milk=now"])

    assert notes[0].title == "Todo"
    assert notes[0].content == "buy milk=now"
    with pytest.raises(ValueError):
        app.parse_notes(["no separator"])
    with pytest.raises(ValueError):
        app.parse_notes([" =text"])


@pytest.mark.parametrize(
    ("turn", "operation_id", "expected"),
    [
        (Turn(role="assistant", content="ok", status="complete"), 1, app.EXIT_OK),
        (Turn(role="assistant", content="Error: x", status="error"), 1, app.EXIT_ERROR_TURN),
        (Turn(role="assistant", content="[Operation cancelled by user]", status="cancelled"), 1, app.EXIT_CANCELLED),
        (Turn.tool(tool_call_id="t", name="n", content="r"), 1, app.EXIT_OK),
        (None, None, app.EXIT_CANCELLED),
    ],
)
def test_exit_code_for(turn: Turn | None, operation_id: int | None, expected: int) -> None:
    assert app.exit_code_for(turn, operation_id) == expected


def test_terminal_renderer_writes_only_new_text() -> None:
    out = io.StringIO()
    renderer = app.TerminalRenderer(out)

    renderer(0, Turn.user("hi"))
    renderer(1, Turn(role="assistant", content="", status="streaming", web_display_content="**Original query:** q\n\n"))
    renderer(1, Turn(role="assistant", content="Hel", status="streaming", web_display_content="**Original query:** q\n\n"))
    renderer(1, Turn(role="assistant", content="Hello", status="complete"))
    renderer(3, Turn(role="assistant", content="Again", status="complete"))
    renderer.finish()

    assert out.getvalue() == "**Original query:** q\n\nHello\nAgain\n"


class TestRunExchange:
    @pytest.mark.asyncio
    async def test_streams_answer_to_stdout(self) -> None:
        out, err = io.StringIO(), io.StringIO()
        orchestrator = RequestOrchestrator(make_settings(), transport=ScriptedTransport(deltas("Hi", "Hi there")))

        code = await app.run_exchange(make_settings(), "Hello", orchestrator=orchestrator, stdout=out, stderr=err)

        assert code == app.EXIT_OK
        assert out.getvalue() == "Hi there\n"
        assert err.getvalue() == ""

    @pytest.mark.asyncio
    async def test_error_turn_goes_to_stderr(self) -> None:
        out, err = io.StringIO(), io.StringIO()
        transport = ScriptedTransport([TransportError("HTTP 401: bad key")])
        orchestrator = RequestOrchestrator(make_settings(), transport=transport)

        code = await app.run_exchange(make_settings(), "Hello", orchestrator=orchestrator, stdout=out, stderr=err)

        assert code == app.EXIT_ERROR_TURN
        assert out.getvalue() == ""
        assert err.getvalue() == "Error: HTTP 401: bad key\n"

    @pytest.mark.asyncio
    async def test_configuration_error_is_a_usage_error(self) -> None:
        out, err = io.StringIO(), io.StringIO()
        settings = make_settings(selected_model=None)
        orchestrator = RequestOrchestrator(settings, transport=ScriptedTransport())

        code = await app.run_exchange(settings, "Hello", orchestrator=orchestrator, stdout=out, stderr=err)

        assert code == app.EXIT_USAGE
        assert "No model selected" in err.getvalue()

    @pytest.mark.asyncio
    async def test_builtin_tools_are_offered_and_run(self, monkeypatch: pytest.MonkeyPatch) -> None:
        call = json.dumps({"tool_name": "current_time", "tool_arguments": {"timezone": "UTC"}})
        transport = ScriptedTransport(deltas(call), deltas("It is noon."))

        def build(settings, *, registry=None):
            return RequestOrchestrator(settings, transport=transport, registry=registry, grace_period=5.0)

        monkeypatch.setattr(app, "RequestOrchestrator", build)
        out, err = io.StringIO(), io.StringIO()

        code = await app.run_exchange(make_settings(use_tools=True), "What time is it?", stdout=out, stderr=err)

        assert code == app.EXIT_OK
        assert '"name": "current_time"' in transport.messages(0)[0]["content"]
        tool_message = transport.messages(1)[-1]
        assert tool_message["role"] == "tool"
        assert json.loads(tool_message["content"])["timezone"] == "UTC"
        assert out.getvalue().endswith("It is noon.\n")
        assert transport.closed

    @pytest.mark.asyncio
    async def test_error_delta_after_partial_output(self) -> None:
        out, err = io.StringIO(), io.StringIO()
        transport = ScriptedTransport([StreamDelta("Par"), StreamDelta("overloaded", error=True)])
        orchestrator = RequestOrchestrator(make_settings(), transport=transport)

        code = await app.run_exchange(make_settings(), "Hello", orchestrator=orchestrator, stdout=out, stderr=err)

        assert code == app.EXIT_ERROR_TURN
        assert out.getvalue() == "Par\n"
        assert err.getvalue() == "Error: overloaded\n"


class TestMain:
    def test_dump_settings_redacts_secrets(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        path = tmp_path / "settings.json"
        monkeypatch.setenv("SIDEKICK_OPENAI_API_KEY", "sk-1234567890abcd")

        code = app.main(["--settings", str(path), "--set", "temperature=0.2", "--mode", "web", "--dump-settings"])

        assert code == app.EXIT_OK
        dumped = json.loads(capsys.readouterr().out)
        assert dumped["settings"]["temperature"] == 0.2
        assert dumped["settings"]["chat_mode"] == "web"
        assert dumped["settings"]["openai_api_key"] == "sk-1…abcd"
        assert dumped["meta"]["path"] == str(path)
        assert dumped["meta"]["cli_overrides"] == ["chat_mode", "temperature"]
        assert "SIDEKICK_OPENAI_API_KEY" in dumped["meta"]["environment_variables"]

    def test_settings_path_from_environment(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        path = tmp_path / "env-settings.json"
        path.write_text(json.dumps({"persona": "Default", "web_limit": 3}), encoding="utf-8")
        monkeypatch.setenv("SIDEKICK_SETTINGS_PATH", str(path))

        assert app.main(["--dump-settings"]) == app.EXIT_OK
        assert json.loads(capsys.readouterr().out)["settings"]["web_limit"] == 3

    def test_invalid_override_exits_with_usage_error(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code = app.main(["--settings", str(tmp_path / "s.json"), "--set", "bogus=1", "hello"])

        assert code == app.EXIT_USAGE
        assert "Unknown setting 'bogus'" in capsys.readouterr().err

    def test_runs_exchange_with_prompt_arguments(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        captured: dict[str, object] = {}

        async def fake_run_exchange(settings, prompt, *, notes=()):
            captured["prompt"] = prompt
            captured["notes"] = [(note.title, note.content) for note in notes]
            captured["mode"] = settings.chat_mode
            return app.EXIT_OK

        monkeypatch.setattr(app, "run_exchange", fake_run_exchange)

        code = app.main(
            ["--settings", str(tmp_path / "s.json"), "--mode", "page", "--note", "Ctx=some text", "what", "is", "this"]
        )

        assert code == app.EXIT_OK
        assert captured == {"prompt": "what is this", "notes": [("Ctx", "some text")], "mode": "page"}
