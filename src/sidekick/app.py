"""Command-line entry point: run one exchange and stream the answer to the terminal."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.orchestration.errors import ConfigurationError
from .ai.orchestration.message_builder import Note
from .ai.orchestration.orchestrator import RequestOrchestrator
from .ai.tools.builtin import default_registry
from .ai.tools.registry import ToolRegistry
from .chat.message_model import Turn
from .services.settings import CHAT_MODES, SECRET_FIELDS, Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR_TURN = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file logging; the console only shows warnings and above."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


class TerminalRenderer:
    """Ledger listener that echoes the streaming assistant answer.

    Turns carry cumulative text, so only the unseen suffix is written.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._index: int | None = None
        self._written = 0
        self._annotated = False

    def __call__(self, index: int, turn: Turn) -> None:
        if turn.role != "assistant":
            return
        if index != self._index:
            if self._written:
                self._stream.write("\n")
            self._index = index
            self._written = 0
            self._annotated = False
        if turn.web_display_content and not self._annotated:
            self._stream.write(turn.web_display_content)
            self._annotated = True
        if turn.status == "error":
            return
        content = turn.content or ""
        if len(content) > self._written:
            self._stream.write(content[self._written :])
            self._written = len(content)
        self._stream.flush()

    def finish(self) -> None:
        if self._written:
            self._stream.write("\n")
            self._stream.flush()


def parse_notes(items: Sequence[str]) -> list[Note]:
    notes: list[Note] = []
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Note '{entry}' must use TITLE=TEXT syntax.")
        title, content = entry.split("=", 1)
        if not title.strip():
            raise ValueError("Note is missing a title.")
        notes.append(Note(title=title.strip(), content=content))
    return notes


def exit_code_for(final_turn: Turn | None, operation_id: int | None) -> int:
    if operation_id is None:
        return EXIT_CANCELLED
    if final_turn is None or final_turn.role != "assistant":
        return EXIT_OK
    if final_turn.status == "error":
        return EXIT_ERROR_TURN
    if final_turn.status == "cancelled":
        return EXIT_CANCELLED
    return EXIT_OK


async def run_exchange(
    settings: Settings,
    prompt: str,
    *,
    notes: Sequence[Note] = (),
    orchestrator: RequestOrchestrator | None = None,
    registry: ToolRegistry | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Send ``prompt`` once, echoing the answer; returns the process exit code.

    Without an ``orchestrator`` one is built around ``registry``, which
    defaults to the built-in tools.
    """

    out = stdout or sys.stdout
    err = stderr or sys.stderr
    active = orchestrator or RequestOrchestrator(
        settings, registry=registry if registry is not None else default_registry()
    )
    renderer = TerminalRenderer(out)
    unsubscribe = active.ledger.subscribe(renderer)

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, active.stop)
    try:
        operation_id = await active.send(prompt, notes=notes)
    except ConfigurationError as exc:
        err.write(f"{exc}\n")
        return EXIT_USAGE
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.remove_signal_handler(signal.SIGINT)
        unsubscribe()
        renderer.finish()
        if orchestrator is None:
            await active.aclose()

    final_turn = active.ledger.trailing()
    if final_turn is not None and final_turn.status == "error":
        err.write(f"{final_turn.content}\n")
    return exit_code_for(final_turn, operation_id)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `sidekick` console script."""

    args = _parse_cli_args(argv)

    debug = args.debug or _env_flag("SIDEKICK_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("SIDEKICK_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
        notes = parse_notes(args.notes or [])
    except ValueError as exc:
        print(f"Invalid argument: {exc}", file=sys.stderr)
        return EXIT_USAGE
    if args.mode:
        cli_overrides["chat_mode"] = args.mode

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return EXIT_OK

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    prompt = " ".join(args.prompt).strip()
    if not prompt and not sys.stdin.isatty():
        prompt = sys.stdin.read().strip()

    try:
        return asyncio.run(run_exchange(settings, prompt, notes=notes))
    except KeyboardInterrupt:  # pragma: no cover
        _LOGGER.info("Interrupted by user.")
        return EXIT_CANCELLED


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sidekick",
        description="Ask the configured model a question and stream the answer.",
    )
    parser.add_argument("prompt", nargs="*", help="Message to send (read from stdin when omitted).")
    parser.add_argument(
        "--settings",
        dest="settings_path",
        metavar="PATH",
        help="Override the default ~/.sidekick/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a persisted setting for this run (repeatable).",
    )
    parser.add_argument("--mode", choices=CHAT_MODES, help="Chat mode for this run.")
    parser.add_argument(
        "--note",
        dest="notes",
        metavar="TITLE=TEXT",
        action="append",
        default=[],
        help="Attach a note to the message (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    known = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in known:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, known[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    if raw_value.lower() in {"none", "null"} and type(None) in get_args(annotation):
        return None
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target in (list, dict):
        try:
            value = json.loads(raw_value or ("[]" if target is list else "{}"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
        if not isinstance(value, target):
            raise ValueError(f"Expected a JSON {target.__name__}")
        return value
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    for secret in SECRET_FIELDS:
        payload[secret] = redact_secret(payload.get(secret))
    meta = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("SIDEKICK_")),
    }
    json.dump({"settings": payload, "meta": meta}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
