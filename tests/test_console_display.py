"""Tests for the rich console caption display and the CLI wiring."""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from livecaption import __main__ as cli
from livecaption.console_display import LiveCaptionDisplay
from livecaption.core.events import UNTIL_NEXT, OutputEvent, StatusEvent, StatusKind


def _display() -> tuple[LiveCaptionDisplay, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=False, width=80)
    return LiveCaptionDisplay(console), buffer


def test_output_replaces_current_caption() -> None:
    display, _ = _display()
    first = OutputEvent(text="hello", start=0, end=1000)
    second = OutputEvent(text="world", start=1000, end=2000)

    display(first)
    display(second)

    assert display.caption is second
    assert display.captions_shown == 2


def test_clear_caption_only_clears_matching_event() -> None:
    display, _ = _display()
    first = OutputEvent(text="hello", start=0, end=1000, duration=2000)
    second = OutputEvent(text="world", start=1000, end=2000, duration=2000)
    display(first)
    display(second)

    display.clear_caption(first)
    assert display.caption is second
    display.clear_caption(second)
    assert display.caption is None


def test_error_status_clears_caption() -> None:
    display, _ = _display()
    display(OutputEvent(text="hello", start=0, end=1000))
    display(StatusEvent(StatusKind.ERROR, "Microphone unavailable", origin="audio"))

    assert display.caption is None
    assert display.status.kind is StatusKind.ERROR


def test_live_render_shows_status_and_caption() -> None:
    display, buffer = _display()
    display.start()
    display(StatusEvent(StatusKind.READY, "Listening"))
    display(OutputEvent(text="hello there", start=0, end=1000))
    display.stop()

    rendered = buffer.getvalue()
    assert "Live Caption" in rendered
    assert "Listening" in rendered
    assert "hello there" in rendered


def test_unknown_event_type_is_rejected() -> None:
    display, _ = _display()
    with pytest.raises(TypeError):
        display("not an event")


def test_cli_overrides_from_flags() -> None:
    args = cli.parse_args(["--device", "2", "--window-seconds", "1.5", "--duration", "2000"])
    assert cli.build_overrides(args) == {
        "audio": {"device_index": 2},
        "window": {"seconds": 1.5},
        "output": {"duration": 2000},
    }

    args = cli.parse_args(["--duration", "until_next"])
    assert args.duration is UNTIL_NEXT
    assert cli.build_overrides(args) == {"output": {"duration": "until_next"}}

    assert cli.build_overrides(cli.parse_args([])) == {}


def test_cli_rejects_bad_duration(capsys) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["--duration", "-5"])
    assert "positive" in capsys.readouterr().err


def test_cli_list_devices_without_pyaudio(monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "list_input_devices", lambda: [])
    assert cli.main(["--list-devices"]) == 0
    assert "No audio input devices found" in capsys.readouterr().out


def test_cli_missing_config_file(isolated_config_dirs, capsys) -> None:
    assert cli.main(["--config", str(isolated_config_dirs / "nope.yaml")]) == 1
    assert "Configuration error" in capsys.readouterr().out
