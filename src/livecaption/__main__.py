#!/usr/bin/env python3
"""
LiveCaption console entry point.

Usage:
    python -m livecaption [options]

Options:
    --config PATH          Path to configuration file
    --device N             PyAudio input device index
    --list-devices         List available audio input devices and exit
    --window-seconds S     Length of one inference window
    --duration MS          Caption display duration in ms, or "until_next"
    --verbose, -v          Enable verbose debug logging
    --help                 Show this help message
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from rich.console import Console

from livecaption import __version__
from livecaption.config import CaptionConfig, set_config
from livecaption.console_display import LiveCaptionDisplay
from livecaption.core.audio_source import list_input_devices
from livecaption.core.events import UNTIL_NEXT, parse_duration
from livecaption.core.session import SessionController, SessionState
from livecaption.logging import get_logger, setup_logging


def _duration_arg(value: str) -> Any:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="livecaption",
        description="LiveCaption: live speech-to-text in the terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--device",
        type=int,
        help="Audio input device index (see --list-devices)",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio input devices and exit",
    )
    parser.add_argument(
        "--window-seconds",
        type=float,
        help="Length of one inference window in seconds",
    )
    parser.add_argument(
        "--duration",
        type=_duration_arg,
        help='Caption display duration in milliseconds, or "until_next"',
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Turn command line flags into a config override mapping."""
    overrides: Dict[str, Any] = {}
    if args.device is not None:
        overrides.setdefault("audio", {})["device_index"] = args.device
    if args.window_seconds is not None:
        overrides.setdefault("window", {})["seconds"] = args.window_seconds
    if args.duration is not None:
        overrides.setdefault("output", {})["duration"] = (
            "until_next" if args.duration is UNTIL_NEXT else args.duration
        )
    return overrides


def list_audio_devices(console: Console) -> None:
    """List available audio input devices."""
    console.print("\n[bold]Available Audio Input Devices:[/bold]")
    console.print("-" * 50)

    devices = list_input_devices()
    if not devices:
        console.print("No audio input devices found.")
        console.print("Install PyAudio:  pip install 'livecaption[audio]'")
        return

    for device in devices:
        console.print(f"  [{device['index']}] {device['name']}", markup=False)
        console.print(
            f"      Channels: {device['channels']}, Sample Rate: {device['sample_rate']}"
        )
    console.print()


def run(controller: SessionController, poll_interval: float = 0.5) -> int:
    """Start a session and block until it fails or the user presses Ctrl+C."""
    if not controller.start():
        return 1
    try:
        while not controller.wait_for_state(
            (SessionState.FAILED, SessionState.IDLE), timeout=poll_interval
        ):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        controller.stop()

    return 1 if controller.state is SessionState.FAILED else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    console = Console()

    if args.list_devices:
        list_audio_devices(console)
        return 0

    try:
        config = CaptionConfig(
            Path(args.config) if args.config else None,
            overrides=build_overrides(args),
        )
        config.output_duration  # validates output.duration
    except (FileNotFoundError, RuntimeError, ValueError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 1
    set_config(config)

    try:
        setup_logging(config.config, verbose=args.verbose)
    except Exception as e:
        print(f"WARNING: Failed to set up logging: {e}", file=sys.stderr)

    logger = get_logger("cli")
    logger.info(f"LiveCaption v{__version__}")
    if config.loaded_from:
        logger.info(f"Using configuration {config.loaded_from}")

    display = LiveCaptionDisplay(console)
    controller = SessionController(
        config=config,
        listener=display,
        on_display_cleared=display.clear_caption,
    )

    display.start()
    try:
        exit_code = run(controller)
    finally:
        display.stop()

    if controller.last_error is not None:
        console.print(f"[bold red]Error:[/bold red] {controller.last_error.message}")
    logger.info(f"Exiting with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
