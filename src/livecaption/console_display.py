"""
Console caption display.

A terminal stand-in for the start page widget: a status line plus the
current caption, rendered with rich. It is a plain event listener, so it can
be handed to SessionController.set_listener() directly.
"""

from __future__ import annotations

import threading
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from livecaption.core.events import (
    Event,
    OutputEvent,
    StatusEvent,
    StatusKind,
    dispatch_event,
)

_STATUS_STYLES = {
    StatusKind.LOADING: "yellow",
    StatusKind.READY: "green",
    StatusKind.DEGRADED: "dark_orange",
    StatusKind.ERROR: "bold red",
}


class LiveCaptionDisplay:
    """Shows the latest status and the caption currently on screen."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._lock = threading.Lock()
        self._live: Optional[Live] = None
        self._status: StatusEvent = StatusEvent(StatusKind.LOADING, "Starting...")
        self._caption: Optional[OutputEvent] = None
        self.captions_shown = 0

    @property
    def status(self) -> StatusEvent:
        return self._status

    @property
    def caption(self) -> Optional[OutputEvent]:
        return self._caption

    def start(self) -> None:
        if self._live is not None:
            return
        self._live = Live(
            self._render(),
            console=self.console,
            transient=False,
            redirect_stderr=False,
            auto_refresh=False,
        )
        self._live.start()

    def stop(self) -> None:
        live = self._live
        self._live = None
        if live is not None:
            live.stop()

    def __call__(self, event: Event) -> None:
        self.handle(event)

    def handle(self, event: Event) -> None:
        with self._lock:
            dispatch_event(event, self._on_status, self._on_output)
        self._refresh()

    def clear_caption(self, event: Optional[OutputEvent] = None) -> None:
        """Remove the caption (only if it is still `event`, when given)."""
        with self._lock:
            if event is not None and self._caption is not event:
                return
            self._caption = None
        self._refresh()

    def _on_status(self, event: StatusEvent) -> None:
        self._status = event
        if event.is_error:
            self._caption = None

    def _on_output(self, event: OutputEvent) -> None:
        self._caption = event
        self.captions_shown += 1

    def _refresh(self) -> None:
        if self._live is not None:
            self._live.update(self._render(), refresh=True)

    def _render(self) -> Panel:
        with self._lock:
            status = self._status
            caption = self._caption

        style = _STATUS_STYLES.get(status.kind, "white")
        status_line = Text(f"{status.kind.value}", style=style)
        if status.message:
            status_line.append(f"  {status.message}", style="grey58")

        if caption is None:
            caption_text = Text("...", style="grey50")
        else:
            caption_text = Text(caption.text, style="bold white")
            caption_text.append(
                f"  [{caption.start / 1000:.1f}s - {caption.end / 1000:.1f}s]",
                style="grey50",
            )

        return Panel(
            Group(status_line, caption_text),
            title="[bold white]Live Caption[/bold white]",
            border_style="blue",
        )
