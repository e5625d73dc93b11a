"""
Event protocol between the inference side and listeners.

Two event shapes travel over one ordered channel per session:

- StatusEvent: pipeline lifecycle (loading, ready, degraded, error)
- OutputEvent: a transcript segment with a display duration

Listeners handle both exhaustively through dispatch_event(). Hosts that
forward events to a browser widget can use to_message()/from_message(),
which produce the {"type": "status"|"output", ...} message shape.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _UntilNext:
    """Sentinel type for OutputEvent.duration."""

    _instance: Optional["_UntilNext"] = None

    def __new__(cls) -> "_UntilNext":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNTIL_NEXT"

    def __reduce__(self) -> str:
        return "UNTIL_NEXT"


# Keep the segment on screen until a later OutputEvent replaces it
UNTIL_NEXT = _UntilNext()

Duration = Union[_UntilNext, int]


def parse_duration(value: Any) -> Duration:
    """
    Parse a configured duration.

    Accepts UNTIL_NEXT, the string "until_next" (any case) or a positive
    number of milliseconds.

    Raises:
        ValueError: If the value is neither
    """
    if value is UNTIL_NEXT:
        return UNTIL_NEXT
    if isinstance(value, str):
        text = value.strip().lower()
        if text == "until_next":
            return UNTIL_NEXT
        try:
            value = int(text)
        except ValueError:
            raise ValueError(f"Invalid duration: {value!r}") from None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Invalid duration: {value!r}")
    if value <= 0:
        raise ValueError(f"Duration must be positive, got {value!r}")
    return int(value)


class StatusKind(str, Enum):
    """Lifecycle status carried by a StatusEvent."""

    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclass(frozen=True)
class StatusEvent:
    """Pipeline lifecycle update."""

    kind: StatusKind
    message: str = ""
    # Stage that produced the event: "audio", "inference" or "session"
    origin: str = "session"

    tag = "status"

    @property
    def is_error(self) -> bool:
        return self.kind is StatusKind.ERROR


@dataclass(frozen=True)
class OutputEvent:
    """
    A transcript segment.

    start and end are session-relative milliseconds. duration is either
    UNTIL_NEXT (live caption, replaced by the next segment) or a number of
    milliseconds after which the listener may clear it on its own.
    """

    text: str
    start: int
    end: int
    duration: Duration = UNTIL_NEXT

    tag = "output"

    def __post_init__(self) -> None:
        if not self.text or not self.text.strip():
            raise ValueError("OutputEvent text must not be empty")
        if self.start > self.end:
            raise ValueError(
                f"OutputEvent start ({self.start}) must not exceed end ({self.end})"
            )
        if self.duration is not UNTIL_NEXT:
            object.__setattr__(self, "duration", parse_duration(self.duration))

    @property
    def until_next(self) -> bool:
        return self.duration is UNTIL_NEXT


Event = Union[StatusEvent, OutputEvent]
EventListener = Callable[[Event], None]


def dispatch_event(
    event: Event,
    on_status: Callable[[StatusEvent], T],
    on_output: Callable[[OutputEvent], T],
) -> T:
    """
    Route an event to the matching handler.

    Raises:
        TypeError: For anything that is not a StatusEvent or OutputEvent
    """
    if isinstance(event, StatusEvent):
        return on_status(event)
    if isinstance(event, OutputEvent):
        return on_output(event)
    raise TypeError(f"Unknown event type: {type(event).__name__}")


def to_message(event: Event) -> Dict[str, Any]:
    """Convert an event to the widget message shape."""

    def _status(ev: StatusEvent) -> Dict[str, Any]:
        return {"type": "status", "status": ev.kind.value, "message": ev.message}

    def _output(ev: OutputEvent) -> Dict[str, Any]:
        return {
            "type": "output",
            "message": ev.text,
            "start": ev.start,
            "end": ev.end,
            "duration": "until_next" if ev.until_next else ev.duration,
        }

    return dispatch_event(event, _status, _output)


def from_message(message: Dict[str, Any]) -> Event:
    """
    Parse the widget message shape back into an event.

    Raises:
        ValueError: If the message type is unknown or fields are invalid
    """
    msg_type = message.get("type")
    if msg_type == "status":
        return StatusEvent(
            kind=StatusKind(message.get("status", StatusKind.READY.value)),
            message=message.get("message", ""),
        )
    if msg_type == "output":
        return OutputEvent(
            text=message.get("message", ""),
            start=int(message.get("start", 0)),
            end=int(message.get("end", 0)),
            duration=parse_duration(message.get("duration", "until_next")),
        )
    raise ValueError(f"Unknown message type: {msg_type!r}")


_CLOSE = object()


class EventBus:
    """
    Ordered, at-most-once event channel for one session.

    publish() never blocks: events go into an unbounded SimpleQueue and a
    single dispatcher thread delivers them in production order. Events
    published while no listener is attached, or after close(), are dropped.
    """

    def __init__(self, name: str = "session"):
        self.name = name
        self._queue: "queue.SimpleQueue[Any]" = queue.SimpleQueue()
        self._listener: Optional[EventListener] = None
        self._listener_lock = threading.Lock()
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.delivered = 0
        self.dropped = 0

    def subscribe(self, listener: Optional[EventListener]) -> None:
        """Attach the listener (None detaches it)."""
        with self._listener_lock:
            self._listener = listener

    def start(self) -> None:
        """Start the dispatcher thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            daemon=True,
            name=f"EventBus-{self.name}",
        )
        self._thread.start()

    def publish(self, event: Event) -> None:
        """Queue an event for delivery."""
        if self._closed.is_set():
            return
        self._queue.put(event)

    def close(self, timeout: Optional[float] = 2.0) -> None:
        """
        Stop delivery.

        Events already queued behind the close marker are discarded. When
        called from outside the dispatcher thread, waits up to timeout
        seconds for it to exit; timeout=0 returns at once.
        """
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_CLOSE)
        if timeout != 0 and not self.join(timeout=timeout):
            logger.warning("Event dispatcher '%s' did not stop in time", self.name)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the dispatcher thread to exit.

        Returns:
            True if it is no longer running (or this is the dispatcher thread)
        """
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def _dispatch_loop(self) -> None:
        while True:
            event = self._queue.get()
            if event is _CLOSE or self._closed.is_set():
                break

            with self._listener_lock:
                listener = self._listener

            if listener is None:
                self.dropped += 1
                continue

            try:
                listener(event)
                self.delivered += 1
            except Exception as e:
                logger.error(f"Event listener error on bus '{self.name}': {e}")
