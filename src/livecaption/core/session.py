"""
Session lifecycle for live captioning.

SessionController is the control surface exposed to the host application:
start(), stop() and a single listener receiving StatusEvent | OutputEvent.

State machine:

    idle -> starting -> running -> stopping -> idle
    starting | running -> failed   (device or model load error)
    failed -> starting             (a fresh start() is allowed)

Every event reaches the controller through the session's EventBus, so the
controller's handler runs on one dispatcher thread and sees events in the
order they were produced. start() and stop() only create/signal components;
model loading happens on the worker thread and the microphone is opened on a
helper thread.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Iterable, Optional, Union

from livecaption.config import CaptionConfig, get_config
from livecaption.core.audio_source import AudioBackend, AudioSource, PyAudioBackend
from livecaption.core.errors import QueueOverflow
from livecaption.core.events import (
    Event,
    EventBus,
    EventListener,
    OutputEvent,
    StatusEvent,
    StatusKind,
)
from livecaption.core.frame_buffer import FrameBuffer, Window
from livecaption.core.inference_worker import InferenceWorker
from livecaption.core.stt.model import AcousticModel, create_model

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)

# Seconds a stopped worker may take to finish its in-flight window before it is
# reported as stuck
WORKER_JOIN_TIMEOUT = 30.0


class SessionState(Enum):
    """Lifecycle state of the session controller."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


ACTIVE_STATES = (SessionState.STARTING, SessionState.RUNNING, SessionState.STOPPING)


@dataclass
class Session:
    """Components and bookkeeping for one pipeline run."""

    bus: EventBus
    frame_buffer: FrameBuffer
    audio_source: AudioSource
    worker: InferenceWorker
    id: int = field(default_factory=lambda: next(_session_ids))
    started_at: float = field(default_factory=time.time)
    audio_ready: bool = False
    worker_ready: bool = False
    last_overflow_report: float = 0.0
    last_output_start: int = 0


class SessionController:
    """
    Orchestrates AudioSource, FrameBuffer, InferenceWorker and EventBus.

    Also owns the displayed segment: the latest OutputEvent, cleared by a
    timer for explicit durations or by the next OutputEvent / stop() for
    UNTIL_NEXT.
    """

    def __init__(
        self,
        config: Optional[CaptionConfig] = None,
        listener: Optional[EventListener] = None,
        model_factory: Optional[Callable[[], AcousticModel]] = None,
        backend_factory: Optional[Callable[[], AudioBackend]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
        on_display_cleared: Optional[Callable[[OutputEvent], None]] = None,
    ):
        """
        Args:
            config: Configuration (global config if None)
            listener: Initial event listener
            model_factory: Builds the acoustic model (inference.backend if None)
            backend_factory: Builds the audio backend (PyAudio if None)
            timer_factory: threading.Timer-compatible factory for auto-clear
            on_display_cleared: Called when a segment's duration expires
        """
        self.config = config or get_config()
        self._listener = listener
        self._model_factory = model_factory or partial(create_model, self.config)
        self._backend_factory = backend_factory or partial(
            PyAudioBackend, self.config.get("audio", "device_index")
        )
        self._timer_factory = timer_factory
        self.on_display_cleared = on_display_cleared

        self._keep_model_loaded = bool(
            self.config.get("inference", "keep_model_loaded", default=True)
        )
        self._model: Optional[AcousticModel] = None
        # Serializes load/infer on the cached model across overlapping sessions
        self._model_lock = threading.Lock()

        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._displayed: Optional[OutputEvent] = None
        self._clear_timer: Optional[Any] = None
        self.last_error: Optional[StatusEvent] = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def displayed_segment(self) -> Optional[OutputEvent]:
        """The segment a listener should currently be showing."""
        return self._displayed

    def set_listener(self, listener: Optional[EventListener]) -> None:
        """Register the single event listener (None detaches it)."""
        with self._lock:
            self._listener = listener

    def wait_for_state(
        self,
        states: Union[SessionState, Iterable[SessionState]],
        timeout: Optional[float] = None,
    ) -> bool:
        """Block until the controller is in one of the given states."""
        wanted = {states} if isinstance(states, SessionState) else set(states)
        with self._state_changed:
            return self._state_changed.wait_for(
                lambda: self._state in wanted, timeout=timeout
            )

    def start(self) -> bool:
        """
        Start a new session.

        Returns:
            True if a session was started, False if one is already active
        """
        with self._lock:
            if self._state in ACTIVE_STATES:
                logger.warning(f"Session already {self._state.value}, ignoring start()")
                return False
            session = self._create_session()
            self._session = session
            self._displayed = None
            self.last_error = None
            self._set_state(SessionState.STARTING)

        logger.info(f"Starting session {session.id}")
        session.bus.subscribe(partial(self._handle_event, session))
        session.bus.start()
        session.worker.start()
        threading.Thread(
            target=self._open_audio,
            args=(session,),
            daemon=True,
            name=f"AudioOpen-{session.id}",
        ).start()
        return True

    def stop(self) -> None:
        """
        Stop the active session and return to idle.

        Only signals shutdown: the microphone is released immediately and the
        worker finishes its in-flight window on its own thread.
        """
        with self._lock:
            session = self._session
            if session is None or self._state not in (
                SessionState.STARTING,
                SessionState.RUNNING,
            ):
                return
            logger.info(f"Stopping session {session.id} ({self._state.value})")
            self._set_state(SessionState.STOPPING)
            self._session = None
            self._reset_display()

        self._teardown(session)

        with self._lock:
            if self._state is SessionState.STOPPING:
                self._set_state(SessionState.IDLE)
        logger.info(f"Session {session.id} stopped")

    # ------------------------------------------------------------------
    # Session construction and teardown
    # ------------------------------------------------------------------

    def _get_model(self) -> AcousticModel:
        if not self._keep_model_loaded:
            return self._model_factory()
        if self._model is None:
            self._model = self._model_factory()
        return self._model

    def _create_session(self) -> Session:
        window_cfg = self.config.window
        skip_silence = bool(self.config.get("inference", "skip_silence", default=True))

        silence_detector = None
        if skip_silence:
            from livecaption.core.stt.vad import SilenceDetector

            silence_detector = SilenceDetector(
                sensitivity=int(self.config.get("inference", "vad_sensitivity", default=3))
            )

        bus = EventBus()
        frame_buffer = FrameBuffer(
            window_seconds=float(window_cfg.get("seconds", 3.0)),
            overlap_seconds=float(window_cfg.get("overlap_seconds", 0.0)),
            queue_size=int(window_cfg.get("queue_size", 4)),
        )
        audio_source = AudioSource(
            backend=self._backend_factory(),
            on_block=frame_buffer.push,
            publish=bus.publish,
            stall_timeout=self._stall_timeout(),
        )
        worker = InferenceWorker(
            model=self._get_model(),
            frame_buffer=frame_buffer,
            publish=bus.publish,
            output_duration=self.config.output_duration,
            silence_detector=silence_detector,
            unload_on_exit=not self._keep_model_loaded,
            model_lock=self._model_lock if self._keep_model_loaded else None,
        )
        session = Session(
            bus=bus,
            frame_buffer=frame_buffer,
            audio_source=audio_source,
            worker=worker,
        )
        bus.name = f"session-{session.id}"
        if window_cfg.get("report_overflow", True):
            frame_buffer.on_overflow = partial(self._on_overflow, session)
        return session

    def _stall_timeout(self) -> Optional[float]:
        value = self.config.get("audio", "stall_timeout")
        return None if value is None else float(value)

    def _open_audio(self, session: Session) -> None:
        audio_cfg = self.config.audio
        session.audio_source.start(
            int(audio_cfg.get("sample_rate", 16000)),
            int(audio_cfg.get("block_size", 1024)),
        )

    def _teardown(self, session: Session) -> None:
        """Signal both halves to stop and close the channel without waiting."""
        session.audio_source.stop()
        session.worker.stop()
        session.frame_buffer.close()
        session.bus.close(timeout=0)
        threading.Thread(
            target=self._reap,
            args=(session,),
            daemon=True,
            name=f"SessionReaper-{session.id}",
        ).start()

    def _reap(self, session: Session) -> None:
        """Wait for a torn-down session's threads and report any that hang."""
        if not session.worker.join(timeout=WORKER_JOIN_TIMEOUT):
            logger.warning(
                f"Inference worker for session {session.id} did not stop within "
                f"{WORKER_JOIN_TIMEOUT:.0f}s"
            )
        if not session.bus.join(timeout=2.0):
            logger.warning(f"Event dispatcher for session {session.id} did not stop")
        logger.debug(f"Session {session.id} threads finished")

    def _on_overflow(self, session: Session, dropped: Window, total: int) -> None:
        """Producer-thread hook: report dropped windows, rate limited."""
        now = time.monotonic()
        interval = float(
            self.config.get("window", "overflow_report_interval", default=5.0)
        )
        if session.last_overflow_report and now - session.last_overflow_report < interval:
            return
        session.last_overflow_report = now
        session.bus.publish(
            StatusEvent(
                StatusKind.DEGRADED,
                str(QueueOverflow(dropped, total)),
                origin="audio",
            )
        )

    # ------------------------------------------------------------------
    # Event handling (EventBus dispatcher thread)
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        self._state_changed.notify_all()

    def _handle_event(self, session: Session, event: Event) -> None:
        with self._lock:
            if session is not self._session:
                return
            if isinstance(event, StatusEvent):
                forward, fatal = self._on_status(session, event)
            elif isinstance(event, OutputEvent):
                forward, fatal = self._on_output(session, event), False
            else:
                raise TypeError(f"Unknown event type: {type(event).__name__}")
            listener = self._listener

        if fatal:
            self._teardown(session)

        if forward is not None and listener is not None:
            try:
                listener(forward)
            except Exception as e:
                logger.error(f"Session listener error: {e}")

    def _on_status(self, session: Session, event: StatusEvent) -> tuple[Optional[Event], bool]:
        kind = event.kind

        if kind is StatusKind.ERROR:
            if self._state not in (SessionState.STARTING, SessionState.RUNNING):
                return None, False
            logger.error(f"Session {session.id} failed ({event.origin}): {event.message}")
            self.last_error = event
            self._session = None
            self._reset_display()
            self._set_state(SessionState.FAILED)
            return event, True

        if kind is StatusKind.READY:
            if event.origin == "audio":
                session.audio_ready = True
            elif event.origin == "inference":
                session.worker_ready = True
            logger.info(f"Session {session.id}: {event.message}")
            if (
                self._state is SessionState.STARTING
                and session.audio_ready
                and session.worker_ready
            ):
                self._set_state(SessionState.RUNNING)
                return StatusEvent(StatusKind.READY, "Listening", origin="session"), False
            return None, False

        if kind is StatusKind.DEGRADED:
            logger.warning(f"Session {session.id} degraded: {event.message}")

        return event, False

    def _on_output(self, session: Session, event: OutputEvent) -> Optional[Event]:
        if self._state is not SessionState.RUNNING:
            logger.debug(f"Dropping output while {self._state.value}: {event.text!r}")
            return None
        if event.start < session.last_output_start:
            logger.warning(
                f"Dropping out-of-order output (start {event.start} < "
                f"{session.last_output_start})"
            )
            return None
        session.last_output_start = event.start

        self._cancel_clear_timer()
        self._displayed = event
        if not event.until_next:
            timer = self._timer_factory(
                event.duration / 1000.0, self._expire_display, args=(event,)
            )
            timer.daemon = True
            self._clear_timer = timer
            timer.start()
        return event

    # ------------------------------------------------------------------
    # Displayed segment
    # ------------------------------------------------------------------

    def _cancel_clear_timer(self) -> None:
        if self._clear_timer is not None:
            self._clear_timer.cancel()
            self._clear_timer = None

    def _reset_display(self) -> None:
        self._cancel_clear_timer()
        self._displayed = None

    def _expire_display(self, event: OutputEvent) -> None:
        with self._lock:
            if self._displayed is not event:
                return
            self._displayed = None
            self._clear_timer = None
        logger.debug(f"Cleared displayed segment after {event.duration} ms")
        if self.on_display_cleared is not None:
            try:
                self.on_display_cleared(event)
            except Exception as e:
                logger.error(f"Display clear callback error: {e}")
