"""
Inference worker.

Owns the acoustic model on its own thread. Windows are taken from the
FrameBuffer queue in FIFO order and transcribed one at a time; results and
lifecycle updates are published to the session's EventBus.
"""

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from livecaption.core.errors import ModelInferenceError, ModelLoadError
from livecaption.core.events import (
    UNTIL_NEXT,
    Duration,
    Event,
    OutputEvent,
    StatusEvent,
    StatusKind,
)
from livecaption.core.frame_buffer import FrameBuffer, Window

if TYPE_CHECKING:
    from livecaption.core.stt.model import AcousticModel
    from livecaption.core.stt.vad import SilenceDetector

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """State of the inference worker."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class InferenceWorker:
    """
    Single logical inference worker.

    Model load failure is terminal: one StatusEvent(error) is published and
    no window is processed afterwards. A failure inside infer() only skips
    that window.
    """

    def __init__(
        self,
        model: "AcousticModel",
        frame_buffer: FrameBuffer,
        publish: Callable[[Event], None],
        output_duration: Duration = UNTIL_NEXT,
        silence_detector: Optional["SilenceDetector"] = None,
        unload_on_exit: bool = False,
        poll_interval: float = 0.1,
        model_lock: Optional[threading.Lock] = None,
    ):
        """
        Args:
            model: Acoustic model; loaded on the worker thread
            frame_buffer: Source of windows
            publish: Event sink (the session's EventBus.publish)
            output_duration: Duration attached to every OutputEvent
            silence_detector: Optional gate; windows it rejects are skipped
            unload_on_exit: Unload the model when the worker thread ends
            poll_interval: Seconds between stop checks while idle
            model_lock: Held around load/infer; pass a shared lock when the
                model outlives the session and a stopped worker may still be
                finishing a window
        """
        self.model = model
        self.frame_buffer = frame_buffer
        self.publish = publish
        self.output_duration = output_duration
        self.silence_detector = silence_detector
        self.unload_on_exit = unload_on_exit
        self.poll_interval = poll_interval
        self._model_lock = model_lock or threading.Lock()

        self._state = WorkerState.IDLE
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_start = 0

        self.windows_processed = 0
        self.windows_silent = 0
        self.windows_failed = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._state in (
            WorkerState.IDLE,
            WorkerState.LOADING,
            WorkerState.READY,
        ) and not self._stop_event.is_set()

    def start(self) -> None:
        """Start the worker thread (model load happens there)."""
        if self._thread is not None:
            logger.warning("Inference worker already started")
            return
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="InferenceWorker"
        )
        self._thread.start()

    def submit(self, window: Window) -> None:
        """Queue a window for inference (fire-and-forget)."""
        if not self.accepting:
            logger.debug("Inference worker not accepting windows, dropping one")
            return
        self.frame_buffer.submit(window)

    def stop(self) -> None:
        """Finish the in-flight window, then stop. Does not wait."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the worker thread to exit.

        Returns:
            True if the thread is no longer running
        """
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        try:
            if not self._load_model():
                return

            while not self._stop_event.is_set():
                window = self.frame_buffer.pop(timeout=self.poll_interval)
                if window is None:
                    if self.frame_buffer.is_closed:
                        break
                    continue
                try:
                    self._process(window)
                finally:
                    self.frame_buffer.release(window)
        finally:
            if self._state is not WorkerState.FAILED:
                self._state = WorkerState.STOPPED
            if self.unload_on_exit:
                with self._model_lock:
                    self.model.unload()
            logger.info(
                f"Inference worker stopped ({self.windows_processed} processed, "
                f"{self.windows_silent} silent, {self.windows_failed} failed)"
            )

    def _load_model(self) -> bool:
        self._state = WorkerState.LOADING
        self.publish(
            StatusEvent(
                StatusKind.LOADING,
                f"Loading model {self.model.name}",
                origin="inference",
            )
        )

        try:
            with self._model_lock:
                self.model.load()
        except Exception as e:
            error = e if isinstance(e, ModelLoadError) else ModelLoadError(str(e))
            logger.error(f"Model load failed: {error}")
            self._state = WorkerState.FAILED
            self.publish(
                StatusEvent(
                    StatusKind.ERROR,
                    f"Model failed to load: {error}",
                    origin="inference",
                )
            )
            return False

        if self._stop_event.is_set():
            return False

        self._state = WorkerState.READY
        self.publish(
            StatusEvent(StatusKind.READY, "Model ready", origin="inference")
        )
        return True

    def _process(self, window: Window) -> None:
        if self.silence_detector is not None and not self.silence_detector.is_speech(
            window
        ):
            self.windows_silent += 1
            return

        try:
            with self._model_lock:
                text = self.model.infer(window)
        except ModelInferenceError as e:
            self.windows_failed += 1
            logger.warning(f"Skipping window {window.index}: {e}")
            return
        except Exception as e:
            self.windows_failed += 1
            logger.exception(f"Unexpected inference error on window {window.index}: {e}")
            return

        self.windows_processed += 1
        if text is None or not text.strip():
            self.windows_silent += 1
            return

        start = max(window.start_ms, self._last_start)
        self._last_start = start
        self.publish(
            OutputEvent(
                text=text.strip(),
                start=start,
                end=max(window.end_ms, start),
                duration=self.output_duration,
            )
        )
