"""
Microphone capture on the realtime callback path.

AudioSource turns the callbacks of an AudioBackend into AudioBlocks and hands
each block to a consumer (normally FrameBuffer.push). The callback path only
converts samples and calls the consumer: it never logs, waits on inference or
touches the event dispatcher's listener.

Device problems (open failure, a stream that dies or goes silent, errors
reported by the backend) are published once as StatusEvent(error, origin="audio") and the source halts.
Retrying is left to the session controller.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

import numpy as np

from livecaption.core.audio_utils import int16_to_float
from livecaption.core.errors import DeviceError
from livecaption.core.events import Event, StatusEvent, StatusKind

logger = logging.getLogger(__name__)

# Try to import PyAudio
HAS_PYAUDIO = False
if TYPE_CHECKING:
    import pyaudio
else:
    try:
        import pyaudio

        HAS_PYAUDIO = True
    except ImportError:
        pyaudio = None


# (in_data, frame_count) -> None, called on the audio thread
DataCallback = Callable[[bytes, int], None]
ErrorCallback = Callable[[str], None]


@dataclass(frozen=True)
class AudioBlock:
    """
    One callback's worth of mono float32 samples.

    samples is a read-only view of a buffer the source reuses for the next
    callback; consumers copy what they keep before on_block returns.
    """

    samples: np.ndarray
    sample_rate: int
    # time.time() when the callback delivered the block
    captured_at: float
    index: int = 0

    def __len__(self) -> int:
        return int(self.samples.shape[0])


class AudioBackend(ABC):
    """Platform audio capture facility."""

    @abstractmethod
    def open_stream(
        self,
        sample_rate: int,
        block_size: int,
        on_data: DataCallback,
        on_error: ErrorCallback,
    ) -> int:
        """
        Open (but do not start) a mono int16 input stream.

        Returns:
            The sample rate actually used by the device

        Raises:
            Exception: Any failure to open the device
        """

    @abstractmethod
    def start_stream(self) -> None:
        """Begin delivering callbacks."""

    @abstractmethod
    def close_stream(self) -> None:
        """Stop callbacks and release the device. Must be idempotent."""

    @abstractmethod
    def is_active(self) -> bool:
        """True while the stream is delivering callbacks."""


class PyAudioBackend(AudioBackend):
    """PortAudio input stream in callback mode."""

    def __init__(self, device_index: Optional[int] = None):
        self.device_index = device_index
        self._audio: Any = None
        self._stream: Any = None
        self._channels = 1
        self._on_data: Optional[DataCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self.input_overflows = 0

    def _get_device_index(self) -> Optional[int]:
        """Get the audio device index to use."""
        if self.device_index is not None:
            return self.device_index

        if self._audio is None:
            return None

        try:
            default_info = self._audio.get_default_input_device_info()
            return int(default_info["index"])
        except Exception as e:
            logger.warning(f"Could not get default input device: {e}")
            return None

    def _is_supported(self, rate: int, device_index: Optional[int], channels: int) -> bool:
        try:
            return bool(
                self._audio.is_format_supported(
                    rate,
                    input_device=device_index,
                    input_channels=channels,
                    input_format=pyaudio.paInt16,
                )
            )
        except Exception:
            return False

    def _get_supported_channels(self, device_index: Optional[int], sample_rate: int) -> int:
        """Mono if the device supports it, otherwise stereo (first channel is kept)."""
        if self._is_supported(sample_rate, device_index, 1):
            return 1
        if self._is_supported(sample_rate, device_index, 2):
            logger.info("Using stereo capture (first channel only)")
            return 2
        return 1

    def _get_supported_sample_rate(
        self, requested: int, device_index: Optional[int], channels: int
    ) -> int:
        """
        Get a supported sample rate for the device.

        Tries the requested rate, then the device default, then common rates.
        """
        if self._is_supported(requested, device_index, channels):
            return requested

        try:
            if device_index is not None:
                device_info = self._audio.get_device_info_by_index(device_index)
            else:
                device_info = self._audio.get_default_input_device_info()
            default_rate = int(device_info.get("defaultSampleRate", 44100))
            if self._is_supported(default_rate, device_index, channels):
                logger.info(f"Using device default sample rate: {default_rate} Hz")
                return default_rate
        except Exception as e:
            logger.warning(f"Could not get device info: {e}")

        for rate in (48000, 44100, 32000, 24000, 22050, 16000, 8000):
            if self._is_supported(rate, device_index, channels):
                logger.info(f"Using fallback sample rate: {rate} Hz")
                return rate

        logger.warning(f"Could not find supported sample rate, using {requested} Hz")
        return requested

    def open_stream(
        self,
        sample_rate: int,
        block_size: int,
        on_data: DataCallback,
        on_error: ErrorCallback,
    ) -> int:
        if not HAS_PYAUDIO:
            raise DeviceError("PyAudio is required for microphone capture")

        self._audio = pyaudio.PyAudio()
        try:
            device_index = self._get_device_index()
            self._channels = self._get_supported_channels(device_index, sample_rate)
            actual_rate = self._get_supported_sample_rate(
                sample_rate, device_index, self._channels
            )
            self._on_data = on_data
            self._on_error = on_error
            self._stream = self._audio.open(
                format=pyaudio.paInt16,
                channels=self._channels,
                rate=actual_rate,
                input=True,
                frames_per_buffer=block_size,
                input_device_index=device_index,
                stream_callback=self._callback,
                start=False,
            )
        except Exception:
            self.close_stream()
            raise
        return actual_rate

    def _callback(self, in_data: bytes, frame_count: int, time_info: Any, status: int):
        on_data = self._on_data
        if status & pyaudio.paInputOverflow:
            self.input_overflows += 1
        if on_data is None or not in_data:
            return (None, pyaudio.paContinue)
        try:
            if self._channels > 1:
                pcm = np.frombuffer(in_data, dtype=np.int16)[:: self._channels]
                in_data = pcm.tobytes()
            on_data(in_data, frame_count)
        except Exception as e:
            on_error = self._on_error
            if on_error is not None:
                on_error(f"Audio callback failed: {e}")
            return (None, pyaudio.paAbort)
        return (None, pyaudio.paContinue)

    def start_stream(self) -> None:
        if self._stream is not None:
            self._stream.start_stream()

    def close_stream(self) -> None:
        self._on_data = None
        self._on_error = None
        if self.input_overflows:
            logger.warning(f"Audio input overflowed {self.input_overflows} times")
            self.input_overflows = 0
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except Exception:
                logger.debug("Failed to stop/close audio stream during cleanup")
            self._stream = None

        if self._audio is not None:
            try:
                self._audio.terminate()
            except Exception:
                logger.debug("Failed to terminate PyAudio during cleanup")
            self._audio = None

    def is_active(self) -> bool:
        stream = self._stream
        if stream is None:
            return False
        try:
            return bool(stream.is_active())
        except Exception:
            return False


def list_input_devices() -> list[dict[str, Any]]:
    """List available microphone input devices."""
    if not HAS_PYAUDIO:
        return []

    devices: list[dict[str, Any]] = []
    try:
        audio = pyaudio.PyAudio()
        for i in range(audio.get_device_count()):
            try:
                info = audio.get_device_info_by_index(i)
                max_input_channels = int(info.get("maxInputChannels", 0))
                if max_input_channels > 0:
                    devices.append(
                        {
                            "index": i,
                            "name": info.get("name", f"Device {i}"),
                            "channels": max_input_channels,
                            "sample_rate": info.get("defaultSampleRate"),
                        }
                    )
            except Exception:
                continue
        audio.terminate()
    except Exception as e:
        logger.error(f"Error listing input devices: {e}")

    return devices


class AudioSource:
    """
    Microphone producer for one session.

    start() opens the device and begins emitting AudioBlocks to on_block.
    A stream that stays active but delivers nothing for stall_timeout seconds
    is treated as a device failure.
    stop() releases the device and is idempotent; once stopped, an instance
    cannot be restarted (sessions create a fresh source).
    """

    def __init__(
        self,
        backend: AudioBackend,
        on_block: Callable[[AudioBlock], None],
        publish: Callable[[Event], None],
        stall_timeout: Optional[float] = None,
    ):
        """
        Args:
            backend: Platform capture facility
            on_block: Consumer called on the audio thread for every block
            publish: Event sink for ready/error status
            stall_timeout: Seconds without a callback before the device is
                reported silent; None uses ten block periods, at least 1s
        """
        self.backend = backend
        self.on_block = on_block
        self.publish = publish
        self.stall_timeout = stall_timeout

        self.sample_rate = 0
        self.block_size = 0
        self.blocks_emitted = 0

        self._block_buffer = np.empty(0, dtype=np.float32)
        self._last_data_at = 0.0

        self._lock = threading.Lock()
        self._halt_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._halted = False
        self._opened = False
        self._monitor_thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._opened and not self._stop_event.is_set()

    def start(self, sample_rate: int, block_size: int) -> bool:
        """
        Open the device and start capturing.

        Returns:
            True if capture started. On failure a StatusEvent(error) has
            already been published.
        """
        with self._lock:
            if self._stop_event.is_set():
                logger.debug("Audio source stopped before it could start")
                return False
            if self._opened:
                logger.warning("Audio source already running")
                return False

            self.block_size = block_size
            try:
                self.sample_rate = self.backend.open_stream(
                    sample_rate, block_size, self._on_data, self.report_error
                )
            except Exception as e:
                logger.error(f"Failed to open microphone: {e}")
                self._halt(f"Microphone unavailable: {e}")
                return False

            self._opened = True
            self._block_buffer = np.empty(block_size, dtype=np.float32)
            self._last_data_at = time.monotonic()
            self.publish(
                StatusEvent(
                    StatusKind.READY,
                    f"Microphone open at {self.sample_rate} Hz",
                    origin="audio",
                )
            )

            try:
                self.backend.start_stream()
            except Exception as e:
                logger.error(f"Failed to start microphone stream: {e}")
                self._halt(f"Microphone stream failed to start: {e}")
                return False

            self._monitor_thread = threading.Thread(
                target=self._monitor_loop, daemon=True, name="AudioSourceMonitor"
            )
            self._monitor_thread.start()

        logger.info(f"Audio capture started at {self.sample_rate} Hz")
        return True

    def _on_data(self, in_data: bytes, frame_count: int) -> None:
        """Realtime callback: one AudioBlock per invocation."""
        if self._stop_event.is_set():
            return
        self._last_data_at = time.monotonic()
        pcm = np.frombuffer(in_data, dtype=np.int16)
        if self._block_buffer.shape[0] < pcm.shape[0]:
            self._block_buffer = np.empty(pcm.shape[0], dtype=np.float32)
        samples = int16_to_float(pcm, out=self._block_buffer[: pcm.shape[0]])
        samples.flags.writeable = False
        block = AudioBlock(
            samples=samples,
            sample_rate=self.sample_rate,
            captured_at=time.time(),
            index=self.blocks_emitted,
        )
        self.blocks_emitted += 1
        self.on_block(block)

    def _monitor_loop(self) -> None:
        """Detect a stream that stopped delivering (device unplugged, revoked or stalled)."""
        period = self.block_size / self.sample_rate if self.sample_rate else 0.1
        stall_timeout = self.stall_timeout
        if stall_timeout is None:
            stall_timeout = max(1.0, 10 * period)
        while not self._stop_event.wait(period):
            if not self.backend.is_active():
                self.report_error("Audio stream stopped unexpectedly")
                break
            silent_for = time.monotonic() - self._last_data_at
            if silent_for > stall_timeout:
                logger.warning(f"No audio callback for {silent_for:.1f}s")
                self.report_error("No audio from device")
                break

    def report_error(self, message: str) -> None:
        """
        Signal a device failure. Safe to call from any thread, including the
        callback thread; the device itself is released by stop().
        """
        if self._stop_event.is_set():
            return
        self._halt(message)

    def _halt(self, message: str) -> None:
        with self._halt_lock:
            if self._halted:
                return
            self._halted = True
        self._stop_event.set()
        self.publish(StatusEvent(StatusKind.ERROR, message, origin="audio"))

    def stop(self) -> None:
        """Release the device. Idempotent."""
        self._stop_event.set()
        with self._lock:
            self.backend.close_stream()
            if self._opened:
                logger.info(
                    f"Audio capture stopped after {self.blocks_emitted} blocks"
                )
            self._opened = False

        monitor = self._monitor_thread
        if (
            monitor is not None
            and monitor is not threading.current_thread()
            and monitor.is_alive()
        ):
            monitor.join(timeout=1.0)
        self._monitor_thread = None
