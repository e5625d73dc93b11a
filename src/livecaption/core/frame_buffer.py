"""
Window assembly and the bounded hand-off queue.

FrameBuffer.push() runs on the audio callback thread. It copies each block
into a preallocated window array, emits the window when it is full and keeps
the remainder as carryover. Completed windows go into a bounded queue; when
the queue is full the oldest window is dropped so the producer never waits
for the consumer.

Window arrays come from a pool sized for a full queue plus the window in
flight and the one being assembled. The consumer hands each window back with
release() once it is done with the samples; the callback thread only
allocates when every pooled array is still held.
"""

import collections
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Deque, Optional

import numpy as np

from livecaption.core.audio_source import AudioBlock

logger = logging.getLogger(__name__)

# (dropped window, total dropped this session) -> None, called on the producer thread
OverflowCallback = Callable[["Window", int], None]


@dataclass(frozen=True)
class Window:
    """A fixed-length span of samples submitted to the model as one unit."""

    samples: np.ndarray
    sample_rate: int
    # Offset of the first sample in the session's sample stream
    start_sample: int
    # Wall-clock time the first sample was captured
    captured_at: float
    index: int = 0

    def __len__(self) -> int:
        return int(self.samples.shape[0])

    @property
    def end_sample(self) -> int:
        return self.start_sample + len(self)

    @property
    def start_ms(self) -> int:
        return self.start_sample * 1000 // self.sample_rate

    @property
    def end_ms(self) -> int:
        return self.end_sample * 1000 // self.sample_rate

    @property
    def duration_seconds(self) -> float:
        return len(self) / self.sample_rate


class FrameBuffer:
    """
    Assembles AudioBlocks into Windows and queues them for the worker.

    Window and overlap lengths are given in seconds and converted to samples
    on the first push, once the capture rate is known.
    """

    def __init__(
        self,
        window_seconds: float = 3.0,
        overlap_seconds: float = 0.0,
        queue_size: int = 4,
        on_overflow: Optional[OverflowCallback] = None,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if not 0.0 <= overlap_seconds < window_seconds:
            raise ValueError("overlap_seconds must be in [0, window_seconds)")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")

        self.window_seconds = float(window_seconds)
        self.overlap_seconds = float(overlap_seconds)
        self.queue_size = int(queue_size)
        self.on_overflow = on_overflow

        self.sample_rate = 0
        self.window_samples = 0
        self.overlap_samples = 0

        # Assembly state (producer thread only)
        self._assembly: Optional[np.ndarray] = None
        self._fill = 0
        self._assembly_start = 0
        self._assembly_captured_at = 0.0
        self._windows_emitted = 0

        # Hand-off queue (shared with the consumer)
        self._queue: Deque[Window] = collections.deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped_windows = 0

        # Window arrays (allocated once the rate is known)
        self._pool: list[np.ndarray] = []
        self._pool_ids: set[int] = set()
        self._free: Deque[np.ndarray] = collections.deque()
        # Pool arrays currently referenced by an emitted window, by id
        self._lent: set[int] = set()
        self.pool_misses = 0

    def _configure(self, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self.window_samples = max(1, int(round(self.window_seconds * sample_rate)))
        self.overlap_samples = int(round(self.overlap_seconds * sample_rate))
        if self.overlap_samples >= self.window_samples:
            self.overlap_samples = self.window_samples - 1
        self._pool = [
            np.empty(self.window_samples, dtype=np.float32)
            for _ in range(self.queue_size + 2)
        ]
        self._pool_ids = {id(array) for array in self._pool}
        self._free = collections.deque(self._pool)
        self._lent = set()
        self._assembly = self._acquire()
        self._fill = 0
        self._assembly_start = 0

    def _acquire(self) -> np.ndarray:
        with self._cond:
            if self._free:
                return self._free.popleft()
            self.pool_misses += 1
        return np.empty(self.window_samples, dtype=np.float32)

    def release(self, window: "Window") -> None:
        """Return a window's array to the pool. Its samples must not be used afterwards."""
        array = window.samples.base
        if array is None:
            return
        with self._cond:
            if id(array) in self._lent:
                self._lent.discard(id(array))
                self._free.append(array)

    @property
    def pending_samples(self) -> int:
        """Samples assembled but not yet emitted (carryover)."""
        return self._fill

    @property
    def queued(self) -> int:
        with self._cond:
            return len(self._queue)

    def push(self, block: AudioBlock) -> None:
        """
        Append a block. Emits zero or more complete windows.

        Raises:
            ValueError: If the block's sample rate differs from earlier blocks
        """
        samples = block.samples
        total = int(samples.shape[0])
        if total == 0:
            return

        if self._assembly is None:
            self._configure(block.sample_rate)
        elif block.sample_rate != self.sample_rate:
            raise ValueError(
                f"Block sample rate {block.sample_rate} Hz does not match "
                f"buffer rate {self.sample_rate} Hz"
            )

        offset = 0
        while offset < total:
            if self._fill == 0:
                self._assembly_captured_at = (
                    block.captured_at + offset / self.sample_rate
                )
            take = min(total - offset, self.window_samples - self._fill)
            self._assembly[self._fill : self._fill + take] = samples[
                offset : offset + take
            ]
            self._fill += take
            offset += take

            if self._fill == self.window_samples:
                self._emit()

    def _emit(self) -> None:
        array = self._assembly
        if id(array) in self._pool_ids:
            with self._cond:
                self._lent.add(id(array))
        samples = array.view()
        samples.flags.writeable = False
        window = Window(
            samples=samples,
            sample_rate=self.sample_rate,
            start_sample=self._assembly_start,
            captured_at=self._assembly_captured_at,
            index=self._windows_emitted,
        )
        self._windows_emitted += 1

        hop = self.window_samples - self.overlap_samples
        self._assembly = self._acquire()
        self._fill = 0
        if self.overlap_samples:
            self._assembly[: self.overlap_samples] = array[hop:]
            self._fill = self.overlap_samples
            self._assembly_captured_at = window.captured_at + hop / self.sample_rate
        self._assembly_start += hop

        self._enqueue(window)

    def submit(self, window: Window) -> None:
        """Queue an already assembled window."""
        self._enqueue(window)

    def _enqueue(self, window: Window) -> None:
        dropped: Optional[Window] = None
        with self._cond:
            if self._closed:
                return
            if len(self._queue) >= self.queue_size:
                dropped = self._queue.popleft()
                self.dropped_windows += 1
            self._queue.append(window)
            self._cond.notify()
            total_dropped = self.dropped_windows

        if dropped is not None:
            if self.on_overflow is not None:
                self.on_overflow(dropped, total_dropped)
            self.release(dropped)

    def pop(self, timeout: Optional[float] = None) -> Optional[Window]:
        """
        Take the oldest queued window.

        Args:
            timeout: Seconds to wait for a window. None waits until one
                arrives or the buffer is closed; 0 does not wait.

        Returns:
            The window, or None on timeout or when closed and drained
        """
        with self._cond:
            if not self._queue and not self._closed and timeout != 0:
                self._cond.wait_for(
                    lambda: self._queue or self._closed, timeout=timeout
                )
            if self._queue:
                return self._queue.popleft()
            return None

    def close(self) -> None:
        """Reject further windows and wake any waiting consumer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def is_closed(self) -> bool:
        return self._closed
