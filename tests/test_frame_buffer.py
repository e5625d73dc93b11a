"""Tests for window assembly and the bounded hand-off queue."""

from __future__ import annotations

import numpy as np
import pytest

from livecaption.core.audio_source import AudioBlock
from livecaption.core.frame_buffer import FrameBuffer, Window


def _block(samples: np.ndarray, rate: int = 1000, index: int = 0) -> AudioBlock:
    return AudioBlock(
        samples=np.asarray(samples, dtype=np.float32),
        sample_rate=rate,
        captured_at=100.0 + index,
        index=index,
    )


def _drain(buffer: FrameBuffer) -> list[Window]:
    windows = []
    while True:
        window = buffer.pop(timeout=0)
        if window is None:
            return windows
        windows.append(window)


def test_windows_reconstruct_pushed_samples_with_bounded_carryover() -> None:
    buffer = FrameBuffer(window_seconds=0.1, queue_size=100)
    rng = np.random.default_rng(7)
    stream = rng.uniform(-1, 1, 1037).astype(np.float32)

    # Irregular block sizes, as delivered by real devices
    sizes = [13, 64, 1, 200, 99, 300, 360]
    offset = 0
    for i, size in enumerate(sizes):
        buffer.push(_block(stream[offset : offset + size], index=i))
        offset += size
    assert offset == len(stream)

    windows = _drain(buffer)
    assert len(windows) == 10
    assert all(len(w) == 100 for w in windows)
    assert [w.index for w in windows] == list(range(10))
    assert [w.start_sample for w in windows] == [i * 100 for i in range(10)]

    joined = np.concatenate([w.samples for w in windows])
    np.testing.assert_array_equal(joined, stream[: len(joined)])
    assert buffer.pending_samples == 37
    assert buffer.pending_samples < buffer.window_samples


def test_window_timestamps_are_session_relative_ms() -> None:
    buffer = FrameBuffer(window_seconds=1.0)
    buffer.push(_block(np.zeros(2500), rate=16000))
    buffer.push(_block(np.zeros(30000), rate=16000, index=1))

    first, second = _drain(buffer)
    assert (first.start_ms, first.end_ms) == (0, 1000)
    assert (second.start_ms, second.end_ms) == (1000, 2000)
    assert second.duration_seconds == pytest.approx(1.0)


def test_emitted_windows_are_read_only_copies() -> None:
    buffer = FrameBuffer(window_seconds=0.01)
    source = np.ones(10, dtype=np.float32)
    buffer.push(_block(source))
    source[:] = 0.0

    window = buffer.pop(timeout=0)
    assert window is not None
    assert window.samples.flags.writeable is False
    np.testing.assert_array_equal(window.samples, np.ones(10, dtype=np.float32))


def test_overlap_repeats_tail_of_previous_window() -> None:
    buffer = FrameBuffer(window_seconds=0.01, overlap_seconds=0.004, queue_size=10)
    buffer.push(_block(np.arange(22, dtype=np.float32)))

    windows = _drain(buffer)
    assert [w.start_sample for w in windows] == [0, 6, 12]
    np.testing.assert_array_equal(windows[0].samples[6:], windows[1].samples[:4])
    np.testing.assert_array_equal(windows[2].samples, np.arange(12, 22))


def test_queue_full_drops_oldest_and_reports_overflow() -> None:
    reports = []
    buffer = FrameBuffer(
        window_seconds=0.01,
        queue_size=2,
        on_overflow=lambda dropped, total: reports.append((dropped.index, total)),
    )

    # Three windows become ready while nothing consumes: push never blocks
    buffer.push(_block(np.zeros(30)))

    assert buffer.queued == 2
    assert buffer.dropped_windows == 1
    assert reports == [(0, 1)]
    assert [w.index for w in _drain(buffer)] == [1, 2]


def test_released_window_arrays_are_reused() -> None:
    buffer = FrameBuffer(window_seconds=0.01, queue_size=2)
    seen = set()
    for i in range(20):
        buffer.push(_block(np.full(10, float(i)), index=i))
        window = buffer.pop(timeout=0)
        assert window is not None
        np.testing.assert_array_equal(window.samples, np.full(10, float(i)))
        seen.add(id(window.samples.base))
        buffer.release(window)

    assert buffer.pool_misses == 0
    assert len(seen) <= 4


def test_held_windows_are_not_overwritten() -> None:
    buffer = FrameBuffer(window_seconds=0.01, queue_size=2)
    held = []
    for i in range(8):
        buffer.push(_block(np.full(10, float(i)), index=i))
        window = buffer.pop(timeout=0)
        assert window is not None
        held.append(window)

    # Nothing released: the pool runs dry and fresh arrays are allocated
    assert buffer.pool_misses > 0
    for i, window in enumerate(held):
        np.testing.assert_array_equal(window.samples, np.full(10, float(i)))


def test_double_release_does_not_duplicate_pool_entry() -> None:
    buffer = FrameBuffer(window_seconds=0.01, queue_size=2)
    buffer.push(_block(np.ones(10)))
    first = buffer.pop(timeout=0)
    buffer.release(first)
    buffer.release(first)

    held = []
    for i in range(1, 6):
        buffer.push(_block(np.full(10, float(i)), index=i))
        held.append(buffer.pop(timeout=0))

    assert len({id(w.samples.base) for w in held}) == len(held)
    for i, window in enumerate(held, start=1):
        np.testing.assert_array_equal(window.samples, np.full(10, float(i)))


def test_rejects_block_with_different_sample_rate() -> None:
    buffer = FrameBuffer(window_seconds=1.0)
    buffer.push(_block(np.zeros(10), rate=16000))

    with pytest.raises(ValueError, match="does not match"):
        buffer.push(_block(np.zeros(10), rate=48000))


def test_close_wakes_consumer_and_rejects_new_windows() -> None:
    buffer = FrameBuffer(window_seconds=0.01)
    buffer.close()

    assert buffer.pop(timeout=None) is None
    buffer.push(_block(np.zeros(10)))
    assert buffer.queued == 0


def test_empty_block_is_ignored() -> None:
    buffer = FrameBuffer(window_seconds=0.01)
    buffer.push(_block(np.zeros(0)))
    assert buffer.pending_samples == 0
    assert buffer.sample_rate == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"window_seconds": 0},
        {"window_seconds": 1.0, "overlap_seconds": 1.0},
        {"window_seconds": 1.0, "queue_size": 0},
    ],
)
def test_invalid_parameters(kwargs) -> None:
    with pytest.raises(ValueError):
        FrameBuffer(**kwargs)
