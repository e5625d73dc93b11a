"""Shared fakes for pipeline tests: scripted audio backend and model."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

import numpy as np
import pytest

from livecaption.config import set_config
from livecaption.core.audio_utils import float_to_int16
from livecaption.core.errors import DeviceError, ModelInferenceError
from livecaption.core.stt.model import AcousticModel


class FakeBackend:
    """AudioBackend whose callbacks are driven by the test."""

    def __init__(self, fail_open: bool = False):
        self.fail_open = fail_open
        self.on_data: Optional[Callable[[bytes, int], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.sample_rate = 0
        self.block_size = 0
        self.active = False
        self.started = threading.Event()
        self.close_calls = 0

    def open_stream(self, sample_rate, block_size, on_data, on_error) -> int:
        if self.fail_open:
            raise DeviceError("No such device")
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.on_data = on_data
        self.on_error = on_error
        return sample_rate

    def start_stream(self) -> None:
        self.active = True
        self.started.set()

    def close_stream(self) -> None:
        self.close_calls += 1
        self.active = False
        self.on_data = None

    def is_active(self) -> bool:
        return self.active

    def emit(self, samples: np.ndarray) -> None:
        """Deliver samples as int16 callbacks of block_size frames."""
        pcm = float_to_int16(np.asarray(samples, dtype=np.float32))
        step = self.block_size or len(pcm)
        for offset in range(0, len(pcm), step):
            on_data = self.on_data
            if on_data is None:
                return
            chunk = pcm[offset : offset + step]
            on_data(chunk.tobytes(), len(chunk))

    def revoke(self) -> None:
        """Simulate the OS taking the microphone away."""
        self.active = False


class ScriptedModel(AcousticModel):
    """Returns "hello" for windows with signal, None for silent ones."""

    def __init__(
        self,
        text: str = "hello",
        load_error: Optional[Exception] = None,
        load_gate: Optional[threading.Event] = None,
        fail_on: Optional[set] = None,
    ):
        self.text = text
        self.load_error = load_error
        self.load_gate = load_gate
        self.fail_on = fail_on or set()
        self.load_calls = 0
        self.windows = []
        self._loaded = False

    def load(self) -> None:
        self.load_calls += 1
        if self.load_gate is not None:
            self.load_gate.wait(timeout=10.0)
        if self.load_error is not None:
            raise self.load_error
        self._loaded = True

    def infer(self, window):
        self.windows.append(window)
        if window.index in self.fail_on:
            raise ModelInferenceError(f"window {window.index} failed")
        if float(np.max(np.abs(window.samples))) < 0.1:
            return None
        return self.text

    def is_loaded(self) -> bool:
        return self._loaded

    def unload(self) -> None:
        self._loaded = False


class FakeTimer:
    """threading.Timer stand-in that only fires when the test says so."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args, **self.kwargs)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll predicate until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def _reset_global_config():
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def isolated_config_dirs(tmp_path, monkeypatch):
    """Keep user config files on this machine out of CaptionConfig lookups."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    return tmp_path
