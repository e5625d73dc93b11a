"""Tests for the acoustic model adapter, the silence gate and lazy STT imports."""

from __future__ import annotations

import importlib
import sys
import types
from types import SimpleNamespace

import numpy as np
import pytest

from livecaption.config import CaptionConfig
from livecaption.core.errors import ModelInferenceError, ModelLoadError
from livecaption.core.frame_buffer import Window


def _window(samples: np.ndarray, rate: int = 16000) -> Window:
    return Window(
        samples=samples.astype(np.float32),
        sample_rate=rate,
        start_sample=0,
        captured_at=0.0,
    )


class _FakeWhisperModel:
    """Stands in for faster_whisper.WhisperModel."""

    instances: list["_FakeWhisperModel"] = []
    segments: list[str] = [" hello ", "world"]
    fail_transcribe = False

    def __init__(self, model_size_or_path, device, compute_type, download_root=None):
        self.model_size_or_path = model_size_or_path
        self.device = device
        self.compute_type = compute_type
        self.calls: list[dict] = []
        _FakeWhisperModel.instances.append(self)

    def transcribe(self, audio, **kwargs):
        self.calls.append({"audio": audio, **kwargs})
        if _FakeWhisperModel.fail_transcribe and len(self.calls) > 1:
            raise RuntimeError("decoder crashed")
        return iter(SimpleNamespace(text=t) for t in self.segments), None


@pytest.fixture
def fake_faster_whisper(monkeypatch):
    module = types.ModuleType("faster_whisper")
    module.WhisperModel = _FakeWhisperModel
    _FakeWhisperModel.instances = []
    _FakeWhisperModel.segments = [" hello ", "world"]
    _FakeWhisperModel.fail_transcribe = False
    monkeypatch.setitem(sys.modules, "faster_whisper", module)
    return _FakeWhisperModel


def _clear_stt_modules() -> None:
    """Clear STT modules from sys.modules for deterministic import checks."""
    sys.modules.pop("livecaption.core.stt.model", None)
    sys.modules.pop("livecaption.core.stt.vad", None)
    sys.modules.pop("livecaption.core.stt", None)


def test_importing_stt_package_does_not_load_adapters() -> None:
    _clear_stt_modules()

    importlib.import_module("livecaption.core.stt")

    assert "livecaption.core.stt.model" not in sys.modules
    assert "livecaption.core.stt.vad" not in sys.modules


def test_lazy_stt_exports_resolve() -> None:
    _clear_stt_modules()
    from livecaption.core.stt import SilenceDetector, create_model
    from livecaption.core.stt.model import create_model as real_create_model
    from livecaption.core.stt.vad import SilenceDetector as RealSilenceDetector

    assert create_model is real_create_model
    assert SilenceDetector is RealSilenceDetector


def test_create_model_rejects_unknown_backend(isolated_config_dirs) -> None:
    from livecaption.core.stt.model import create_model

    cfg = CaptionConfig(overrides={"inference": {"backend": "carrier_pigeon"}})
    with pytest.raises(ValueError, match="Unknown inference backend"):
        create_model(cfg)


def test_create_model_reads_inference_section(isolated_config_dirs) -> None:
    from livecaption.core.stt.model import FasterWhisperModel, create_model

    cfg = CaptionConfig(
        overrides={"inference": {"model": "tiny.en", "language": "en", "beam_size": 3}}
    )
    model = create_model(cfg)
    assert isinstance(model, FasterWhisperModel)
    assert model.name == "tiny.en"
    assert model.language == "en"
    assert model.beam_size == 3
    assert not model.is_loaded()


def test_load_wraps_failures_in_model_load_error(monkeypatch) -> None:
    from livecaption.core.stt.model import FasterWhisperModel

    module = types.ModuleType("faster_whisper")

    def _broken(**kwargs):
        raise OSError("model files not found")

    module.WhisperModel = _broken
    monkeypatch.setitem(sys.modules, "faster_whisper", module)

    model = FasterWhisperModel("tiny")
    with pytest.raises(ModelLoadError, match="model files not found"):
        model.load()
    assert not model.is_loaded()


def test_load_is_idempotent_and_warms_up(fake_faster_whisper) -> None:
    from livecaption.core.stt.model import FasterWhisperModel

    model = FasterWhisperModel("tiny", device="cpu", compute_type="int8")
    model.load()
    model.load()

    assert len(fake_faster_whisper.instances) == 1
    whisper = fake_faster_whisper.instances[0]
    assert whisper.device == "cpu"
    assert len(whisper.calls) == 1  # warmup
    assert model.is_loaded()

    model.unload()
    assert not model.is_loaded()


def test_infer_resamples_and_joins_segments(fake_faster_whisper) -> None:
    from livecaption.core.stt.model import FasterWhisperModel

    model = FasterWhisperModel("tiny", language="en")
    model.load()

    text = model.infer(_window(np.zeros(48000), rate=48000))
    assert text == "hello world"

    call = fake_faster_whisper.instances[0].calls[-1]
    assert len(call["audio"]) == 16000
    assert call["language"] == "en"
    assert call["condition_on_previous_text"] is False


def test_infer_returns_none_for_empty_hypothesis(fake_faster_whisper) -> None:
    from livecaption.core.stt.model import FasterWhisperModel

    fake_faster_whisper.segments = ["  ", ""]
    model = FasterWhisperModel("tiny")
    model.load()
    assert model.infer(_window(np.zeros(16000))) is None


def test_infer_errors_are_model_inference_errors(fake_faster_whisper) -> None:
    from livecaption.core.stt.model import FasterWhisperModel

    model = FasterWhisperModel("tiny")
    with pytest.raises(ModelInferenceError, match="not loaded"):
        model.infer(_window(np.zeros(16000)))

    fake_faster_whisper.fail_transcribe = True
    model.load()
    with pytest.raises(ModelInferenceError, match="decoder crashed"):
        model.infer(_window(np.zeros(16000)))


def test_silence_detector_rejects_silence_and_noise_floor() -> None:
    from livecaption.core.stt.vad import SilenceDetector

    detector = SilenceDetector(sensitivity=3)
    assert detector.is_speech(_window(np.zeros(16000))) is False

    rng = np.random.default_rng(0)
    hiss = rng.uniform(-5e-4, 5e-4, 48000)
    assert detector.is_speech(_window(hiss, rate=48000)) is False


def test_silence_detector_counts_voiced_frames(monkeypatch) -> None:
    from livecaption.core.stt.vad import SilenceDetector

    detector = SilenceDetector(min_speech_frames=3)
    verdicts = iter([False, True, True, False, True, True, True])
    monkeypatch.setattr(detector._vad, "is_speech", lambda frame, rate: next(verdicts))

    assert detector.is_speech(_window(np.full(16000, 0.2))) is True


def test_silence_detector_validates_frame_length() -> None:
    from livecaption.core.stt.vad import SilenceDetector

    with pytest.raises(ValueError, match="frame_ms"):
        SilenceDetector(frame_ms=25)
    assert SilenceDetector(sensitivity=9).sensitivity == 3
