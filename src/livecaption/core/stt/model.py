"""
Acoustic model port and the faster-whisper adapter.

The pipeline treats the model as a black box: load() once, then infer() one
window at a time from the inference worker thread. faster_whisper is imported
inside load() so that importing this module stays cheap.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Optional

import numpy as np

from livecaption.core.audio_utils import MODEL_SAMPLE_RATE, resample_audio
from livecaption.core.errors import ModelInferenceError, ModelLoadError

if TYPE_CHECKING:
    from livecaption.config import CaptionConfig
    from livecaption.core.frame_buffer import Window

FALLBACK_MODEL = "Systran/faster-whisper-small"

logger = logging.getLogger(__name__)


class AcousticModel(ABC):
    """Opaque function from a Window to zero or one text hypothesis."""

    @abstractmethod
    def load(self) -> None:
        """
        Initialize the model. Calling it again once loaded is a no-op.

        Raises:
            ModelLoadError: If the model cannot be initialized
        """

    @abstractmethod
    def infer(self, window: "Window") -> Optional[str]:
        """
        Transcribe one window.

        Returns:
            The hypothesis, or None when the window holds no speech

        Raises:
            ModelInferenceError: If this window could not be transcribed
        """

    @abstractmethod
    def is_loaded(self) -> bool:
        """Whether load() has completed successfully."""

    def unload(self) -> None:
        """Release model resources."""

    @property
    def name(self) -> str:
        return type(self).__name__


class FasterWhisperModel(AcousticModel):
    """Whisper via faster-whisper (CTranslate2)."""

    def __init__(
        self,
        model: str = FALLBACK_MODEL,
        device: str = "auto",
        compute_type: str = "default",
        language: str = "",
        beam_size: int = 1,
        initial_prompt: Optional[str] = None,
        download_root: Optional[str] = None,
        vad_filter: bool = True,
    ):
        self.model_name = model or FALLBACK_MODEL
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.beam_size = beam_size
        self.initial_prompt = initial_prompt
        self.download_root = download_root
        self.vad_filter = vad_filter
        self._model: Optional[Any] = None
        self._load_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: "CaptionConfig") -> "FasterWhisperModel":
        cfg = config.inference
        return cls(
            model=cfg.get("model") or FALLBACK_MODEL,
            device=cfg.get("device", "auto"),
            compute_type=cfg.get("compute_type", "default"),
            language=cfg.get("language") or "",
            beam_size=int(cfg.get("beam_size", 1)),
            initial_prompt=cfg.get("initial_prompt"),
            download_root=cfg.get("download_root"),
        )

    @property
    def name(self) -> str:
        return self.model_name

    def load(self) -> None:
        with self._load_lock:
            if self._model is None:
                self._load()

    def _load(self) -> None:
        logger.info(f"Loading Whisper model: {self.model_name}")
        start_time = time.time()
        try:
            import faster_whisper

            model = faster_whisper.WhisperModel(
                model_size_or_path=self.model_name,
                device=self.device,
                compute_type=self.compute_type,
                download_root=self.download_root,
            )
            self._warmup_model(model)
        except Exception as e:
            logger.exception(f"Error loading Whisper model: {e}")
            raise ModelLoadError(f"Could not load {self.model_name}: {e}") from e

        self._model = model
        logger.info(
            f"Whisper model loaded and ready in {time.time() - start_time:.1f}s"
        )

    def _warmup_model(self, model: Any) -> None:
        """Run a warmup transcription on one second of silence."""
        try:
            segments, _ = model.transcribe(
                audio=np.zeros(MODEL_SAMPLE_RATE, dtype=np.float32),
                language="en",
                beam_size=1,
            )
            _ = " ".join(seg.text for seg in segments)
            logger.debug("Model warmup complete")
        except Exception as e:
            logger.warning(f"Model warmup failed (non-critical): {e}")

    def infer(self, window: "Window") -> Optional[str]:
        if self._model is None:
            raise ModelInferenceError("Model not loaded")

        audio = resample_audio(window.samples, window.sample_rate, MODEL_SAMPLE_RATE)
        try:
            segments, _info = self._model.transcribe(
                audio,
                language=self.language or None,
                beam_size=self.beam_size,
                initial_prompt=self.initial_prompt,
                vad_filter=self.vad_filter,
                condition_on_previous_text=False,
            )
            parts: List[str] = [segment.text.strip() for segment in segments]
        except Exception as e:
            raise ModelInferenceError(f"Transcription failed: {e}") from e

        text = " ".join(part for part in parts if part).strip()
        return text or None

    def is_loaded(self) -> bool:
        return self._model is not None

    def unload(self) -> None:
        if self._model is not None:
            logger.info(f"Unloading Whisper model: {self.model_name}")
        self._model = None


def create_model(config: "CaptionConfig") -> AcousticModel:
    """
    Build the acoustic model named by inference.backend.

    Raises:
        ValueError: For an unknown backend
    """
    backend = str(config.get("inference", "backend", default="faster_whisper"))
    if backend == "faster_whisper":
        return FasterWhisperModel.from_config(config)
    raise ValueError(f"Unknown inference backend: {backend!r}")
