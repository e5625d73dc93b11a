"""
Silence gate for inference windows.

Uses WebRTC VAD to decide whether a window holds any speech before it is sent
to the acoustic model, so silent windows never reach Whisper (which tends to
hallucinate text on silence).
"""

import logging
import warnings
from typing import TYPE_CHECKING

from livecaption.core.audio_utils import (
    MODEL_SAMPLE_RATE,
    float_to_int16,
    peak_level,
    resample_audio,
)

# Suppress pkg_resources deprecation warning from webrtcvad
with warnings.catch_warnings():
    warnings.filterwarnings("ignore", category=UserWarning, module="pkg_resources")
    import webrtcvad

if TYPE_CHECKING:
    from livecaption.core.frame_buffer import Window

logger = logging.getLogger(__name__)


class SilenceDetector:
    """
    WebRTC VAD over fixed frames.

    A window counts as speech when at least min_speech_frames frames are
    voiced. Windows whose peak is below noise_floor are rejected without
    running the VAD.
    """

    def __init__(
        self,
        sensitivity: int = 3,
        frame_ms: int = 30,
        min_speech_frames: int = 3,
        noise_floor: float = 1e-3,
    ):
        if frame_ms not in (10, 20, 30):
            raise ValueError("frame_ms must be 10, 20 or 30")
        self.sensitivity = min(max(int(sensitivity), 0), 3)
        self.frame_ms = frame_ms
        self.min_speech_frames = max(1, int(min_speech_frames))
        self.noise_floor = noise_floor

        self._vad = webrtcvad.Vad()
        self._vad.set_mode(self.sensitivity)
        logger.debug(f"WebRTC VAD initialized with sensitivity {self.sensitivity}")

    def is_speech(self, window: "Window") -> bool:
        samples = window.samples
        if peak_level(samples) < self.noise_floor:
            return False

        audio = resample_audio(samples, window.sample_rate, MODEL_SAMPLE_RATE)
        pcm = float_to_int16(audio)
        frame_len = MODEL_SAMPLE_RATE * self.frame_ms // 1000

        voiced = 0
        for offset in range(0, len(pcm) - frame_len + 1, frame_len):
            frame = pcm[offset : offset + frame_len].tobytes()
            if self._vad.is_speech(frame, MODEL_SAMPLE_RATE):
                voiced += 1
                if voiced >= self.min_speech_frames:
                    return True
        return False
