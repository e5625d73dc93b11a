"""
Sample conversion helpers.

Only int16_to_float with a preallocated out array runs on the realtime
callback path.
"""

from typing import Optional

import numpy as np
from scipy.signal import resample

# Mathematical constant for 16-bit audio normalization
INT16_MAX_ABS_VALUE = 32768.0
_INT16_SCALE = np.float32(1.0 / INT16_MAX_ABS_VALUE)

# Target sample rate for Whisper/WebRTC VAD (technical requirement, not configurable)
MODEL_SAMPLE_RATE = 16000


def resample_audio(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """
    Resample mono float32 audio.

    Returns the input unchanged when the rates already match.
    """
    if from_rate == to_rate or samples.size == 0:
        return samples
    num_samples = int(round(len(samples) * to_rate / from_rate))
    return resample(samples, num_samples).astype(np.float32, copy=False)


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """Convert float audio in [-1, 1] to int16 PCM."""
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * (INT16_MAX_ABS_VALUE - 1)).astype(np.int16)


def int16_to_float(samples: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
    """Convert int16 PCM to float32 normalized to [-1, 1], into out if given."""
    if out is None:
        return samples.astype(np.float32) / INT16_MAX_ABS_VALUE
    return np.multiply(samples, _INT16_SCALE, out=out, dtype=np.float32)


def peak_level(samples: np.ndarray) -> float:
    """Peak absolute amplitude of float audio (0.0 for empty input)."""
    if samples.size == 0:
        return 0.0
    return float(np.max(np.abs(samples)))
