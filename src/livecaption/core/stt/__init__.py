"""
Speech-to-text adapters for the inference worker.

Key components:
- AcousticModel: the port the worker talks to (load / infer)
- FasterWhisperModel: Whisper through faster-whisper
- SilenceDetector: WebRTC VAD gate that skips silent windows

Exports resolve lazily so that importing the pipeline does not pull in the
VAD or model modules until they are used.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from livecaption.core.stt.model import (
        AcousticModel,
        FasterWhisperModel,
        create_model,
    )
    from livecaption.core.stt.vad import SilenceDetector

__all__ = [
    "AcousticModel",
    "FasterWhisperModel",
    "SilenceDetector",
    "create_model",
]


def __getattr__(name: str) -> Any:
    """Lazily resolve STT exports to avoid startup import cost."""
    if name in {"AcousticModel", "FasterWhisperModel", "create_model"}:
        from livecaption.core.stt import model

        return getattr(model, name)

    if name == "SilenceDetector":
        from livecaption.core.stt.vad import SilenceDetector

        return SilenceDetector

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
