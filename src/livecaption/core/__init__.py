"""
Core live caption pipeline.

This module contains:
- audio_source: realtime microphone capture (AudioSource, PyAudioBackend)
- frame_buffer: window assembly and the bounded hand-off queue
- inference_worker: the single model worker thread
- events: StatusEvent / OutputEvent protocol and the per-session EventBus
- session: SessionController lifecycle and displayed-segment timer
- stt: acoustic model adapters and the silence gate
"""


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    if name == "SessionController":
        from livecaption.core.session import SessionController

        return SessionController
    elif name == "SessionState":
        from livecaption.core.session import SessionState

        return SessionState
    elif name == "AudioSource":
        from livecaption.core.audio_source import AudioSource

        return AudioSource
    elif name == "FrameBuffer":
        from livecaption.core.frame_buffer import FrameBuffer

        return FrameBuffer
    elif name == "InferenceWorker":
        from livecaption.core.inference_worker import InferenceWorker

        return InferenceWorker
    elif name == "EventBus":
        from livecaption.core.events import EventBus

        return EventBus
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "SessionController",
    "SessionState",
    "AudioSource",
    "FrameBuffer",
    "InferenceWorker",
    "EventBus",
]
