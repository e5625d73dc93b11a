"""
Error taxonomy for the live caption pipeline.

Only DeviceError and ModelLoadError end a session. ModelInferenceError and
QueueOverflow are absorbed where they occur and at most degrade output.
"""

from typing import Any, Optional


class LiveCaptionError(Exception):
    """Base class for pipeline errors."""


class DeviceError(LiveCaptionError):
    """Microphone unavailable, disconnected or revoked."""


class ModelLoadError(LiveCaptionError):
    """The acoustic model failed to initialize."""


class ModelInferenceError(LiveCaptionError):
    """A single window failed to produce a hypothesis."""


class QueueOverflow(LiveCaptionError):
    """A completed window was dropped because the queue was full."""

    def __init__(self, dropped: Optional[Any] = None, total_dropped: int = 0):
        self.dropped = dropped
        self.total_dropped = total_dropped
        super().__init__(
            f"Inference queue full, dropped oldest window "
            f"({total_dropped} dropped this session)"
        )
