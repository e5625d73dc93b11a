"""
Centralized logging for LiveCaption.

Provides human-readable or structured JSON logging with service tagging
and log rotation.
"""

from livecaption.logging.setup import get_logger, setup_logging

__all__ = ["setup_logging", "get_logger"]
