"""Core utilities for the application."""

from fiesta.app.core.config import Settings, settings
from fiesta.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
