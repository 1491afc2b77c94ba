"""Shared helpers (logging, timing)."""

from .logging_utils import setup_logging, get_logger, Timer, ProgressTracker

__all__ = ['setup_logging', 'get_logger', 'Timer', 'ProgressTracker']
