"""
Logging utilities for splatio.

Provides the package logger setup, a timing context manager, and a
progress tracker used while waiting on long-running reads.
"""

import logging
import sys
import time
from typing import Optional

ROOT_LOGGER_NAME = 'splatio'


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[37m',     # White
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package logger, e.g. ``splatio.spz``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def setup_logging(verbose: bool = False, quiet: bool = False,
                  color: bool = False) -> logging.Logger:
    """
    Configure logging for splatio.

    Args:
        verbose: Enable DEBUG level logging
        quiet: Only show WARNING and above
        color: Colorize level names (for interactive terminals)

    Returns:
        Configured logger
    """
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    formatter_cls = ColoredFormatter if color else logging.Formatter
    formatter = formatter_cls(
        '[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


class Timer:
    """Context manager for timing operations with automatic logging."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None,
                 level: int = logging.DEBUG):
        """
        Initialize timer.

        Args:
            name: Name of the operation being timed
            logger: Logger to use (defaults to the splatio logger)
            level: Level used for the start and completion messages
        """
        self.name = name
        self.logger = logger or logging.getLogger(ROOT_LOGGER_NAME)
        self.level = level
        self.start_time = None
        self.elapsed = None

    def __enter__(self):
        """Start timing."""
        self.start_time = time.perf_counter()
        self.logger.log(self.level, f"[TIMER] {self.name} started...")
        return self

    def __exit__(self, exc_type, exc, tb):
        """Stop timing and log result."""
        self.elapsed = time.perf_counter() - self.start_time
        if exc_type is None:
            self.logger.log(self.level, f"[OK] {self.name} complete in {self.elapsed:.2f}s")
        else:
            self.logger.log(self.level, f"[FAIL] {self.name} failed after {self.elapsed:.2f}s")
        return False


class ProgressTracker:
    """Track and log progress of a bounded wait with periodic updates."""

    def __init__(self,
                 name: str,
                 timeout: float,
                 update_interval: float = 30,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize progress tracker.

        Args:
            name: Name of the operation
            timeout: Maximum time allowed (seconds)
            update_interval: How often to log updates (seconds)
            logger: Logger to use
        """
        self.name = name
        self.timeout = timeout
        self.update_interval = update_interval
        self.logger = logger or logging.getLogger(ROOT_LOGGER_NAME)
        self.start_time = time.monotonic()
        self.last_update = self.start_time

    @property
    def remaining(self) -> float:
        """Seconds left before the timeout is reached."""
        return max(0.0, self.timeout - (time.monotonic() - self.start_time))

    def check_and_log(self) -> float:
        """
        Check elapsed time and log if interval passed.

        Returns:
            Elapsed time in seconds
        """
        now = time.monotonic()
        elapsed = now - self.start_time

        if now - self.last_update >= self.update_interval:
            pct = (elapsed / self.timeout * 100) if self.timeout > 0 else 0
            self.logger.info(
                f"[TIMER] {self.name}: {elapsed:.0f}s elapsed "
                f"(timeout: {self.timeout:.0f}s, {pct:.0f}%)"
            )
            self.last_update = now

        return elapsed

    def is_timeout(self) -> bool:
        """
        Check if timeout has been reached.

        Returns:
            True if timeout exceeded, False otherwise
        """
        return time.monotonic() - self.start_time >= self.timeout
