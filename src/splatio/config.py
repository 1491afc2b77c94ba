# ABOUTME: Configuration dataclass for scene readers
# ABOUTME: Validates reader options and holds the format limits shared by decoders

from dataclasses import dataclass


# SPZ header limits
SPZ_MAX_POINTS = 10_000_000
SPZ_MAX_SH_DEGREE = 3

# How far into a buffer readers look for a displaced magic number
MAGIC_SCAN_WINDOW = 1024

# Blocking reads give up after this many seconds
DEFAULT_TIMEOUT_SECONDS = 300

DEFAULT_BATCH_SIZE = 65536
DEFAULT_CACHE_CAPACITY = 5
DEFAULT_BUCKET_THRESHOLD = 256

VALIDATION_MODES = ('strict', 'lenient', 'safety')


@dataclass
class ReaderConfig:
    """Options shared by every scene reader."""

    validation_mode: str = 'lenient'
    validate: bool = True  # Run sampled validation on decoded points
    batch_size: int = DEFAULT_BATCH_SIZE  # Points per did_read callback
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_workers: int = 4  # Thread pool size for texture and range decoding
    cache_capacity: int = DEFAULT_CACHE_CAPACITY
    morton_bucket_threshold: int = DEFAULT_BUCKET_THRESHOLD
    magic_scan_window: int = MAGIC_SCAN_WINDOW
    spz_max_points: int = SPZ_MAX_POINTS

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.validation_mode = str(self.validation_mode).lower()
        if self.validation_mode not in VALIDATION_MODES:
            raise ValueError(
                f"Invalid validation mode: {self.validation_mode}\n"
                f"Supported: {VALIDATION_MODES}"
            )

        if self.batch_size <= 0:
            raise ValueError("Batch size must be a positive integer")

        if self.timeout_seconds <= 0:
            raise ValueError("Timeout must be positive")

        if self.max_workers < 1:
            raise ValueError("At least one worker required")

        if self.cache_capacity < 1:
            raise ValueError("Cache capacity must be at least 1")

        if self.morton_bucket_threshold < 1:
            raise ValueError("Bucket threshold must be at least 1")

        if self.magic_scan_window < 0:
            raise ValueError("Magic scan window cannot be negative")

        if not 0 < self.spz_max_points <= SPZ_MAX_POINTS:
            raise ValueError(f"SPZ point limit must be between 1 and {SPZ_MAX_POINTS}")
