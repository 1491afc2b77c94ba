# ABOUTME: Scene reader contract shared by all formats (pull and push surfaces)
# ABOUTME: Includes the point collector delegate and the bounded blocking adapter

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from .config import ReaderConfig
from .errors import DecodeTimeoutError, ResourceMissingError
from .splat_cloud import SplatCloud
from .splat_point import SplatPoint
from .utils.logging_utils import get_logger, ProgressTracker, Timer
from .validation import validate_points

logger = get_logger('reader')


class SceneReaderDelegate:
    """
    Receives points from a push-based read.

    A read calls ``did_start_reading`` once, ``did_read`` zero or more times,
    then exactly one of ``did_finish_reading`` or ``did_fail_reading``.
    """

    def did_start_reading(self, point_count: Optional[int]) -> None:
        pass

    def did_read(self, points: List[SplatPoint]) -> None:
        pass

    def did_finish_reading(self) -> None:
        pass

    def did_fail_reading(self, error: Exception) -> None:
        pass


class PointCollector(SceneReaderDelegate):
    """Delegate that accumulates every point and signals on the terminal callback."""

    def __init__(self):
        self.points: List[SplatPoint] = []
        self.expected_count: Optional[int] = None
        self.error: Optional[Exception] = None
        self.finished = False
        self._done = threading.Event()

    def did_start_reading(self, point_count: Optional[int]) -> None:
        self.expected_count = point_count

    def did_read(self, points: List[SplatPoint]) -> None:
        self.points.extend(points)

    def did_finish_reading(self) -> None:
        self.finished = True
        self._done.set()

    def did_fail_reading(self, error: Exception) -> None:
        self.error = error
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a terminal callback arrives. Returns False on timeout."""
        return self._done.wait(timeout)


class SceneReader(ABC):
    """
    Base class for format readers.

    Subclasses implement ``decode_cloud``; streaming formats may override
    ``read`` to deliver batches as they are parsed.
    """

    format_name = 'splat'

    def __init__(self, source, config: Optional[ReaderConfig] = None, cache=None):
        """
        Args:
            source: Path to the scene file
            config: Reader options (defaults to ReaderConfig())
            cache: Optional DecodeCache for formats with expensive side files
        """
        self.source = Path(source)
        self.config = config or ReaderConfig()
        self.cache = cache

    @classmethod
    def open(cls, source, config: Optional[ReaderConfig] = None, cache=None) -> 'SceneReader':
        """Create a reader after checking that the resource exists."""
        path = Path(source)
        if not path.exists():
            raise ResourceMissingError(path)
        return cls(path, config=config, cache=cache)

    @abstractmethod
    def decode_cloud(self) -> SplatCloud:
        """Decode the whole scene into a columnar cloud."""

    def read_cloud(self) -> SplatCloud:
        with Timer(f"Decoding {self.format_name} {self.source.name}", logger):
            return self.decode_cloud()

    def read_validated_cloud(self) -> SplatCloud:
        """
        Decode the scene and validate it batch by batch, as a push read would.

        Raises:
            CorruptedDataError: if a batch's sampled error rate is too high
        """
        cloud = self.read_cloud()
        if self.config.validate:
            for batch in cloud.iter_batches(self.config.batch_size):
                self._validate(batch)
        return cloud

    def read(self, delegate: SceneReaderDelegate) -> None:
        """Push-based read. Errors are reported through ``did_fail_reading``."""
        try:
            cloud = self.read_cloud()
            delegate.did_start_reading(cloud.count)
            self._deliver(cloud, delegate)
        except Exception as e:
            logger.error(f"Failed to read {self.source}: {e}")
            delegate.did_fail_reading(e)
            return
        delegate.did_finish_reading()

    def read_all(self) -> List[SplatPoint]:
        """Pull every point, raising the reader's error on failure."""
        collector = PointCollector()
        self.read(collector)
        if collector.error is not None:
            raise collector.error
        return collector.points

    def _deliver(self, cloud: SplatCloud, delegate: SceneReaderDelegate) -> None:
        for batch in cloud.iter_batches(self.config.batch_size):
            self._validate(batch)
            delegate.did_read(batch)

    def _validate(self, points: List[SplatPoint]) -> None:
        if self.config.validate:
            validate_points(points, self.config.validation_mode)


def read_blocking(reader: SceneReader, timeout: Optional[float] = None,
                  update_interval: float = 30) -> List[SplatPoint]:
    """
    Run a push-based read on a background thread and wait for it.

    Args:
        reader: Reader to run
        timeout: Seconds to wait (defaults to the reader's config)
        update_interval: How often to log progress while waiting

    Returns:
        All points delivered by the reader

    Raises:
        DecodeTimeoutError: if no terminal callback arrives in time
        The reader's own error if it failed
    """
    timeout = reader.config.timeout_seconds if timeout is None else timeout
    collector = PointCollector()

    worker = threading.Thread(target=reader.read, args=(collector,),
                              name=f"splatio-read-{reader.source.name}", daemon=True)
    worker.start()

    tracker = ProgressTracker(f"Reading {reader.source.name}", timeout,
                              update_interval=update_interval, logger=logger)
    while not collector.wait(min(update_interval, tracker.remaining)):
        tracker.check_and_log()
        if tracker.is_timeout():
            raise DecodeTimeoutError(timeout, reader.source)

    if collector.error is not None:
        raise collector.error
    return collector.points
