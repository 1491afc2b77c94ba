# ABOUTME: Exception hierarchy shared by every splat reader
# ABOUTME: Groups failures by kind so callers can catch detection, header, truncation and validation errors

from typing import Optional


class SplatIOError(Exception):
    """Base class for all errors raised by splatio."""


class FormatDetectionError(SplatIOError):
    """The input could not be classified as any known splat format."""

    def __init__(self, source, reason: str = "Cannot determine format"):
        self.source = source
        super().__init__(f"{reason}: {source}")


class HeaderError(SplatIOError):
    """Magic number, version or header size mismatch."""


class InvalidMagicNumber(HeaderError):
    """The header magic number is missing or unrecoverable."""


class TruncatedDataError(SplatIOError):
    """Fewer bytes are available than the schema requires."""

    def __init__(self, message: str, offset: Optional[int] = None,
                 size: Optional[int] = None, available: Optional[int] = None):
        self.offset = offset
        self.size = size
        self.available = available
        if offset is not None and size is not None and available is not None:
            message = (f"{message} (trying to read {size} bytes at offset {offset}, "
                       f"only {available} bytes available)")
        super().__init__(message)


class DecompressionError(SplatIOError):
    """A gzip or zip payload could not be decompressed."""


class ValidationError(SplatIOError):
    """A decoded field is NaN, infinite or out of range."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidDataError(ValidationError):
    """Header counts (points, SH degree) are outside the supported range."""


class InvalidMetadataError(ValidationError):
    """SOGS metadata or its textures are inconsistent."""


class CorruptedDataError(ValidationError):
    """Sampled validation found too many bad points."""

    def __init__(self, message: str, error_rate: float = 0.0,
                 first_error: Optional[Exception] = None):
        self.error_rate = error_rate
        self.first_error = first_error
        super().__init__(message)


class ResourceMissingError(SplatIOError):
    """An expected file, sibling texture or archive entry is absent."""

    def __init__(self, resource, message: Optional[str] = None):
        self.resource = resource
        super().__init__(message or f"Resource not found: {resource}")


class DecodeTimeoutError(SplatIOError):
    """A blocking read did not reach a terminal state within its time bound."""

    def __init__(self, timeout: float, source=None):
        self.timeout = timeout
        self.source = source
        where = f" for {source}" if source is not None else ""
        super().__init__(f"Timed out after {timeout:.0f}s waiting for reader{where}")


class GltfError(HeaderError):
    """Structural problem in a glTF document (scene graph, accessors, extension)."""
