# ABOUTME: Gzip detection and (de)compression helpers for SPZ and SPX payloads
# ABOUTME: Maps zlib/gzip failures onto DecompressionError

import gzip
import zlib

from .errors import DecompressionError

GZIP_MAGIC = b'\x1f\x8b'


def is_gzipped(data: bytes) -> bool:
    return len(data) >= 2 and bytes(data[:2]) == GZIP_MAGIC


def gunzip(data: bytes) -> bytes:
    """
    Decompress a gzip stream.

    Raises:
        DecompressionError: if the stream is not gzip or is damaged
    """
    if not is_gzipped(data):
        raise DecompressionError("Data is not gzip-compressed")
    try:
        return gzip.decompress(bytes(data))
    except (OSError, EOFError, zlib.error) as e:
        raise DecompressionError(f"Gzip decompression failed: {e}") from e


def gzip_bytes(data: bytes, level: int = 6) -> bytes:
    return gzip.compress(bytes(data), compresslevel=level, mtime=0)
