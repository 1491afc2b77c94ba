# ABOUTME: Chunked splat codec (.cspl files): 256-point chunks with per-chunk bounds and 16 bytes per point
# ABOUTME: Positions and scales are 11/10/11 quantized inside their chunk, rotations use smallest-three

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import numpy as np

from ..errors import HeaderError, TruncatedDataError
from ..quantization import (
    pack_chunk_position, pack_chunk_rotation, pack_chunk_scale, pack_rgba8, unit_to_byte,
    unpack_chunk_position, unpack_chunk_rotation, unpack_chunk_scale, unpack_rgba8,
)
from ..reader import SceneReader
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind
from ..utils.logging_utils import get_logger

logger = get_logger('chunked')

CHUNK_SIZE = 256
BOUNDS_PADDING = 0.001
MIN_SCALE = 1e-4

MAGIC = b'CSPL'
VERSION = 1
FILE_HEADER = struct.Struct('<4sII')
CHUNK_HEADER = struct.Struct('<12fI')


@dataclass
class ChunkHeader:
    """Per-chunk quantization bounds. Scale bounds are in log space."""
    min_position: np.ndarray
    max_position: np.ndarray
    min_scale: np.ndarray
    max_scale: np.ndarray
    count: int


@dataclass
class ChunkedSplatData:
    """
    Compressed cloud.

    Attributes:
        chunks: One header per 256 points (the last may hold fewer)
        packed: (N, 4) uint32 array of position, rotation, scale and RGBA words
    """
    chunks: List[ChunkHeader] = field(default_factory=list)
    packed: np.ndarray = field(default_factory=lambda: np.zeros((0, 4), dtype=np.uint32))

    @property
    def count(self) -> int:
        return len(self.packed)

    @property
    def compression_ratio(self) -> float:
        """Uncompressed bytes (52 per point) over compressed bytes."""
        compressed = len(self.to_bytes())
        return (self.count * 52) / compressed if compressed else 0.0

    def to_bytes(self) -> bytes:
        parts = [FILE_HEADER.pack(MAGIC, VERSION, self.count)]
        for chunk in self.chunks:
            parts.append(CHUNK_HEADER.pack(*chunk.min_position, *chunk.max_position,
                                           *chunk.min_scale, *chunk.max_scale, chunk.count))
        parts.append(self.packed.astype('<u4').tobytes())
        return b''.join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ChunkedSplatData':
        if len(data) < FILE_HEADER.size:
            raise HeaderError("Chunked splat data too short for header")
        magic, version, count = FILE_HEADER.unpack_from(data, 0)
        if magic != MAGIC:
            raise HeaderError(f"Invalid chunked splat magic: {magic!r}")
        if version != VERSION:
            raise HeaderError(f"Unsupported chunked splat version: {version}")

        chunk_count = (count + CHUNK_SIZE - 1) // CHUNK_SIZE
        needed = FILE_HEADER.size + chunk_count * CHUNK_HEADER.size + count * 16
        if len(data) < needed:
            raise TruncatedDataError("Chunked splat data truncated",
                                     offset=0, size=needed, available=len(data))
        chunks = []
        offset = FILE_HEADER.size
        for _ in range(chunk_count):
            values = CHUNK_HEADER.unpack_from(data, offset)
            offset += CHUNK_HEADER.size
            bounds = np.asarray(values[:12], dtype=np.float32).reshape(4, 3)
            chunks.append(ChunkHeader(bounds[0], bounds[1], bounds[2], bounds[3], values[12]))
        packed = np.frombuffer(data, dtype='<u4', count=count * 4, offset=offset).reshape(count, 4)
        return cls(chunks, packed.astype(np.uint32))


def compress(cloud: SplatCloud) -> ChunkedSplatData:
    """Quantize a cloud into 256-point chunks."""
    positions = cloud.positions
    scales = np.maximum(cloud.linear_scales(), MIN_SCALE)
    log_scales = np.log(scales)
    rgba = np.concatenate([unit_to_byte(cloud.linear_colors()),
                           unit_to_byte(cloud.linear_opacities())[:, None]], axis=1)

    chunks = []
    packed = np.zeros((cloud.count, 4), dtype=np.uint32)
    for start in range(0, cloud.count, CHUNK_SIZE):
        stop = min(start + CHUNK_SIZE, cloud.count)
        lo = positions[start:stop].min(axis=0)
        hi = positions[start:stop].max(axis=0)
        pad = (hi - lo) * BOUNDS_PADDING
        lo, hi = lo - pad, hi + pad
        log_lo = log_scales[start:stop].min(axis=0)
        log_hi = log_scales[start:stop].max(axis=0)
        chunks.append(ChunkHeader(lo, hi, log_lo, log_hi, stop - start))

        packed[start:stop, 0] = pack_chunk_position(positions[start:stop], lo, hi)
        packed[start:stop, 1] = pack_chunk_rotation(cloud.rotations[start:stop])
        packed[start:stop, 2] = pack_chunk_scale(scales[start:stop], log_lo, log_hi)
        packed[start:stop, 3] = pack_rgba8(rgba[start:stop])

    logger.debug(f"Compressed {cloud.count} points into {len(chunks)} chunks")
    return ChunkedSplatData(chunks, packed)


def decompress(data: ChunkedSplatData) -> SplatCloud:
    """Expand chunked data into a cloud with linear scale, opacity and 8-bit colours."""
    n = data.count
    positions = np.zeros((n, 3), dtype=np.float32)
    scales = np.zeros((n, 3), dtype=np.float32)
    start = 0
    for chunk in data.chunks:
        stop = start + chunk.count
        positions[start:stop] = unpack_chunk_position(
            data.packed[start:stop, 0], chunk.min_position, chunk.max_position)
        scales[start:stop] = unpack_chunk_scale(
            data.packed[start:stop, 2], chunk.min_scale, chunk.max_scale)
        start = stop

    rgba = unpack_rgba8(data.packed[:, 3])
    return SplatCloud(
        positions=positions,
        rotations=unpack_chunk_rotation(data.packed[:, 1]),
        scales=scales,
        opacities=rgba[:, 3].astype(np.float32) / 255.0,
        colors=rgba[:, :3],
        scale_kind=ScaleKind.LINEAR,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=ColorKind.LINEAR_UINT8,
    )


class ChunkedSceneReader(SceneReader):
    """Reads ``.cspl`` files written by ``ChunkedSceneWriter``."""

    format_name = 'chunked'

    def decode_cloud(self) -> SplatCloud:
        return decompress(ChunkedSplatData.from_bytes(self.source.read_bytes()))


class ChunkedSceneWriter:
    """Writes clouds as ``.cspl`` chunked data."""

    def write(self, cloud: SplatCloud, path) -> Path:
        path = Path(path)
        data = compress(cloud)
        path.write_bytes(data.to_bytes())
        logger.info(f"Wrote {cloud.count} points to {path} "
                    f"({data.compression_ratio:.1f}x smaller than float32)")
        return path
