# ABOUTME: SPX reader and writer (128-byte header followed by length-prefixed, optionally gzipped data blocks)
# ABOUTME: Base attribute blocks create points; SH band blocks merge into them in file order

import struct
import zlib
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from ..compression import gunzip, gzip_bytes, is_gzipped
from ..config import ReaderConfig
from ..errors import DecompressionError, HeaderError, InvalidMagicNumber, TruncatedDataError
from ..quantization import (
    decode_int24, encode_int24, exponent_to_scale_byte, float_to_sh_byte, linear_to_sh,
    normalize_quaternions, sh_byte_to_float, spx_scale_byte_to_linear, unit_to_byte,
)
from ..reader import SceneReader
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind, SH_COEFFICIENT_COUNTS
from ..utils.logging_utils import get_logger

logger = get_logger('spx')

SPX_MAGIC = b'spx'
HEADER_SIZE = 128
HEADER_FORMAT = '<3sBI6f2fIIIB3BII60sI'

BASIC_FORMATS = (0, 20)
BASIC_RECORD_SIZE = 20

# Coefficients per point carried by each SH block format
SH_BLOCK_COEFFS = {1: 3, 2: 8, 3: 7}
MAX_EXTRA_COEFFS = 15

POSITION_SCALE = float(0x800000)


@dataclass
class SPXHeader:
    """Fixed 128-byte SPX file header."""
    version: int
    splat_count: int
    min_x: float
    max_x: float
    min_y: float
    max_y: float
    min_z: float
    max_z: float
    min_top_y: float = 0.0
    max_top_y: float = 0.0
    create_date: int = 0
    creater_id: int = 0
    exclusive_id: int = 0
    sh_degree: int = 0
    flag1: int = 0
    flag2: int = 0
    flag3: int = 0
    reserve1: int = 0
    reserve2: int = 0
    comment: bytes = b''
    checksum: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SPXHeader':
        if len(data) < HEADER_SIZE:
            raise HeaderError(f"SPX header needs {HEADER_SIZE} bytes, got {len(data)}")
        fields = struct.unpack_from(HEADER_FORMAT, data, 0)
        if fields[0] != SPX_MAGIC:
            raise InvalidMagicNumber(f"Invalid SPX magic number: {fields[0]!r}")
        (_, version, count, min_x, max_x, min_y, max_y, min_z, max_z, min_top_y, max_top_y,
         create_date, creater_id, exclusive_id, sh_degree, flag1, flag2, flag3,
         reserve1, reserve2, comment, checksum) = fields
        return cls(version, count, min_x, max_x, min_y, max_y, min_z, max_z, min_top_y,
                   max_top_y, create_date, creater_id, exclusive_id, sh_degree, flag1, flag2,
                   flag3, reserve1, reserve2, comment.rstrip(b'\x00'), checksum)

    def to_bytes(self) -> bytes:
        return struct.pack(HEADER_FORMAT, SPX_MAGIC, self.version, self.splat_count,
                           self.min_x, self.max_x, self.min_y, self.max_y, self.min_z, self.max_z,
                           self.min_top_y, self.max_top_y, self.create_date, self.creater_id,
                           self.exclusive_id, self.sh_degree, self.flag1, self.flag2, self.flag3,
                           self.reserve1, self.reserve2, self.comment.ljust(60, b'\x00')[:60],
                           self.checksum)

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return (np.array([self.min_x, self.min_y, self.min_z], dtype=np.float32),
                np.array([self.max_x, self.max_y, self.max_z], dtype=np.float32))


@dataclass
class SPXBlock:
    gaussian_count: int
    format_id: int
    payload: bytes
    compressed: bool = False


def _decompress_block(raw: bytes) -> bytes:
    if is_gzipped(raw):
        return gunzip(raw)
    try:
        return zlib.decompress(raw)
    except zlib.error as e:
        raise DecompressionError(f"SPX block decompression failed: {e}") from e


def iter_blocks(data: bytes, offset: int = HEADER_SIZE):
    """
    Yield the data blocks that follow the header.

    Raises:
        TruncatedDataError: block length runs past the end of the data, or a
            block is shorter than its 8-byte sub-header
        DecompressionError: a compressed block cannot be inflated
    """
    while offset + 4 <= len(data):
        (length,) = struct.unpack_from('<i', data, offset)
        offset += 4
        compressed = length < 0
        size = -length if compressed else length
        if offset + size > len(data):
            raise TruncatedDataError("SPX block extends past end of data",
                                     offset=offset, size=size, available=len(data))
        raw = bytes(data[offset:offset + size])
        offset += size
        if compressed:
            raw = _decompress_block(raw)
        if len(raw) < 8:
            raise TruncatedDataError(f"SPX block too short for its sub-header: {len(raw)} bytes")
        gaussian_count, format_id = struct.unpack_from('<II', raw, 0)
        yield SPXBlock(gaussian_count, format_id, raw[8:], compressed)


def parse_basic_block(payload: bytes, count: int, header: SPXHeader) -> SplatCloud:
    """
    Decode a format 20 (or 0) block of parallel attribute arrays.

    A payload shorter than ``count * 20`` yields as many points as fit.
    """
    if len(payload) < count * BASIC_RECORD_SIZE:
        available = len(payload) // BASIC_RECORD_SIZE
        if available == 0:
            raise TruncatedDataError(
                f"SPX basic block declares {count} points but holds {len(payload)} bytes")
        logger.warning(f"SPX basic block truncated: decoding {available} of {count} points")
        count = available

    n = count
    d = np.frombuffer(payload, dtype=np.uint8, count=n * BASIC_RECORD_SIZE)

    def plane(index: int) -> np.ndarray:
        return d[n * index:n * (index + 1)]

    positions = np.stack([
        decode_int24(d[n * 3 * axis:n * 3 * (axis + 1)].reshape(n, 3)) / POSITION_SCALE
        for axis in range(3)
    ], axis=1).astype(np.float32)

    lo, hi = header.bounds
    size = hi - lo
    center = (lo + hi) * 0.5
    if (np.all(np.isfinite(size)) and np.all(np.abs(size) > 1e-6)
            and np.all(np.isfinite(center))):
        positions = positions * size * 0.5 + center
    else:
        logger.debug("SPX header bounds unusable, keeping normalized positions")

    scales = np.stack([spx_scale_byte_to_linear(plane(9 + i)) for i in range(3)], axis=1)
    rgba = np.stack([plane(12 + i) for i in range(4)], axis=1).astype(np.float32) / 255.0

    w, x, y, z = (plane(16 + i).astype(np.float32) / 128.0 - 1.0 for i in range(4))
    rotations = np.stack([x, y, z, w], axis=1)
    rotations = np.where(rotations[:, 3:4] < 0, -rotations, rotations)
    rotations = normalize_quaternions(rotations)

    return SplatCloud(
        positions=positions,
        rotations=rotations,
        scales=scales,
        opacities=rgba[:, 3],
        colors=rgba[:, :3],
        scale_kind=ScaleKind.LINEAR,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=ColorKind.LINEAR_FLOAT,
    )


class _SHAccumulator:
    """
    Per-point non-DC SH coefficients built up from SH blocks.

    Formats 1 and 2 replace a point's coefficients; format 3 appends.
    """

    def __init__(self):
        self.operations: List[Tuple[int, int, bool, np.ndarray]] = []

    def apply(self, payload: bytes, count: int, format_id: int, start: int, limit: int):
        coeffs = SH_BLOCK_COEFFS[format_id]
        if count == 0 or not payload:
            return
        expected = count * coeffs * 3
        if len(payload) < expected:
            logger.warning(f"Skipping SPX SH block (format {format_id}): expected {expected} "
                           f"bytes for {count} gaussians, got {len(payload)}")
            return
        rows = max(0, min(count, limit - start))
        if rows == 0:
            return
        values = sh_byte_to_float(
            np.frombuffer(payload, dtype=np.uint8, count=rows * coeffs * 3).reshape(rows, coeffs, 3))
        self.operations.append((start, rows, format_id == 3, values))

    def build(self, total: int) -> Tuple[np.ndarray, np.ndarray]:
        coefficients = np.zeros((total, MAX_EXTRA_COEFFS, 3), dtype=np.float32)
        lengths = np.zeros(total, dtype=np.int64)
        for start, rows, append, values in self.operations:
            k = values.shape[1]
            if not append:
                coefficients[start:start + rows] = 0.0
                coefficients[start:start + rows, :k] = values
                lengths[start:start + rows] = k
                continue
            window = lengths[start:start + rows]
            for length in np.unique(window):
                take = min(k, MAX_EXTRA_COEFFS - int(length))
                if take <= 0:
                    continue
                rows_mask = np.nonzero(window == length)[0]
                coefficients[start + rows_mask, length:length + take] = values[rows_mask, :take]
                lengths[start + rows_mask] = length + take
        return coefficients, lengths


def parse_spx(data: bytes, config: Optional[ReaderConfig] = None) -> SplatCloud:
    """
    Decode SPX bytes into a cloud.

    Without SH blocks, points carry linear colors; once any point receives
    SH coefficients the whole cloud switches to SH colors, with points
    lacking bands padded with zero coefficients.
    """
    header = SPXHeader.from_bytes(data)
    logger.debug(f"SPX v{header.version}: {header.splat_count} splats, SH degree {header.sh_degree}")

    clouds: List[SplatCloud] = []
    total = 0
    sh = _SHAccumulator()
    next_sh12 = 0
    next_sh3 = 0

    for block in iter_blocks(data):
        if block.format_id in BASIC_FORMATS:
            cloud = parse_basic_block(block.payload, block.gaussian_count, header)
            clouds.append(cloud)
            total += cloud.count
        elif block.format_id in (1, 2):
            sh.apply(block.payload, block.gaussian_count, block.format_id, next_sh12, total)
            next_sh12 += block.gaussian_count
        elif block.format_id == 3:
            sh.apply(block.payload, block.gaussian_count, block.format_id, next_sh3, total)
            next_sh3 += block.gaussian_count
        else:
            logger.warning(f"Skipping SPX block with unknown format {block.format_id}")

    cloud = SplatCloud.concatenate(clouds) if clouds else SplatCloud.empty(ColorKind.LINEAR_FLOAT)
    if not sh.operations or cloud.count == 0:
        return cloud

    extras, lengths = sh.build(cloud.count)
    needed = 1 + int(lengths.max())
    width = next(c for c in SH_COEFFICIENT_COUNTS if c >= needed)
    colors = np.zeros((cloud.count, width, 3), dtype=np.float32)
    colors[:, 0, :] = linear_to_sh(cloud.colors)
    colors[:, 1:width, :] = extras[:, :width - 1, :]
    if np.any(lengths + 1 != width):
        logger.debug(f"Padded SPX SH coefficients to {width} per point")

    return SplatCloud(
        positions=cloud.positions,
        rotations=cloud.rotations,
        scales=cloud.scales,
        opacities=cloud.opacities,
        colors=colors,
        scale_kind=cloud.scale_kind,
        opacity_kind=cloud.opacity_kind,
        color_kind=ColorKind.SPHERICAL_HARMONIC,
    )


class SPXSceneReader(SceneReader):
    """Reads ``.spx`` files. Blocks are processed strictly in file order."""

    format_name = 'SPX'

    def decode_cloud(self) -> SplatCloud:
        return parse_spx(self.source.read_bytes(), self.config)


def _writer_bounds(cloud: SplatCloud) -> Tuple[np.ndarray, np.ndarray]:
    """Position bounds, widened on flat axes so every axis can be denormalized."""
    lo, hi = (b.astype(np.float32) for b in cloud.bounds())
    flat = (hi - lo) <= 1e-6
    lo = np.where(flat, lo - 0.5, lo).astype(np.float32)
    hi = np.where(flat, hi + 0.5, hi).astype(np.float32)
    return lo, hi


def _basic_payload(cloud: SplatCloud, lo: np.ndarray, hi: np.ndarray) -> bytes:
    """Planar format 20 attributes, the inverse of ``parse_basic_block``."""
    center = (lo + hi) * 0.5
    half = (hi - lo) * 0.5
    normalized = (cloud.positions.astype(np.float64) - center) / half
    parts = [encode_int24(np.round(normalized[:, axis] * POSITION_SCALE)).tobytes()
             for axis in range(3)]

    scale_bytes = exponent_to_scale_byte(cloud.exponent_scales())
    parts += [scale_bytes[:, axis].tobytes() for axis in range(3)]

    rgb = unit_to_byte(cloud.linear_colors())
    parts += [rgb[:, channel].tobytes() for channel in range(3)]
    parts.append(unit_to_byte(cloud.linear_opacities()).tobytes())

    q = normalize_quaternions(cloud.rotations)
    q = np.where(q[:, 3:4] < 0, -q, q)
    q_bytes = np.clip(np.round(q * 128.0 + 128.0), 0, 255).astype(np.uint8)
    parts += [q_bytes[:, i].tobytes() for i in (3, 0, 1, 2)]
    return b''.join(parts)


def _block(count: int, format_id: int, payload: bytes, compress: bool) -> bytes:
    raw = struct.pack('<II', count, format_id) + payload
    if compress:
        raw = gzip_bytes(raw)
        return struct.pack('<i', -len(raw)) + raw
    return struct.pack('<i', len(raw)) + raw


def serialize_spx(cloud: SplatCloud, compress: bool = False) -> bytes:
    """
    Encode a cloud as SPX bytes.

    A non-empty cloud gets one format 20 block, then SH blocks for its
    extra coefficients: format 1 for degree 1, format 2 for degree 2, and
    format 2 followed by format 3 for degree 3.

    Args:
        cloud: Cloud to encode
        compress: gzip each block (negative block lengths)
    """
    sh = cloud.sh_coefficients()
    extra = sh.shape[1] - 1
    sh_degree = {0: 0, 3: 1, 8: 2, 15: 3}[extra]
    lo, hi = _writer_bounds(cloud)
    header = SPXHeader(
        version=1, splat_count=cloud.count,
        min_x=float(lo[0]), max_x=float(hi[0]),
        min_y=float(lo[1]), max_y=float(hi[1]),
        min_z=float(lo[2]), max_z=float(hi[2]),
        min_top_y=float(lo[1]), max_top_y=float(hi[1]),
        create_date=int(date.today().strftime('%Y%m%d')),
        sh_degree=sh_degree,
    )

    if cloud.count == 0:
        return header.to_bytes()

    blocks = [_block(cloud.count, 20, _basic_payload(cloud, lo, hi), compress)]
    if extra:
        rest = float_to_sh_byte(sh[:, 1:, :])
        if extra == 3:
            blocks.append(_block(cloud.count, 1, rest.tobytes(), compress))
        else:
            blocks.append(_block(cloud.count, 2, rest[:, :8].tobytes(), compress))
            if extra == 15:
                blocks.append(_block(cloud.count, 3, rest[:, 8:].tobytes(), compress))
    return header.to_bytes() + b''.join(blocks)


class SPXSceneWriter:
    """Writes clouds as SPX with one base block and per-band SH blocks."""

    def __init__(self, compress: bool = False):
        self.compress = compress

    def write(self, cloud: SplatCloud, path) -> Path:
        path = Path(path)
        path.write_bytes(serialize_spx(cloud, self.compress))
        logger.info(f"Wrote {cloud.count} points to {path}")
        return path
