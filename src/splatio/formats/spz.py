# ABOUTME: SPZ (Niantic packed gaussians) reader and writer
# ABOUTME: Handles gzip framing, displaced magic numbers, truncated channels and v1-v3 rotation encodings

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np

from ..compression import gunzip, gzip_bytes, is_gzipped
from ..config import ReaderConfig, SPZ_MAX_SH_DEGREE
from ..errors import HeaderError, InvalidDataError, InvalidMagicNumber, TruncatedDataError
from ..parallel import run_ranges
from ..quantization import (
    alpha_byte_to_logit, exponent_to_scale_byte, float16_to_float32, float32_to_float16,
    float_to_sh_byte, pack_first_three, pack_fixed_point, pack_smallest_three,
    scale_byte_to_exponent, sh_byte_to_float, sh_to_spz_color_byte, spz_color_byte_to_sh,
    unit_to_byte, unpack_first_three, unpack_fixed_point, unpack_smallest_three,
)
from ..reader import SceneReader
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind
from ..utils.logging_utils import get_logger

logger = get_logger('spz')

SPZ_MAGIC = 0x5053474E  # "NGSP" little-endian
SPZ_MAGIC_BYTES = struct.pack('<I', SPZ_MAGIC)
HEADER_FORMAT = '<IIIBBBB'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

FLAG_ANTIALIASED = 0x01
FLAG_FLOAT16 = 0x02

SUPPORTED_VERSIONS = (1, 2, 3)

# Non-DC coefficient triples per SH degree
SH_DIMS = {0: 0, 1: 3, 2: 8, 3: 15}


@dataclass
class SPZHeader:
    """Fixed 16-byte SPZ header."""
    version: int
    num_points: int
    sh_degree: int
    fractional_bits: int
    flags: int = 0
    reserved: int = 0

    @property
    def antialiased(self) -> bool:
        return bool(self.flags & FLAG_ANTIALIASED)

    @property
    def uses_float16(self) -> bool:
        return self.version == 1 or bool(self.flags & FLAG_FLOAT16)

    @property
    def uses_smallest_three(self) -> bool:
        return self.version >= 3

    @property
    def sh_dim(self) -> int:
        return SH_DIMS.get(self.sh_degree, 0)

    @property
    def position_stride(self) -> int:
        return 6 if self.uses_float16 else 9

    @property
    def rotation_stride(self) -> int:
        return 4 if self.uses_smallest_three else 3

    @classmethod
    def from_bytes(cls, data, offset: int = 0) -> 'SPZHeader':
        if len(data) - offset < HEADER_SIZE:
            raise HeaderError(f"SPZ header needs {HEADER_SIZE} bytes, got {len(data) - offset}")
        magic, version, num_points, sh_degree, fractional_bits, flags, reserved = \
            struct.unpack_from(HEADER_FORMAT, data, offset)
        if magic != SPZ_MAGIC:
            raise InvalidMagicNumber(f"Invalid SPZ magic number 0x{magic:08X}")
        return cls(version, num_points, sh_degree, fractional_bits, flags, reserved)

    def to_bytes(self) -> bytes:
        return struct.pack(HEADER_FORMAT, SPZ_MAGIC, self.version, self.num_points,
                           self.sh_degree, self.fractional_bits, self.flags, self.reserved)


def find_header_offset(data: bytes, scan_window: int = 1024) -> int:
    """
    Locate the SPZ magic number.

    Producers sometimes prepend junk bytes, so when the magic is not at
    offset 0 the first ``scan_window`` bytes are searched for it.

    Raises:
        InvalidMagicNumber: if the magic is not found
    """
    if len(data) < HEADER_SIZE:
        raise HeaderError(f"SPZ data too short for header: {len(data)} bytes")
    if bytes(data[:4]) == SPZ_MAGIC_BYTES:
        return 0
    offset = bytes(data[:scan_window + 4]).find(SPZ_MAGIC_BYTES)
    if offset < 0 or offset + HEADER_SIZE > len(data):
        raise InvalidMagicNumber(
            f"SPZ magic number not found in the first {scan_window} bytes")
    logger.warning(f"SPZ magic number found at offset {offset}, skipping {offset} leading bytes")
    return offset


def parse_spz(data: bytes, config: Optional[ReaderConfig] = None) -> SplatCloud:
    """
    Decode SPZ bytes (optionally gzip-framed) into a cloud.

    Points come out with logit opacity, exponent scale and SH colors.

    Raises:
        DecompressionError: damaged gzip stream
        HeaderError / InvalidMagicNumber: unusable header
        InvalidDataError: point count or SH degree out of range
        TruncatedDataError: declared points but no complete point available
    """
    config = config or ReaderConfig()
    if is_gzipped(data):
        data = gunzip(data)

    offset = find_header_offset(data, config.magic_scan_window)
    header = SPZHeader.from_bytes(data, offset)

    if header.version not in SUPPORTED_VERSIONS:
        raise HeaderError(f"Unsupported SPZ version: {header.version}")
    if header.num_points > config.spz_max_points:
        raise InvalidDataError(
            f"SPZ point count {header.num_points} exceeds limit {config.spz_max_points}")
    if header.sh_degree > SPZ_MAX_SH_DEGREE:
        raise InvalidDataError(f"Unsupported SH degree: {header.sh_degree}")

    sh_count = 1 + header.sh_dim
    if header.num_points == 0:
        return _empty_cloud(sh_count)

    body = np.frombuffer(bytes(data[offset + HEADER_SIZE:]), dtype=np.uint8)
    n = header.num_points
    strides = [
        ('positions', header.position_stride),
        ('alphas', 1),
        ('colors', 3),
        ('scales', 3),
        ('rotations', header.rotation_stride),
    ]
    if header.sh_dim:
        strides.append(('sh', header.sh_dim * 3))

    channels = {}
    cursor = 0
    count = n
    for name, stride in strides:
        available = max(0, min(n * stride, len(body) - cursor))
        channels[name] = body[cursor:cursor + available]
        count = min(count, available // stride)
        cursor += n * stride

    if count < n:
        if count == 0:
            raise TruncatedDataError(
                f"SPZ data truncated: header declares {n} points but no complete point is available")
        logger.warning(f"SPZ data truncated: decoding {count} of {n} points")

    positions = np.empty((count, 3), dtype=np.float32)
    rotations = np.empty((count, 4), dtype=np.float32)
    scales = np.empty((count, 3), dtype=np.float32)
    opacities = np.empty(count, dtype=np.float32)
    colors = np.zeros((count, sh_count, 3), dtype=np.float32)

    def decode_range(start: int, stop: int):
        if header.uses_float16:
            raw = channels['positions'][start * 6:stop * 6].view('<u2').reshape(-1, 3)
            positions[start:stop] = float16_to_float32(raw)
        else:
            raw = channels['positions'][start * 9:stop * 9].reshape(-1, 3, 3)
            positions[start:stop] = unpack_fixed_point(raw, header.fractional_bits)

        opacities[start:stop] = alpha_byte_to_logit(channels['alphas'][start:stop])
        colors[start:stop, 0, :] = spz_color_byte_to_sh(
            channels['colors'][start * 3:stop * 3].reshape(-1, 3))
        scales[start:stop] = scale_byte_to_exponent(
            channels['scales'][start * 3:stop * 3].reshape(-1, 3))

        stride = header.rotation_stride
        raw_rot = channels['rotations'][start * stride:stop * stride].reshape(-1, stride)
        if header.uses_smallest_three:
            rotations[start:stop] = unpack_smallest_three(raw_rot)
        else:
            rotations[start:stop] = unpack_first_three(raw_rot)

        if header.sh_dim:
            sh_stride = header.sh_dim * 3
            raw_sh = channels['sh'][start * sh_stride:stop * sh_stride].reshape(-1, header.sh_dim, 3)
            colors[start:stop, 1:, :] = sh_byte_to_float(raw_sh)

    run_ranges(count, decode_range, config.max_workers)

    logger.debug(f"Decoded SPZ v{header.version}: {count} points, SH degree {header.sh_degree}, "
                 f"{'float16' if header.uses_float16 else 'fixed-point'} positions")
    return SplatCloud(
        positions=positions,
        rotations=rotations,
        scales=scales,
        opacities=opacities,
        colors=colors,
        scale_kind=ScaleKind.EXPONENT,
        opacity_kind=OpacityKind.LOGIT,
        color_kind=ColorKind.SPHERICAL_HARMONIC,
    )


def _empty_cloud(sh_count: int) -> SplatCloud:
    return SplatCloud(
        positions=np.zeros((0, 3)),
        rotations=np.zeros((0, 4)),
        scales=np.zeros((0, 3)),
        opacities=np.zeros(0),
        colors=np.zeros((0, sh_count, 3)),
    )


def serialize_spz(cloud: SplatCloud, version: int = 3, use_float16: bool = False,
                  fractional_bits: int = 12, antialiased: bool = False) -> bytes:
    """
    Encode a cloud as uncompressed SPZ bytes.

    The SH degree follows the cloud's coefficient count.
    """
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported SPZ version: {version}")
    sh = cloud.sh_coefficients()
    sh_degree = {1: 0, 4: 1, 9: 2, 16: 3}[sh.shape[1]]
    flags = FLAG_ANTIALIASED if antialiased else 0
    if use_float16 and version > 1:
        flags |= FLAG_FLOAT16
    header = SPZHeader(version=version, num_points=cloud.count, sh_degree=sh_degree,
                       fractional_bits=fractional_bits, flags=flags)

    if header.uses_float16:
        positions = float32_to_float16(cloud.positions).astype('<u2').tobytes()
    else:
        positions = pack_fixed_point(cloud.positions, fractional_bits).tobytes()
    alphas = unit_to_byte(cloud.linear_opacities()).tobytes()
    colors = sh_to_spz_color_byte(sh[:, 0, :]).tobytes()
    scales = exponent_to_scale_byte(cloud.exponent_scales()).tobytes()
    if header.uses_smallest_three:
        rotations = pack_smallest_three(cloud.rotations).tobytes()
    else:
        rotations = pack_first_three(cloud.rotations).tobytes()
    rest = float_to_sh_byte(sh[:, 1:, :]).tobytes() if sh_degree else b''

    return b''.join([header.to_bytes(), positions, alphas, colors, scales, rotations, rest])


class SPZSceneReader(SceneReader):
    """Reads ``.spz`` and ``.spz.gz`` files."""

    format_name = 'SPZ'

    def decode_cloud(self) -> SplatCloud:
        return parse_spz(self.source.read_bytes(), self.config)


class SPZSceneWriter:
    """Writes clouds as SPZ, gzip-compressed by default."""

    def __init__(self, version: int = 3, use_float16: bool = False, fractional_bits: int = 12,
                 antialiased: bool = False, compress: bool = True):
        self.version = version
        self.use_float16 = use_float16
        self.fractional_bits = fractional_bits
        self.antialiased = antialiased
        self.compress = compress

    def write(self, cloud: SplatCloud, path) -> Path:
        path = Path(path)
        data = serialize_spz(cloud, self.version, self.use_float16,
                             self.fractional_bits, self.antialiased)
        path.write_bytes(gzip_bytes(data) if self.compress else data)
        logger.info(f"Wrote {cloud.count} points to {path}")
        return path
