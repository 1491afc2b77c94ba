# ABOUTME: Scalar and quantization codecs shared by the splat format readers
# ABOUTME: Vectorized numpy conversions between packed integers and floats (fixed-point, float16, quaternions, opacity, color)

import numpy as np
from typing import Optional, Sequence, Tuple

# Zeroth-order spherical harmonics normalization constant
SH_C0 = 0.28209479177387814

# SPZ stores the DC color term scaled by this factor
SPZ_COLOR_SCALE = 0.15

# Logit input is clamped to this range to keep the result finite
OPACITY_EPSILON = 1e-4

SQRT1_2 = np.float32(np.sqrt(0.5))

# Maximum values of the 11/10/11 bit fields
_BITS_11 = 2047
_BITS_10 = 1023

_CHUNK_ROTATION_NORM = 0.707


# --- Basic float helpers ---------------------------------------------------

def sigmoid(x):
    """Logit space to linear opacity."""
    x = np.asarray(x, dtype=np.float32)
    return (1.0 / (1.0 + np.exp(-x))).astype(np.float32)


def logit(x):
    """Linear opacity to logit space, clamping away from 0 and 1."""
    x = np.clip(np.asarray(x, dtype=np.float32), OPACITY_EPSILON, 1.0 - OPACITY_EPSILON)
    return np.log(x / (1.0 - x)).astype(np.float32)


def lerp(lo, hi, t):
    lo = np.asarray(lo, dtype=np.float32)
    hi = np.asarray(hi, dtype=np.float32)
    return lo + (hi - lo) * np.asarray(t, dtype=np.float32)


def sign_preserving_expm1(v):
    """Inverse of the SOGS log transform: ``sign(v) * (exp(|v|) - 1)``, with sign(0) = +1."""
    v = np.asarray(v, dtype=np.float32)
    sign = np.where(v < 0, -1.0, 1.0).astype(np.float32)
    return sign * (np.exp(np.abs(v)) - 1.0)


def sh_to_linear(dc):
    """DC spherical harmonic coefficient to linear color."""
    return 0.5 + SH_C0 * np.asarray(dc, dtype=np.float32)


def linear_to_sh(color):
    """Linear color to DC spherical harmonic coefficient."""
    return (np.asarray(color, dtype=np.float32) - 0.5) / SH_C0


# --- Fixed point positions -------------------------------------------------

def decode_int24(raw: np.ndarray) -> np.ndarray:
    """
    Sign-extend little-endian 24-bit integers.

    Args:
        raw: uint8 array whose last axis has length 3

    Returns:
        int32 array with the last axis removed
    """
    raw = np.asarray(raw, dtype=np.uint8).astype(np.int32)
    value = raw[..., 0] | (raw[..., 1] << 8) | (raw[..., 2] << 16)
    return np.where(value & 0x800000, value - 0x1000000, value).astype(np.int32)


def encode_int24(values) -> np.ndarray:
    """Pack int values into little-endian 24-bit two's complement bytes."""
    v = np.clip(np.asarray(values, dtype=np.int64), -(1 << 23), (1 << 23) - 1) & 0xFFFFFF
    out = np.empty(v.shape + (3,), dtype=np.uint8)
    out[..., 0] = v & 0xFF
    out[..., 1] = (v >> 8) & 0xFF
    out[..., 2] = (v >> 16) & 0xFF
    return out


def unpack_fixed_point(raw: np.ndarray, fractional_bits: int) -> np.ndarray:
    """24-bit fixed point to float (``value / 2**fractional_bits``)."""
    return (decode_int24(raw) / float(1 << fractional_bits)).astype(np.float32)


def pack_fixed_point(values, fractional_bits: int) -> np.ndarray:
    return encode_int24(np.round(np.asarray(values, dtype=np.float64) * (1 << fractional_bits)))


# --- Float16 -----------------------------------------------------------------

def float16_to_float32(bits) -> np.ndarray:
    """
    Convert IEEE-754 half precision bit patterns to float32.

    Done in software so the result does not depend on platform half support.

    Args:
        bits: uint16 array of raw half floats

    Returns:
        float32 array of the same shape
    """
    h = np.asarray(bits, dtype=np.uint16).astype(np.int32)
    sign = (h >> 15) & 0x1
    exponent = (h >> 10) & 0x1F
    mantissa = (h & 0x3FF).astype(np.float64)

    normal = np.ldexp(1.0 + mantissa / 1024.0, exponent - 15)
    subnormal = np.ldexp(mantissa / 1024.0, -14)
    special = np.where(mantissa == 0, np.inf, np.nan)

    value = np.where(exponent == 0, subnormal, np.where(exponent == 31, special, normal))
    return np.where(sign == 1, -value, value).astype(np.float32)


def float32_to_float16(values) -> np.ndarray:
    """Float to half precision bit patterns (round to nearest even)."""
    return np.asarray(values, dtype=np.float32).astype(np.float16).view(np.uint16)


# --- Scale -----------------------------------------------------------------

def scale_byte_to_exponent(raw) -> np.ndarray:
    """8-bit scale to log-space exponent in [-10, 5.9375]."""
    return (np.asarray(raw, dtype=np.float32) / 16.0 - 10.0).astype(np.float32)


def exponent_to_scale_byte(exponent) -> np.ndarray:
    packed = np.round((np.asarray(exponent, dtype=np.float32) + 10.0) * 16.0)
    return np.clip(packed, 0, 255).astype(np.uint8)


def spx_scale_byte_to_linear(raw) -> np.ndarray:
    """SPX scale byte to linear scale, clamped to [1e-4, 100]."""
    return np.clip(np.exp(scale_byte_to_exponent(raw)), 1e-4, 100.0).astype(np.float32)


# --- Opacity and color -----------------------------------------------------

def alpha_byte_to_logit(raw) -> np.ndarray:
    return logit(np.asarray(raw, dtype=np.float32) / 255.0)


def spz_color_byte_to_sh(raw) -> np.ndarray:
    """SPZ color byte to DC coefficient: ``(b/255 - 0.5) / 0.15``."""
    return ((np.asarray(raw, dtype=np.float32) / 255.0 - 0.5) / SPZ_COLOR_SCALE).astype(np.float32)


def sh_to_spz_color_byte(dc) -> np.ndarray:
    packed = np.round((np.asarray(dc, dtype=np.float32) * SPZ_COLOR_SCALE + 0.5) * 255.0)
    return np.clip(packed, 0, 255).astype(np.uint8)


def sh_byte_to_float(raw) -> np.ndarray:
    """Non-DC SH byte to coefficient: ``(b - 128) / 128``."""
    return ((np.asarray(raw, dtype=np.float32) - 128.0) / 128.0).astype(np.float32)


def float_to_sh_byte(values) -> np.ndarray:
    packed = np.round(np.asarray(values, dtype=np.float32) * 128.0 + 128.0)
    return np.clip(packed, 0, 255).astype(np.uint8)


def unit_to_byte(values) -> np.ndarray:
    return np.clip(np.round(np.asarray(values, dtype=np.float32) * 255.0), 0, 255).astype(np.uint8)


# --- Quaternions (all arrays are x, y, z, w) ---------------------------------

def normalize_quaternions(q) -> np.ndarray:
    q = np.asarray(q, dtype=np.float32)
    norms = np.linalg.norm(q, axis=-1, keepdims=True)
    return np.where(norms > 0, q / np.where(norms > 0, norms, 1.0), q).astype(np.float32)


def unpack_smallest_three(raw: np.ndarray) -> np.ndarray:
    """
    Decode 4-byte smallest-three quaternions.

    The little-endian u32 holds three 10-bit two's complement components
    (bits 0-29, in x, y, z, w order with the largest one skipped) and the
    index of the dropped component in the top two bits.

    Args:
        raw: (N, 4) uint8 array

    Returns:
        (N, 4) float32 quaternions, x, y, z, w
    """
    raw = np.asarray(raw, dtype=np.uint8).reshape(-1, 4).astype(np.uint32)
    packed = raw[:, 0] | (raw[:, 1] << 8) | (raw[:, 2] << 16) | (raw[:, 3] << 24)
    largest = (packed >> 30).astype(np.int64)

    fields = np.stack([(packed >> shift) & 0x3FF for shift in (0, 10, 20)], axis=1).astype(np.int32)
    fields = np.where(fields >= 512, fields - 1024, fields)
    small = fields.astype(np.float32) * (SQRT1_2 / 511.0)

    n = len(packed)
    q = np.zeros((n, 4), dtype=np.float32)
    # Column j of ``small`` goes to component j when j < largest, else j + 1
    targets = np.arange(3)[None, :] + (np.arange(3)[None, :] >= largest[:, None])
    rows = np.repeat(np.arange(n), 3)
    q[rows, targets.ravel()] = small.ravel()

    dropped = np.sqrt(np.maximum(0.0, 1.0 - np.sum(small * small, axis=1)))
    q[np.arange(n), largest] = dropped
    return q


def pack_smallest_three(q) -> np.ndarray:
    """Encode (N, 4) x, y, z, w quaternions into 4-byte smallest-three form."""
    q = normalize_quaternions(np.asarray(q, dtype=np.float32).reshape(-1, 4))
    n = len(q)
    largest = np.argmax(np.abs(q), axis=1)
    flip = q[np.arange(n), largest] < 0
    q = np.where(flip[:, None], -q, q)

    keep = np.ones((n, 4), dtype=bool)
    keep[np.arange(n), largest] = False
    small = q[keep].reshape(n, 3)

    ints = np.clip(np.round(small / SQRT1_2 * 511.0), -511, 511).astype(np.int64) & 0x3FF
    packed = (ints[:, 0] | (ints[:, 1] << 10) | (ints[:, 2] << 20)
              | (largest.astype(np.int64) << 30)).astype(np.uint32)
    return packed.astype('<u4').view(np.uint8).reshape(n, 4)


def unpack_first_three(raw: np.ndarray) -> np.ndarray:
    """Decode 3-byte quaternions (x, y, z stored, w >= 0 reconstructed)."""
    raw = np.asarray(raw, dtype=np.uint8).reshape(-1, 3)
    xyz = raw.astype(np.float32) / 127.5 - 1.0
    w = np.sqrt(np.maximum(0.0, 1.0 - np.sum(xyz * xyz, axis=1)))
    return np.concatenate([xyz, w[:, None]], axis=1).astype(np.float32)


def pack_first_three(q) -> np.ndarray:
    q = normalize_quaternions(np.asarray(q, dtype=np.float32).reshape(-1, 4))
    q = np.where(q[:, 3:4] < 0, -q, q)
    return np.clip(np.round((q[:, :3] + 1.0) * 127.5), 0, 255).astype(np.uint8)


def unpack_chunk_rotation(packed) -> np.ndarray:
    """Decode u32 ``idx<<30 | a<<20 | b<<10 | c`` rotations into x, y, z, w."""
    packed = np.asarray(packed, dtype=np.uint32).ravel()
    largest = (packed >> 30).astype(np.int64)
    small = np.stack([(packed >> shift) & 0x3FF for shift in (20, 10, 0)], axis=1)
    small = (small.astype(np.float32) / 1023.0 * 2.0 - 1.0) * _CHUNK_ROTATION_NORM

    n = len(packed)
    q = np.zeros((n, 4), dtype=np.float32)
    targets = np.arange(3)[None, :] + (np.arange(3)[None, :] >= largest[:, None])
    q[np.repeat(np.arange(n), 3), targets.ravel()] = small.ravel()
    q[np.arange(n), largest] = np.sqrt(np.maximum(0.0, 1.0 - np.sum(small * small, axis=1)))
    return q


def pack_chunk_rotation(q) -> np.ndarray:
    q = normalize_quaternions(np.asarray(q, dtype=np.float32).reshape(-1, 4))
    n = len(q)
    largest = np.argmax(np.abs(q), axis=1)
    sign = np.where(q[np.arange(n), largest] < 0, -1.0, 1.0).astype(np.float32)
    keep = np.ones((n, 4), dtype=bool)
    keep[np.arange(n), largest] = False
    small = q[keep].reshape(n, 3) * sign[:, None]
    t = np.clip((small / _CHUNK_ROTATION_NORM + 1.0) * 0.5, 0.0, 1.0)
    ints = np.round(t * 1023.0).astype(np.uint32)
    return ((largest.astype(np.uint32) << 30) | (ints[:, 0] << 20)
            | (ints[:, 1] << 10) | ints[:, 2]).astype(np.uint32)


# --- 11/10/11 bit packing --------------------------------------------------

def pack_11_10_11(t) -> np.ndarray:
    """Pack (N, 3) values in [0, 1] into u32 ``x<<21 | y<<11 | z``."""
    t = np.clip(np.asarray(t, dtype=np.float32).reshape(-1, 3), 0.0, 1.0)
    x = np.round(t[:, 0] * _BITS_11).astype(np.uint32)
    y = np.round(t[:, 1] * _BITS_10).astype(np.uint32)
    z = np.round(t[:, 2] * _BITS_11).astype(np.uint32)
    return ((x << 21) | (y << 11) | z).astype(np.uint32)


def unpack_11_10_11(packed) -> np.ndarray:
    packed = np.asarray(packed, dtype=np.uint32).ravel()
    x = (packed >> 21) & _BITS_11
    y = (packed >> 11) & _BITS_10
    z = packed & _BITS_11
    return np.stack([x / _BITS_11, y / _BITS_10, z / _BITS_11], axis=1).astype(np.float32)


def pack_chunk_position(positions, lo, hi) -> np.ndarray:
    lo = np.asarray(lo, dtype=np.float32)
    extent = np.maximum(np.asarray(hi, dtype=np.float32) - lo, 1e-4)
    return pack_11_10_11((np.asarray(positions, dtype=np.float32) - lo) / extent)


def unpack_chunk_position(packed, lo, hi) -> np.ndarray:
    return lerp(lo, hi, unpack_11_10_11(packed))


def pack_chunk_scale(scales, log_lo, log_hi) -> np.ndarray:
    """Quantize linear scales in log space between per-chunk log bounds."""
    logs = np.log(np.maximum(np.asarray(scales, dtype=np.float32), 1e-4))
    log_lo = np.asarray(log_lo, dtype=np.float32)
    extent = np.maximum(np.asarray(log_hi, dtype=np.float32) - log_lo, 1e-4)
    return pack_11_10_11((logs - log_lo) / extent)


def unpack_chunk_scale(packed, log_lo, log_hi) -> np.ndarray:
    return np.exp(lerp(log_lo, log_hi, unpack_11_10_11(packed))).astype(np.float32)


def pack_rgba8(rgba) -> np.ndarray:
    """Pack (N, 4) uint8 RGBA into u32 with red in the top byte."""
    c = np.asarray(rgba, dtype=np.uint32).reshape(-1, 4)
    return ((c[:, 0] << 24) | (c[:, 1] << 16) | (c[:, 2] << 8) | c[:, 3]).astype(np.uint32)


def unpack_rgba8(packed) -> np.ndarray:
    packed = np.asarray(packed, dtype=np.uint32).ravel()
    return np.stack([(packed >> s) & 0xFF for s in (24, 16, 8, 0)], axis=1).astype(np.uint8)


# --- Codebooks -----------------------------------------------------------------

CODEBOOK_SIZE = 256


def make_codebook(entries: Optional[Sequence[Optional[float]]]) -> np.ndarray:
    """
    Build a 256-entry float32 lookup table.

    Null entries and entries past the end of ``entries`` decode as 0.0.
    """
    table = np.zeros(CODEBOOK_SIZE, dtype=np.float32)
    if entries is None:
        return table
    for i, value in enumerate(list(entries)[:CODEBOOK_SIZE]):
        if value is not None:
            table[i] = float(value)
    return table


def codebook_lookup(codebook: np.ndarray, indices) -> np.ndarray:
    return np.asarray(codebook, dtype=np.float32)[np.asarray(indices, dtype=np.uint8)]


def range_pair(mins, maxs, count: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Broadcast SOGS ``mins``/``maxs`` (scalar or list) to ``count`` channels.

    Missing channels repeat the last available value.
    """
    def expand(values):
        arr = np.atleast_1d(np.asarray(values, dtype=np.float32))
        if len(arr) >= count:
            return arr[:count]
        return np.concatenate([arr, np.repeat(arr[-1:], count - len(arr))])

    return expand(mins), expand(maxs)
