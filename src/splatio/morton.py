# ABOUTME: Morton (Z-order) spatial reordering of splats for memory locality
# ABOUTME: 30-bit codes from 10-bit quantized positions, radix sorted, with optional recursive bucket refinement

import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import DEFAULT_BUCKET_THRESHOLD
from .splat_cloud import SplatCloud
from .splat_point import SplatPoint
from .utils.logging_utils import get_logger

logger = get_logger('morton')

QUANTIZATION_MAX = 1023
RADIX_SORT_THRESHOLD = 1000

Bounds = Tuple[np.ndarray, np.ndarray]


def compute_bounds(positions) -> Bounds:
    """Axis-aligned (min, max) of an (N, 3) position array; zeros when empty."""
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    if len(positions) == 0:
        return np.zeros(3, dtype=np.float32), np.zeros(3, dtype=np.float32)
    return positions.min(axis=0), positions.max(axis=0)


def expand_bits(v) -> np.ndarray:
    """Spread the low 10 bits of each value so two zero bits follow every bit."""
    x = np.asarray(v, dtype=np.uint32) & np.uint32(0x3FF)
    x = (x | (x << np.uint32(16))) & np.uint32(0x030000FF)
    x = (x | (x << np.uint32(8))) & np.uint32(0x0300F00F)
    x = (x | (x << np.uint32(4))) & np.uint32(0x030C30C3)
    x = (x | (x << np.uint32(2))) & np.uint32(0x09249249)
    return x


def encode(x, y, z) -> np.ndarray:
    return expand_bits(x) | (expand_bits(y) << np.uint32(1)) | (expand_bits(z) << np.uint32(2))


def morton_codes(positions, bounds: Optional[Bounds] = None) -> np.ndarray:
    """
    Compute 30-bit Morton codes.

    Positions are normalized into ``bounds`` (computed when omitted) and
    quantized to 10 bits per axis. A zero-extent axis quantizes to 0.
    """
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    if len(positions) == 0:
        return np.zeros(0, dtype=np.uint32)
    lo, hi = bounds if bounds is not None else compute_bounds(positions)
    size = np.asarray(hi, dtype=np.float32) - np.asarray(lo, dtype=np.float32)
    inv_size = np.where(size > 0, 1.0 / np.where(size > 0, size, 1.0), 0.0).astype(np.float32)

    normalized = (positions - lo) * inv_size
    quantized = np.clip(normalized * QUANTIZATION_MAX, 0, QUANTIZATION_MAX).astype(np.uint32)
    return encode(quantized[:, 0], quantized[:, 1], quantized[:, 2])


def radix_sort_indices(codes) -> np.ndarray:
    """Stable LSD radix sort of u32 keys in four 8-bit passes; returns the permutation."""
    codes = np.asarray(codes, dtype=np.uint32)
    order = np.arange(len(codes), dtype=np.int64)
    for shift in (0, 8, 16, 24):
        digits = (codes[order] >> np.uint32(shift)) & np.uint32(0xFF)
        counts = np.bincount(digits, minlength=256)
        starts = np.concatenate([[0], np.cumsum(counts)[:-1]])
        # Rank of each element among equal digits, preserving current order
        by_digit = np.argsort(digits, kind='stable')
        ranks = np.empty(len(order), dtype=np.int64)
        ranks[by_digit] = np.arange(len(order)) - starts[digits[by_digit]]
        placed = np.empty_like(order)
        placed[starts[digits] + ranks] = order
        order = placed
    return order


def sort_indices(codes) -> np.ndarray:
    """Stable permutation that sorts ``codes`` ascending."""
    codes = np.asarray(codes, dtype=np.uint32)
    if len(codes) < RADIX_SORT_THRESHOLD:
        return np.argsort(codes, kind='stable')
    return radix_sort_indices(codes)


def reorder_indices(positions, recursive: bool = False,
                    bucket_threshold: int = DEFAULT_BUCKET_THRESHOLD) -> np.ndarray:
    """
    Permutation that orders ``positions`` along the Z-order curve.

    With ``recursive`` set, runs of equal codes longer than
    ``bucket_threshold`` are re-sorted using their own bounds.
    """
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    indices = np.arange(len(positions), dtype=np.int64)
    if len(positions) <= 1:
        return indices
    if recursive:
        return _refine(positions, indices, bucket_threshold)
    return sort_indices(morton_codes(positions))


def _refine(positions: np.ndarray, indices: np.ndarray, bucket_threshold: int) -> np.ndarray:
    subset = positions[indices]
    lo, hi = compute_bounds(subset)
    if np.all(hi - lo == 0):
        return indices

    codes = morton_codes(subset, (lo, hi))
    if np.all(codes == codes[0]):
        return indices

    order = sort_indices(codes)
    result = indices[order]
    sorted_codes = codes[order]

    # Boundaries of runs of equal codes
    breaks = np.flatnonzero(np.diff(sorted_codes)) + 1
    starts = np.concatenate([[0], breaks])
    ends = np.concatenate([breaks, [len(sorted_codes)]])
    for start, end in zip(starts, ends):
        if end - start > bucket_threshold:
            result[start:end] = _refine(positions, result[start:end], bucket_threshold)
    return result


def reorder(points: Sequence[SplatPoint], recursive: bool = False,
            bucket_threshold: int = DEFAULT_BUCKET_THRESHOLD) -> List[SplatPoint]:
    """Return a new list of the same points in Morton order."""
    if len(points) <= 1:
        return list(points)
    positions = np.stack([p.position for p in points])
    return [points[i] for i in reorder_indices(positions, recursive, bucket_threshold)]


def reorder_cloud(cloud: SplatCloud, recursive: bool = False,
                  bucket_threshold: int = DEFAULT_BUCKET_THRESHOLD) -> SplatCloud:
    """Return a reordered copy of ``cloud``."""
    return cloud.subset(reorder_indices(cloud.positions, recursive, bucket_threshold))


@dataclass
class MortonStatistics:
    point_count: int
    unique_codes: int
    largest_bucket: int
    bounds_min: np.ndarray
    bounds_max: np.ndarray
    diagonal_length: float
    compute_seconds: float

    @property
    def unique_ratio(self) -> float:
        return self.unique_codes / self.point_count if self.point_count else 0.0


def compute_statistics(positions) -> MortonStatistics:
    """Distribution of Morton codes for a set of positions."""
    start = time.perf_counter()
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    lo, hi = compute_bounds(positions)
    codes = morton_codes(positions, (lo, hi))
    _, counts = np.unique(codes, return_counts=True)
    elapsed = time.perf_counter() - start

    stats = MortonStatistics(
        point_count=len(positions),
        unique_codes=len(counts),
        largest_bucket=int(counts.max()) if len(counts) else 0,
        bounds_min=lo,
        bounds_max=hi,
        diagonal_length=float(np.linalg.norm(hi - lo)),
        compute_seconds=elapsed,
    )
    logger.debug(f"Morton statistics: {stats.unique_codes}/{stats.point_count} unique codes, "
                 f"largest bucket {stats.largest_bucket}")
    return stats
