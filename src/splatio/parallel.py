# ABOUTME: Index-range fan-out over a thread pool for per-point decoding
# ABOUTME: Workers write into disjoint slots of pre-sized outputs, so order never depends on completion

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Tuple

MIN_RANGE_SIZE = 65536


def split_ranges(count: int, parts: int, min_size: int = MIN_RANGE_SIZE) -> List[Tuple[int, int]]:
    """Split [0, count) into at most ``parts`` contiguous ranges of at least ``min_size``."""
    if count <= 0:
        return []
    parts = max(1, min(parts, (count + min_size - 1) // min_size))
    step = (count + parts - 1) // parts
    return [(start, min(start + step, count)) for start in range(0, count, step)]


def run_ranges(count: int, decode_range: Callable[[int, int], None], max_workers: int = 4,
               min_size: int = MIN_RANGE_SIZE) -> None:
    """
    Call ``decode_range(start, stop)`` over [0, count), in parallel when large.

    The first exception raised by any worker is re-raised here.
    """
    ranges = split_ranges(count, max_workers, min_size)
    if len(ranges) <= 1:
        for start, stop in ranges:
            decode_range(start, stop)
        return

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='splatio-decode') as pool:
        futures = [pool.submit(decode_range, start, stop) for start, stop in ranges]
        for future in futures:
            future.result()
