# ABOUTME: Shared plumbing for SOGS readers: texture sources (directory or ZIP bundle) and cached loading
# ABOUTME: Also holds the attribute decoders common to v1 and v2 (means, quaternions, SH palettes)

import json
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, Optional, Tuple

import numpy as np

from ..decode_cache import DecodeCache
from ..errors import DecompressionError, InvalidMetadataError, ResourceMissingError
from ..quantization import lerp, sign_preserving_expm1
from ..texture import TexturePlane, decode_image
from ..utils.logging_utils import get_logger, Timer

logger = get_logger('sogs')

META_FILENAME = 'meta.json'
BUNDLE_SUFFIXES = ('.sog', '.zip')

QUAT_NORM = np.float32(np.sqrt(2.0))


class DirectorySource:
    """Textures stored as sibling files of meta.json."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def __repr__(self):
        return f"DirectorySource({self.directory})"

    def read_bytes(self, name: str) -> bytes:
        path = self.directory / name
        if not path.is_file():
            raise ResourceMissingError(path, f"SOGS texture not found: {path}")
        return path.read_bytes()

    def close(self):
        pass


class ZipSource:
    """
    Textures and metadata stored inside a ``.sog`` or ``.zip`` archive.

    Entries are matched by exact name first, then by basename, so bundles
    that nest files in a folder still resolve.
    """

    def __init__(self, path):
        self.path = Path(path)
        try:
            self._zip = zipfile.ZipFile(self.path)
        except (zipfile.BadZipFile, OSError) as e:
            raise DecompressionError(f"Cannot open SOGS archive {self.path}: {e}") from e
        self._lock = threading.Lock()
        self._names = [n for n in self._zip.namelist() if not n.endswith('/')]
        self._by_basename = {PurePosixPath(n).name: n for n in self._names}

    def __repr__(self):
        return f"ZipSource({self.path})"

    @property
    def names(self):
        return list(self._names)

    def resolve(self, name: str) -> Optional[str]:
        if name in self._names:
            return name
        return self._by_basename.get(PurePosixPath(name).name)

    def find_meta(self) -> str:
        for name in self._names:
            if name.endswith(META_FILENAME):
                return name
        raise ResourceMissingError(self.path, f"No {META_FILENAME} in archive {self.path}")

    def read_bytes(self, name: str) -> bytes:
        entry = self.resolve(name)
        if entry is None:
            raise ResourceMissingError(name, f"SOGS archive entry not found: {name}")
        with self._lock:
            try:
                return self._zip.read(entry)
            except (zipfile.BadZipFile, OSError, EOFError) as e:
                raise DecompressionError(f"Cannot read archive entry {entry}: {e}") from e

    def close(self):
        self._zip.close()


def parse_meta(text, origin) -> dict:
    try:
        meta = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidMetadataError(f"Invalid SOGS metadata in {origin}: {e}") from e
    if not isinstance(meta, dict):
        raise InvalidMetadataError(f"SOGS metadata in {origin} is not a JSON object")
    return meta


def open_source(path) -> Tuple[object, dict]:
    """
    Open a SOGS scene given its meta.json, ``.sog`` bundle or ``.zip`` archive.

    Returns:
        Tuple of (texture source, parsed metadata)
    """
    path = Path(path)
    if not path.exists():
        raise ResourceMissingError(path)
    if path.suffix.lower() in BUNDLE_SUFFIXES:
        source = ZipSource(path)
        try:
            meta = parse_meta(source.read_bytes(source.find_meta()), path)
        except Exception:
            source.close()
            raise
        return source, meta
    return DirectorySource(path.parent), parse_meta(path.read_text(), path)


def cache_key(path) -> Tuple[str, int]:
    """Identity of a SOGS resource: resolved path plus modification time."""
    path = Path(path).resolve()
    return str(path), path.stat().st_mtime_ns


def load_textures(source, names: Iterable[str], max_workers: int = 4) -> Dict[str, TexturePlane]:
    """Decode the named textures concurrently. Missing files raise ResourceMissingError."""
    names = list(dict.fromkeys(names))

    def load(name: str) -> TexturePlane:
        return decode_image(source.read_bytes(name), name)

    with Timer(f"Loading {len(names)} SOGS textures", logger):
        if len(names) <= 1 or max_workers <= 1:
            planes = [load(name) for name in names]
        else:
            with ThreadPoolExecutor(max_workers=min(max_workers, len(names)),
                                    thread_name_prefix='splatio-texture') as pool:
                planes = list(pool.map(load, names))
    return dict(zip(names, planes))


def load_textures_cached(source, names, key, cache: Optional[DecodeCache],
                         max_workers: int = 4) -> Dict[str, TexturePlane]:
    names = tuple(dict.fromkeys(names))
    if cache is None:
        return load_textures(source, names, max_workers)
    return cache.get_or_load((key, names), lambda: load_textures(source, names, max_workers))


# --- Attribute decoders -------------------------------------------------------

def decode_means(lower: TexturePlane, upper: TexturePlane, start: int, stop: int,
                 mins, maxs) -> np.ndarray:
    """16-bit positions split across two planes, then the inverse log transform."""
    lo = lower.sample_range(start, stop)[:, :3].astype(np.uint32)
    hi = upper.sample_range(start, stop)[:, :3].astype(np.uint32)
    words = (hi << 8) | lo
    normalized = lerp(mins, maxs, words.astype(np.float32) / 65535.0)
    return sign_preserving_expm1(normalized)


# Component order (x, y, z, w) for each mode, indexing into (a, b, c, d)
_QUAT_LAYOUTS = {
    0: (0, 1, 2, 3),
    1: (3, 1, 2, 0),
    2: (1, 3, 2, 0),
    3: (1, 2, 3, 0),
}


def decode_quats(plane: TexturePlane, start: int, stop: int) -> np.ndarray:
    """
    Smallest-three quaternions from an RGBA plane.

    RGB hold three components over ±1/√2; alpha - 252 selects where the
    reconstructed component goes.
    """
    texels = plane.sample_range(start, stop)
    abc = (texels[:, :3].astype(np.float32) / 255.0 - 0.5) * QUAT_NORM
    d = np.sqrt(np.maximum(0.0, 1.0 - np.sum(abc * abc, axis=1)))
    components = np.concatenate([abc, d[:, None]], axis=1)

    modes = texels[:, 3].astype(np.int32) - 252
    result = components.copy()
    for mode, layout in _QUAT_LAYOUTS.items():
        mask = modes == mode
        if np.any(mask):
            result[mask] = components[mask][:, list(layout)]
    return result.astype(np.float32)


def decode_sh_palette(labels: TexturePlane, centroids: TexturePlane, start: int, stop: int,
                      coeffs_per_entry: int, palette_size: int,
                      value_fn: Callable[[np.ndarray], np.ndarray]) -> np.ndarray:
    """
    Look up per-splat SH coefficients in a centroid palette.

    Each splat's label (R + G * 256 of the labels plane) selects palette row
    ``label``, stored at texel ``((label % 64) * coeffs, label // 64)``.
    Labels outside the palette produce zero coefficients.

    Args:
        value_fn: maps raw centroid bytes to coefficient values

    Returns:
        (stop - start, coeffs_per_entry, 3) float32 array
    """
    texels = labels.sample_range(start, stop).astype(np.int64)
    label = texels[:, 0] | (texels[:, 1] << 8)
    valid = label < palette_size

    coefficients = np.zeros((stop - start, coeffs_per_entry, 3), dtype=np.float32)
    if not np.any(valid):
        return coefficients

    idx = label[valid]
    u = (idx % 64)[:, None] * coeffs_per_entry + np.arange(coeffs_per_entry)[None, :]
    v = np.repeat((idx // 64)[:, None], coeffs_per_entry, axis=1)
    in_bounds = (u < centroids.width) & (v < centroids.height)
    raw = np.zeros(u.shape + (3,), dtype=np.uint8)
    raw[in_bounds] = centroids.pixels[v[in_bounds], u[in_bounds], :3]
    values = value_fn(raw)
    values[~in_bounds] = 0.0
    coefficients[valid] = values
    return coefficients
