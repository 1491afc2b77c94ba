# ABOUTME: SOGS v2 decoder: codebook-quantized texture planes described by a versioned meta.json
# ABOUTME: Reads loose files, single-file .sog bundles and .zip archives through the shared texture sources

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import ReaderConfig
from ..decode_cache import DecodeCache
from ..errors import InvalidMetadataError, ResourceMissingError
from ..parallel import run_ranges
from ..quantization import (
    CODEBOOK_SIZE, SH_C0, codebook_lookup, lerp, make_codebook, range_pair, sigmoid,
)
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind
from ..texture import TexturePlane
from ..utils.logging_utils import get_logger
from .sogs_common import decode_means, decode_quats, decode_sh_palette, load_textures_cached

logger = get_logger('sogs.v2')

SOGS_V2_VERSION = 2

# Non-DC coefficients per palette entry for each SH band count
BAND_COEFFS = {1: 3, 2: 8, 3: 15}


@dataclass
class V2Attribute:
    files: List[str]
    mins: Optional[List[float]] = None
    maxs: Optional[List[float]] = None
    codebook: Optional[np.ndarray] = None
    codebook_entries: int = 0

    @property
    def has_range(self) -> bool:
        return self.mins is not None and self.maxs is not None

    def range_length(self) -> int:
        if not self.has_range:
            return 0
        return min(len(self.mins), len(self.maxs))

    @property
    def codebook_length(self) -> int:
        return 0 if self.codebook is None else self.codebook_entries


@dataclass
class V2SHAttribute(V2Attribute):
    count: int = 0
    bands: int = 0

    @property
    def coeffs_per_entry(self) -> int:
        return BAND_COEFFS.get(self.bands, 0)

    def file_named(self, fragment: str) -> Optional[str]:
        for name in self.files:
            if fragment in name.lower():
                return name
        return None


@dataclass
class SOGSV2Metadata:
    count: int
    means: V2Attribute
    scales: V2Attribute
    quats: V2Attribute
    sh0: V2Attribute
    sh_n: Optional[V2SHAttribute] = None
    antialias: bool = False
    extras: Dict[str, object] = field(default_factory=dict)

    def texture_names(self) -> List[str]:
        names = self.means.files[:2] + self.scales.files[:1] + self.quats.files[:1] + self.sh0.files[:1]
        if self.sh_n is not None:
            names += [n for n in (self.sh_n.file_named('centroid'), self.sh_n.file_named('label')) if n]
        return names


def _as_float_list(value, label: str) -> Optional[List[float]]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return [float(value)]
    if not isinstance(value, list):
        raise InvalidMetadataError(f"{label} must be a number or list", field=label)
    try:
        return [float(v) for v in value]
    except (TypeError, ValueError) as e:
        raise InvalidMetadataError(f"{label} holds non-numeric values", field=label) from e


def _attribute(meta: dict, key: str, required: bool = True, cls=V2Attribute, **extra):
    entry = meta.get(key)
    if entry is None:
        if required:
            raise InvalidMetadataError(f"SOGS v2 metadata missing '{key}'", field=key)
        return None
    if not isinstance(entry, dict):
        raise InvalidMetadataError(f"SOGS v2 '{key}' must be an object", field=key)
    files = entry.get('files') or []
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        raise InvalidMetadataError(f"SOGS v2 '{key}.files' must be a list of names", field=key)
    codebook = entry.get('codebook')
    return cls(
        files=list(files),
        mins=_as_float_list(entry.get('mins'), f"{key}.mins"),
        maxs=_as_float_list(entry.get('maxs'), f"{key}.maxs"),
        codebook=make_codebook(codebook) if codebook is not None else None,
        codebook_entries=len(codebook) if isinstance(codebook, list) else 0,
        **extra,
    )


def parse_metadata(meta: dict) -> SOGSV2Metadata:
    """
    Validate and parse a version 2 meta.json document.

    Raises:
        InvalidMetadataError: wrong version, missing count or attribute,
            or a means entry without exactly 3 mins/maxs and 2 files
    """
    if meta.get('version') != SOGS_V2_VERSION:
        raise InvalidMetadataError(f"Expected SOGS version 2, got {meta.get('version')!r}",
                                   field='version')
    count = meta.get('count')
    if not isinstance(count, int) or isinstance(count, bool) or count < 0:
        raise InvalidMetadataError(f"SOGS v2 'count' must be a non-negative integer, got {count!r}",
                                   field='count')

    means = _attribute(meta, 'means')
    if (means.mins is None or means.maxs is None
            or len(means.mins) != 3 or len(means.maxs) != 3):
        raise InvalidMetadataError("SOGS v2 means needs exactly 3 mins and 3 maxs", field='means')
    if len(means.files) != 2:
        raise InvalidMetadataError(f"SOGS v2 means needs 2 files, got {len(means.files)}",
                                   field='means')

    sh_n = None
    raw_sh = meta.get('shN')
    if isinstance(raw_sh, dict):
        sh_n = _attribute(meta, 'shN', cls=V2SHAttribute,
                          count=int(raw_sh.get('count') or 0),
                          bands=int(raw_sh.get('bands') or 0))

    metadata = SOGSV2Metadata(
        count=count,
        means=means,
        scales=_attribute(meta, 'scales'),
        quats=_attribute(meta, 'quats'),
        sh0=_attribute(meta, 'sh0'),
        sh_n=sh_n,
        antialias=bool(meta.get('antialias', False)),
        extras={k: v for k, v in meta.items()
                if k not in ('version', 'count', 'antialias', 'means', 'scales', 'quats', 'sh0', 'shN')},
    )
    for key in ('scales', 'quats', 'sh0'):
        if not getattr(metadata, key).files:
            raise ResourceMissingError(key, f"SOGS v2 '{key}' lists no texture files")
    return metadata


def validate_textures(metadata: SOGSV2Metadata, textures: Dict[str, TexturePlane]) -> None:
    """
    Check texture dimensions and the quantization tables against the count.

    Raises:
        InvalidMetadataError: on any mismatch
    """
    reference = textures[metadata.means.files[0]]
    for name in metadata.means.files[1:] + metadata.scales.files[:1] + \
            metadata.quats.files[:1] + metadata.sh0.files[:1]:
        plane = textures[name]
        if plane.shape != reference.shape:
            raise InvalidMetadataError(
                f"Texture {name} is {plane.width}x{plane.height}, expected "
                f"{reference.width}x{reference.height}")
    if metadata.count > reference.capacity:
        raise InvalidMetadataError(
            f"SOGS v2 count {metadata.count} exceeds texture capacity {reference.capacity}",
            field='count')
    if metadata.means.range_length() != 3:
        raise InvalidMetadataError("SOGS v2 means range must have 3 channels", field='means')
    if metadata.scales.range_length() < 3 and metadata.scales.codebook_length < CODEBOOK_SIZE:
        raise InvalidMetadataError("SOGS v2 scales need a 3-channel range or a 256-entry codebook",
                                   field='scales')
    if metadata.sh0.range_length() < 4 and metadata.sh0.codebook_length < CODEBOOK_SIZE:
        raise InvalidMetadataError("SOGS v2 sh0 needs a 4-channel range or a 256-entry codebook",
                                   field='sh0')


def usable_sh(metadata: SOGSV2Metadata, textures: Dict[str, TexturePlane]) -> Optional[Tuple[str, str]]:
    """
    Return the (centroids, labels) texture names when SH data is consistent.

    Any inconsistency disables SH with a warning rather than failing the read.
    """
    sh_n = metadata.sh_n
    if sh_n is None:
        return None

    def disable(reason: str):
        logger.warning(f"Disabling SOGS v2 spherical harmonics: {reason}")
        return None

    if sh_n.bands not in BAND_COEFFS or sh_n.count <= 0:
        return disable(f"bands={sh_n.bands}, count={sh_n.count}")
    if not sh_n.has_range and sh_n.codebook is None:
        return disable("no range or codebook")
    centroid_name = sh_n.file_named('centroid')
    label_name = sh_n.file_named('label')
    if centroid_name is None or label_name is None:
        return disable("centroid or label texture not listed")

    reference = textures[metadata.means.files[0]]
    labels = textures[label_name]
    centroids = textures[centroid_name]
    if labels.shape != reference.shape:
        return disable(f"labels are {labels.width}x{labels.height}, expected "
                       f"{reference.width}x{reference.height}")
    if centroids.width % 64 or centroids.width != sh_n.coeffs_per_entry * 64:
        return disable(f"centroid width {centroids.width} does not match {sh_n.bands} bands")
    if centroids.height < math.ceil(sh_n.count / 64):
        return disable(f"centroid height {centroids.height} too small for {sh_n.count} entries")
    return centroid_name, label_name


def _lookup(raw: np.ndarray, attribute: V2Attribute) -> np.ndarray:
    """Codebook lookup per channel, falling back to the attribute's range."""
    if attribute.codebook is not None:
        return codebook_lookup(attribute.codebook, raw)
    lo, hi = range_pair(attribute.mins, attribute.maxs, raw.shape[-1])
    return lerp(lo, hi, raw.astype(np.float32) / 255.0)


def _palette_values(raw: np.ndarray, attribute: V2Attribute) -> np.ndarray:
    """Centroid bytes through the shN range when present, else its codebook, else zero."""
    if attribute.has_range:
        lo, hi = range_pair(attribute.mins, attribute.maxs, 1)
        return lerp(lo[0], hi[0], raw.astype(np.float32) / 255.0)
    if attribute.codebook is not None:
        return codebook_lookup(attribute.codebook, raw)
    return np.zeros(raw.shape, dtype=np.float32)


def decode_v2(meta: dict, source, config: Optional[ReaderConfig] = None,
              cache: Optional[DecodeCache] = None, key=None) -> SplatCloud:
    """
    Decode a SOGS v2 scene.

    Args:
        meta: Parsed meta.json document
        source: Texture source (directory or archive)
        config: Reader options
        cache: Optional shared texture cache
        key: Resource identity used as the cache key
    """
    config = config or ReaderConfig()
    metadata = parse_metadata(meta)
    textures = load_textures_cached(source, metadata.texture_names(), key, cache, config.max_workers)
    validate_textures(metadata, textures)

    sh_names = usable_sh(metadata, textures)
    sh_n = metadata.sh_n
    coeffs = sh_n.coeffs_per_entry if sh_names else 0
    n = metadata.count

    positions = np.empty((n, 3), dtype=np.float32)
    rotations = np.empty((n, 4), dtype=np.float32)
    scales = np.empty((n, 3), dtype=np.float32)
    opacities = np.empty(n, dtype=np.float32)
    colors = np.empty((n, 1 + coeffs, 3), dtype=np.float32) if coeffs else \
        np.empty((n, 3), dtype=np.float32)

    means_lo, means_hi = (textures[f] for f in metadata.means.files[:2])
    scale_plane = textures[metadata.scales.files[0]]
    quat_plane = textures[metadata.quats.files[0]]
    sh0_plane = textures[metadata.sh0.files[0]]
    sh0 = metadata.sh0

    def decode_range(start: int, stop: int):
        positions[start:stop] = decode_means(means_lo, means_hi, start, stop,
                                             metadata.means.mins, metadata.means.maxs)
        rotations[start:stop] = decode_quats(quat_plane, start, stop)
        scales[start:stop] = _lookup(scale_plane.sample_range(start, stop)[:, :3], metadata.scales)

        texels = sh0_plane.sample_range(start, stop)
        dc = _lookup(texels[:, :3], sh0)
        alpha = texels[:, 3].astype(np.float32) / 255.0
        if sh0.range_length() >= 4:
            lo, hi = range_pair(sh0.mins, sh0.maxs, 4)
            alpha = lerp(lo[3], hi[3], alpha)
        opacities[start:stop] = sigmoid(alpha)

        if coeffs:
            centroid_name, label_name = sh_names
            colors[start:stop, 0, :] = dc
            colors[start:stop, 1:, :] = decode_sh_palette(
                textures[label_name], textures[centroid_name], start, stop,
                coeffs, sh_n.count, lambda raw: _palette_values(raw, sh_n))
        else:
            colors[start:stop] = np.clip(0.5 + dc * SH_C0, 0.0, 1.0)

    run_ranges(n, decode_range, config.max_workers)
    logger.debug(f"Decoded SOGS v2: {n} points, "
                 f"{'SH bands ' + str(sh_n.bands) if coeffs else 'no SH'}")

    return SplatCloud(
        positions=positions,
        rotations=rotations,
        scales=scales,
        opacities=opacities,
        colors=colors,
        scale_kind=ScaleKind.EXPONENT,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=ColorKind.SPHERICAL_HARMONIC if coeffs else ColorKind.LINEAR_FLOAT,
    )

