# ABOUTME: SOGS reader: meta.json plus WebP texture planes (v1), routing version 2 documents to sogs_v2
# ABOUTME: Accepts a meta.json path, a .sog bundle or a .zip archive

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from ..config import ReaderConfig
from ..decode_cache import DecodeCache
from ..errors import InvalidMetadataError, ResourceMissingError
from ..quantization import SH_C0, lerp, range_pair, sigmoid
from ..reader import SceneReader
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind
from ..texture import TexturePlane
from ..utils.logging_utils import get_logger
from .sogs_common import (
    cache_key, decode_means, decode_quats, decode_sh_palette,
    load_textures_cached, open_source,
)
from .sogs_v2 import SOGS_V2_VERSION, decode_v2

logger = get_logger('sogs')

REQUIRED_ATTRIBUTES = ('means', 'scales', 'quats', 'sh0')
MIN_FILES = {'means': 2, 'scales': 1, 'quats': 1, 'sh0': 1}

# Centroid texture width for each SH band count; rows are always 15 texels per entry
CENTROID_WIDTH_BANDS = {192: 1, 512: 2, 960: 3}
PALETTE_ENTRY_TEXELS = 15


@dataclass
class SOGSAttribute:
    """One attribute entry of a v1 meta.json."""
    shape: List[int]
    dtype: str
    files: List[str]
    mins: object = 0.0
    maxs: object = 1.0
    encoding: Optional[str] = None
    quantization: Optional[int] = None

    @classmethod
    def from_json(cls, key: str, entry) -> 'SOGSAttribute':
        if not isinstance(entry, dict):
            raise InvalidMetadataError(f"SOGS attribute '{key}' must be an object", field=key)
        files = entry.get('files') or []
        if not isinstance(files, list):
            raise InvalidMetadataError(f"SOGS '{key}.files' must be a list", field=key)
        return cls(
            shape=list(entry.get('shape') or []),
            dtype=str(entry.get('dtype', 'float32')),
            files=[str(f) for f in files],
            mins=entry.get('mins', 0.0),
            maxs=entry.get('maxs', 1.0),
            encoding=entry.get('encoding'),
            quantization=entry.get('quantization'),
        )


@dataclass
class SOGSMetadata:
    means: SOGSAttribute
    scales: SOGSAttribute
    quats: SOGSAttribute
    sh0: SOGSAttribute
    sh_n: Optional[SOGSAttribute] = None

    @property
    def count(self) -> int:
        return int(self.means.shape[0]) if self.means.shape else 0

    @classmethod
    def from_json(cls, meta: dict) -> 'SOGSMetadata':
        """
        Parse a v1 meta.json document.

        Raises:
            InvalidMetadataError: a required attribute is absent or malformed
            ResourceMissingError: an attribute lists too few texture files
        """
        attributes = {}
        for key in REQUIRED_ATTRIBUTES:
            if key not in meta:
                raise InvalidMetadataError(f"SOGS metadata missing '{key}'", field=key)
            attribute = SOGSAttribute.from_json(key, meta[key])
            if len(attribute.files) < MIN_FILES[key]:
                raise ResourceMissingError(
                    key, f"SOGS '{key}' needs {MIN_FILES[key]} texture file(s), "
                         f"got {len(attribute.files)}")
            attributes[key] = attribute

        sh_n = None
        if meta.get('shN') is not None:
            sh_n = SOGSAttribute.from_json('shN', meta['shN'])
            if len(sh_n.files) < 2:
                raise ResourceMissingError('shN', "SOGS 'shN' needs centroid and label files")
        metadata = cls(sh_n=sh_n, **attributes)
        if not metadata.means.shape:
            raise InvalidMetadataError("SOGS means has no shape", field='means')
        return metadata

    def texture_names(self) -> List[str]:
        names = self.means.files[:2] + self.scales.files[:1] + self.quats.files[:1] + self.sh0.files[:1]
        if self.sh_n is not None:
            names += self.sh_n.files[:2]
        return names


def decode_v1(meta: dict, source, config: Optional[ReaderConfig] = None,
              cache: Optional[DecodeCache] = None, key=None) -> SplatCloud:
    """
    Decode a SOGS v1 scene.

    Colors come out as SH when an shN palette with 1-3 bands is present,
    otherwise as clamped linear floats.
    """
    config = config or ReaderConfig()
    metadata = SOGSMetadata.from_json(meta)
    textures = load_textures_cached(source, metadata.texture_names(), key, cache, config.max_workers)

    n = metadata.count
    means_lo, means_hi = (textures[f] for f in metadata.means.files[:2])
    _check_capacity(n, [textures[name] for name in metadata.texture_names()[:5]])

    mins, maxs = range_pair(metadata.means.mins, metadata.means.maxs, 3)
    positions = decode_means(means_lo, means_hi, 0, n, mins, maxs)
    rotations = decode_quats(textures[metadata.quats.files[0]], 0, n)

    scale_lo, scale_hi = range_pair(metadata.scales.mins, metadata.scales.maxs, 3)
    scale_bytes = textures[metadata.scales.files[0]].sample_range(0, n)[:, :3]
    scales = lerp(scale_lo, scale_hi, scale_bytes.astype(np.float32) / 255.0)

    sh0_lo, sh0_hi = range_pair(metadata.sh0.mins, metadata.sh0.maxs, 4)
    sh0 = lerp(sh0_lo, sh0_hi, textures[metadata.sh0.files[0]].sample_range(0, n).astype(np.float32) / 255.0)
    opacities = sigmoid(sh0[:, 3])
    dc = sh0[:, :3]

    palette = _decode_palette(metadata, textures, n)
    if palette is None:
        colors = np.clip(0.5 + dc * SH_C0, 0.0, 1.0)
        color_kind = ColorKind.LINEAR_FLOAT
    else:
        colors = np.concatenate([dc[:, None, :], palette], axis=1)
        color_kind = ColorKind.SPHERICAL_HARMONIC

    logger.debug(f"Decoded SOGS v1: {n} points, "
                 f"{'SH palette' if palette is not None else 'no SH'}")
    return SplatCloud(
        positions=positions,
        rotations=rotations,
        scales=scales,
        opacities=opacities,
        colors=colors,
        scale_kind=ScaleKind.EXPONENT,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=color_kind,
    )


def _check_capacity(count: int, planes: List[TexturePlane]) -> None:
    for plane in planes:
        if count > plane.capacity:
            raise InvalidMetadataError(
                f"SOGS count {count} exceeds capacity of texture {plane.name} "
                f"({plane.width}x{plane.height})", field='means')


def _decode_palette(metadata: SOGSMetadata, textures: Dict[str, TexturePlane],
                    n: int) -> Optional[np.ndarray]:
    sh_n = metadata.sh_n
    if sh_n is None:
        return None
    centroids = textures[sh_n.files[0]]
    labels = textures[sh_n.files[1]]
    bands = CENTROID_WIDTH_BANDS.get(centroids.width, 0)
    if bands == 0:
        logger.warning(f"Ignoring SOGS SH palette: unexpected centroid width {centroids.width}")
        return None
    if labels.capacity < n:
        logger.warning(f"Ignoring SOGS SH palette: labels texture too small for {n} points")
        return None

    lo, hi = range_pair(sh_n.mins, sh_n.maxs, 1)
    palette_size = centroids.height * 64
    return decode_sh_palette(
        labels, centroids, 0, n, PALETTE_ENTRY_TEXELS, palette_size,
        lambda raw: lerp(lo[0], hi[0], raw.astype(np.float32) / 255.0))


def decode_sogs(path, config: Optional[ReaderConfig] = None,
                cache: Optional[DecodeCache] = None) -> SplatCloud:
    """
    Decode a SOGS scene from a meta.json, ``.sog`` or ``.zip`` path.

    ``.sog`` bundles are always version 2; other inputs route on the
    document's ``version`` field.
    """
    path = Path(path)
    source, meta = open_source(path)
    key = cache_key(path)
    try:
        if path.suffix.lower() == '.sog' or meta.get('version') == SOGS_V2_VERSION:
            return decode_v2(meta, source, config, cache, key)
        return decode_v1(meta, source, config, cache, key)
    finally:
        source.close()


class SOGSSceneReader(SceneReader):
    """Reads SOGS scenes: meta.json with sibling textures, ``.sog`` bundles and ``.zip`` archives."""

    format_name = 'SOGS'

    def decode_cloud(self) -> SplatCloud:
        return decode_sogs(self.source, self.config, self.cache)
