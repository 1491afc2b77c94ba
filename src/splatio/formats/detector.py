# ABOUTME: Format detection for splat scene files
# ABOUTME: Classifies inputs by extension, probing contents only for .json, .zip and .gz

import json
import zipfile
from enum import Enum
from pathlib import Path

from ..errors import FormatDetectionError
from ..utils.logging_utils import get_logger

logger = get_logger('detector')

SOGS_KEYS = ('means', 'scales', 'quats')


class SplatFormat(Enum):
    PLY = 'ply'
    DOT_SPLAT = 'splat'
    SPZ = 'spz'
    SPX = 'spx'
    GLTF = 'gltf'
    SOGS = 'sogs'
    SOGS_V2_BUNDLE = 'sog'
    SOGS_ZIP = 'sogs-zip'
    CHUNKED = 'cspl'


EXTENSION_FORMATS = {
    '.ply': SplatFormat.PLY,
    '.splat': SplatFormat.DOT_SPLAT,
    '.spz': SplatFormat.SPZ,
    '.spx': SplatFormat.SPX,
    '.gltf': SplatFormat.GLTF,
    '.glb': SplatFormat.GLTF,
    '.sog': SplatFormat.SOGS_V2_BUNDLE,
    '.cspl': SplatFormat.CHUNKED,
}


class FormatDetector:
    """Determines which reader handles a given input file."""

    @staticmethod
    def detect(path) -> SplatFormat:
        """
        Classify a scene file.

        Args:
            path: Path to the scene file

        Returns:
            The detected SplatFormat

        Raises:
            FormatDetectionError: if no format matches
        """
        path = Path(path)
        suffix = path.suffix.lower()

        if suffix in EXTENSION_FORMATS:
            return EXTENSION_FORMATS[suffix]
        if suffix == '.gz':
            if Path(path.stem).suffix.lower() == '.spz':
                return SplatFormat.SPZ
            raise FormatDetectionError(path, "Gzip file is not an .spz.gz scene")
        if suffix == '.zip':
            if FormatDetector.is_sogs_zip(path):
                return SplatFormat.SOGS_ZIP
            raise FormatDetectionError(path, "ZIP archive holds no SOGS meta.json and WebP textures")
        if suffix == '.json':
            if FormatDetector.is_sogs_meta(path):
                return SplatFormat.SOGS
            raise FormatDetectionError(path, "JSON file is not SOGS metadata")
        raise FormatDetectionError(path)

    @staticmethod
    def is_sogs_zip(path: Path) -> bool:
        try:
            with zipfile.ZipFile(path) as archive:
                names = archive.namelist()
        except (zipfile.BadZipFile, OSError) as e:
            logger.debug(f"Not a readable ZIP archive {path}: {e}")
            return False
        has_meta = any(name.endswith('meta.json') for name in names)
        has_webp = any(name.lower().endswith('.webp') for name in names)
        return has_meta and has_webp

    @staticmethod
    def is_sogs_meta(path: Path) -> bool:
        try:
            document = json.loads(path.read_text())
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug(f"Cannot parse {path} as JSON: {e}")
            return False
        return isinstance(document, dict) and all(key in document for key in SOGS_KEYS)

    @staticmethod
    def get_description(path) -> str:
        """Human-readable name of the detected format."""
        return {
            SplatFormat.PLY: "PLY point cloud",
            SplatFormat.DOT_SPLAT: ".splat records",
            SplatFormat.SPZ: "SPZ packed gaussians",
            SplatFormat.SPX: "SPX block file",
            SplatFormat.GLTF: "glTF KHR_gaussian_splatting",
            SplatFormat.SOGS: "SOGS meta.json with WebP textures",
            SplatFormat.SOGS_V2_BUNDLE: "SOGS v2 bundle",
            SplatFormat.SOGS_ZIP: "SOGS ZIP archive",
            SplatFormat.CHUNKED: "Chunked quantized splats",
        }[FormatDetector.detect(path)]
