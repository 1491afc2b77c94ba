# ABOUTME: Package initialization for splatio, a gaussian splat scene reader
# ABOUTME: Exports the point model, readers, writers, Morton reordering and octree classes

__version__ = "0.1.0"

from .config import ReaderConfig
from .decode_cache import DecodeCache
from .errors import (
    CorruptedDataError, DecodeTimeoutError, DecompressionError, FormatDetectionError,
    GltfError, HeaderError, InvalidDataError, InvalidMagicNumber, InvalidMetadataError,
    ResourceMissingError, SplatIOError, TruncatedDataError, ValidationError,
)
from .formats import FormatDetector, SplatFormat, open_scene, read_scene, writer_for
from .lod_generator import LODGenerator, OctreeBuilder
from .morton import reorder, reorder_cloud
from .octree import AABB, OctreeArena, OctreeLODLevel, OctreeNode
from .reader import PointCollector, SceneReader, SceneReaderDelegate, read_blocking
from .splat_cloud import SplatCloud
from .splat_point import Color, ColorKind, Opacity, OpacityKind, Scale, ScaleKind, SplatPoint

__all__ = [
    "ReaderConfig",
    "DecodeCache",
    "SplatIOError",
    "FormatDetectionError",
    "HeaderError",
    "InvalidMagicNumber",
    "TruncatedDataError",
    "DecompressionError",
    "ValidationError",
    "InvalidDataError",
    "InvalidMetadataError",
    "CorruptedDataError",
    "ResourceMissingError",
    "DecodeTimeoutError",
    "GltfError",
    "FormatDetector",
    "SplatFormat",
    "open_scene",
    "read_scene",
    "writer_for",
    "LODGenerator",
    "OctreeBuilder",
    "reorder",
    "reorder_cloud",
    "AABB",
    "OctreeArena",
    "OctreeLODLevel",
    "OctreeNode",
    "SceneReader",
    "SceneReaderDelegate",
    "PointCollector",
    "read_blocking",
    "SplatCloud",
    "SplatPoint",
    "Color",
    "ColorKind",
    "Scale",
    "ScaleKind",
    "Opacity",
    "OpacityKind",
]
