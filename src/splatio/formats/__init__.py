# ABOUTME: Format readers and writers plus the dispatch from detected format to reader
# ABOUTME: open_scene/read_scene are the entry points for reading any supported file

from pathlib import Path
from typing import List, Optional

from ..config import ReaderConfig
from ..errors import ResourceMissingError
from ..reader import SceneReader, read_blocking
from ..splat_point import SplatPoint
from .chunked import ChunkedSceneReader, ChunkedSceneWriter
from .detector import FormatDetector, SplatFormat
from .dot_splat import DotSplatSceneReader, DotSplatSceneWriter
from .gltf import GltfSceneReader
from .ply import PLYSceneReader, PLYSceneWriter
from .sogs import SOGSSceneReader
from .spx import SPXSceneReader, SPXSceneWriter
from .spz import SPZSceneReader, SPZSceneWriter

READERS = {
    SplatFormat.PLY: PLYSceneReader,
    SplatFormat.DOT_SPLAT: DotSplatSceneReader,
    SplatFormat.SPZ: SPZSceneReader,
    SplatFormat.SPX: SPXSceneReader,
    SplatFormat.GLTF: GltfSceneReader,
    SplatFormat.SOGS: SOGSSceneReader,
    SplatFormat.SOGS_V2_BUNDLE: SOGSSceneReader,
    SplatFormat.SOGS_ZIP: SOGSSceneReader,
    SplatFormat.CHUNKED: ChunkedSceneReader,
}

WRITERS = {
    '.cspl': ChunkedSceneWriter,
    '.ply': PLYSceneWriter,
    '.splat': DotSplatSceneWriter,
    '.spx': SPXSceneWriter,
    '.spz': SPZSceneWriter,
}


def open_scene(path, config: Optional[ReaderConfig] = None, cache=None) -> SceneReader:
    """
    Detect the format of ``path`` and return a reader for it.

    Raises:
        ResourceMissingError: if the path does not exist
        FormatDetectionError: if the format is not recognised
    """
    path = Path(path)
    if not path.exists():
        raise ResourceMissingError(path)
    reader_class = READERS[FormatDetector.detect(path)]
    return reader_class.open(path, config=config, cache=cache)


def read_scene(path, config: Optional[ReaderConfig] = None, cache=None,
               timeout: Optional[float] = None) -> List[SplatPoint]:
    """Read every point of a scene file, waiting at most ``timeout`` seconds."""
    return read_blocking(open_scene(path, config, cache), timeout=timeout)


def writer_for(path):
    """
    Return a writer instance for the output path's extension.

    Raises:
        ValueError: if no writer handles the extension
    """
    suffix = Path(path).suffix.lower()
    if suffix not in WRITERS:
        raise ValueError(f"Unsupported output format: {suffix} "
                         f"(supported: {', '.join(sorted(WRITERS))})")
    return WRITERS[suffix]()


__all__ = [
    'FormatDetector', 'SplatFormat', 'READERS', 'WRITERS', 'open_scene', 'read_scene',
    'writer_for', 'PLYSceneReader', 'PLYSceneWriter', 'DotSplatSceneReader',
    'DotSplatSceneWriter', 'SPZSceneReader', 'SPZSceneWriter', 'SPXSceneReader', 'SPXSceneWriter',
    'GltfSceneReader', 'SOGSSceneReader', 'ChunkedSceneReader', 'ChunkedSceneWriter',
]
