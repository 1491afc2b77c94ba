# ABOUTME: Texture planes used as 2-D per-splat lookup tables (SOGS formats)
# ABOUTME: Decodes WebP (or any Pillow-readable) rasters into dense RGBA arrays

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecompressionError, ResourceMissingError
from .utils.logging_utils import get_logger

logger = get_logger('texture')


@dataclass
class TexturePlane:
    """
    A decoded raster.

    Attributes:
        width: Width in pixels
        height: Height in pixels
        pixels: (height, width, 4) uint8 RGBA array
        name: Source file or archive entry name
    """
    width: int
    height: int
    pixels: np.ndarray
    name: str = ''

    @property
    def shape(self) -> Tuple[int, int]:
        """(width, height) in pixels."""
        return self.width, self.height

    @property
    def capacity(self) -> int:
        return self.width * self.height

    def pixel_coords(self, index: int) -> Tuple[int, int]:
        """Splat index to (x, y) pixel coordinates."""
        return index % self.width, index // self.width

    def sample(self, indices) -> np.ndarray:
        """
        RGBA values for splat indices.

        Returns:
            (N, 4) uint8 array
        """
        flat = self.pixels.reshape(-1, 4)
        return flat[np.asarray(indices, dtype=np.int64)]

    def sample_range(self, start: int, stop: int) -> np.ndarray:
        """RGBA values for the contiguous index range [start, stop)."""
        return self.pixels.reshape(-1, 4)[start:stop]


def decode_image(data: bytes, name: str = '') -> TexturePlane:
    """
    Decode a WebP (or PNG/JPEG) image into an RGBA texture plane.

    Raises:
        DecompressionError: if Pillow cannot read the image
    """
    try:
        with Image.open(BytesIO(data)) as image:
            rgba = image.convert('RGBA')
            pixels = np.asarray(rgba, dtype=np.uint8).copy()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecompressionError(f"Failed to decode texture {name or '<bytes>'}: {e}") from e

    height, width = pixels.shape[:2]
    logger.debug(f"Decoded texture {name}: {width}x{height}")
    return TexturePlane(width=width, height=height, pixels=pixels, name=name)


def decode_webp(data: bytes, name: str = '') -> TexturePlane:
    return decode_image(data, name)


def load_texture(path) -> TexturePlane:
    """
    Load a texture file from disk.

    Raises:
        ResourceMissingError: if the file does not exist
    """
    path = Path(path)
    if not path.is_file():
        raise ResourceMissingError(path, f"Texture not found: {path}")
    return decode_image(path.read_bytes(), path.name)


def encode_webp(pixels: np.ndarray) -> bytes:
    """Losslessly encode an (H, W, 4) uint8 array as WebP."""
    buffer = BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8)).save(
        buffer, format='WEBP', lossless=True, quality=100, exact=True)
    return buffer.getvalue()
