# ABOUTME: Test suite for texture planes and WebP decoding
# ABOUTME: Encodes small rasters with Pillow and checks pixel addressing and error mapping

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splatio.errors import DecompressionError, ResourceMissingError
from splatio.texture import TexturePlane, decode_webp, encode_webp, load_texture


def gradient(width=4, height=3):
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[..., 0] = np.arange(width * height).reshape(height, width)
    pixels[..., 3] = 255
    return pixels


class TestTexturePlane:
    """Test pixel addressing."""

    def test_pixel_coords(self):
        """Splat indices run along rows."""
        plane = TexturePlane(4, 3, gradient())
        assert plane.capacity == 12
        assert plane.shape == (4, 3)
        assert plane.shape != TexturePlane(3, 4, gradient(3, 4)).shape
        assert plane.pixel_coords(0) == (0, 0)
        assert plane.pixel_coords(5) == (1, 1)
        assert plane.pixel_coords(11) == (3, 2)

    def test_sample(self):
        """Sampling returns one RGBA row per index."""
        plane = TexturePlane(4, 3, gradient())
        samples = plane.sample([0, 5, 11])
        assert samples.shape == (3, 4)
        np.testing.assert_array_equal(samples[:, 0], [0, 5, 11])
        np.testing.assert_array_equal(plane.sample_range(2, 4)[:, 0], [2, 3])


class TestWebP:
    """Test image decoding."""

    def test_lossless_round_trip(self):
        """Lossless WebP decodes to the exact pixels."""
        pixels = gradient()
        plane = decode_webp(encode_webp(pixels), 'gradient.webp')
        assert (plane.width, plane.height) == (4, 3)
        np.testing.assert_array_equal(plane.pixels, pixels)

    def test_unreadable(self):
        """Bytes Pillow cannot read raise DecompressionError."""
        with pytest.raises(DecompressionError):
            decode_webp(b'RIFF\x00\x00\x00\x00WEBPjunk')

    def test_load_texture(self, tmp_path):
        path = tmp_path / 'means_l.webp'
        path.write_bytes(encode_webp(gradient()))
        assert load_texture(path).name == 'means_l.webp'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ResourceMissingError):
            load_texture(tmp_path / 'absent.webp')
