# ABOUTME: Test suite for the SOGS v1 and v2 readers
# ABOUTME: Writes meta.json and lossless WebP planes into tmp_path, including .sog and .zip bundles

import json
import sys
import zipfile
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splatio.config import ReaderConfig
from splatio.decode_cache import DecodeCache
from splatio.errors import InvalidMetadataError, ResourceMissingError
from splatio.formats import open_scene, read_scene
from splatio.formats.detector import FormatDetector, SplatFormat
from splatio.formats.sogs import decode_sogs
from splatio.formats.sogs_common import decode_quats, decode_sh_palette
from splatio.formats.sogs_v2 import parse_metadata
from splatio.quantization import SH_C0
from splatio.splat_point import ColorKind, OpacityKind, ScaleKind
from splatio.texture import TexturePlane, encode_webp

WORDS = np.array([0, 65535, 32768, 16384])


def plane(rgba):
    """2x2 RGBA texture, one texel per point in row-major order."""
    return np.asarray(rgba, dtype=np.uint8).reshape(2, 2, 4)


def base_textures():
    words = np.stack([WORDS, WORDS[::-1], WORDS], axis=1)
    lower = np.concatenate([words & 0xFF, np.full((4, 1), 255)], axis=1)
    upper = np.concatenate([words >> 8, np.full((4, 1), 255)], axis=1)
    scales = [[0, 0, 0, 255], [255, 255, 255, 255], [51, 102, 153, 255], [0, 255, 0, 255]]
    # Mode 0 keeps (a, b, c, d) as x, y, z, w; mode 3 puts d in z
    quats = [[128, 128, 128, 252], [128, 128, 128, 255], [128, 128, 128, 252], [128, 128, 128, 252]]
    sh0 = [[255, 0, 128, 255], [0, 255, 128, 128], [128, 128, 128, 64], [255, 255, 255, 255]]
    return {
        'means_l.webp': plane(lower),
        'means_u.webp': plane(upper),
        'scales.webp': plane(scales),
        'quats.webp': plane(quats),
        'sh0.webp': plane(sh0),
    }


def expected_positions():
    words = np.stack([WORDS, WORDS[::-1], WORDS], axis=1).astype(np.float64)
    v = -1.0 + 2.0 * words / 65535.0
    return np.where(v < 0, -1.0, 1.0) * (np.exp(np.abs(v)) - 1.0)


def v1_meta(with_sh=False):
    meta = {
        'means': {'shape': [4, 3], 'dtype': 'float32', 'mins': [-1, -1, -1], 'maxs': [1, 1, 1],
                  'files': ['means_l.webp', 'means_u.webp']},
        'scales': {'shape': [4, 3], 'dtype': 'float32', 'mins': [-5, -5, -5], 'maxs': [0, 0, 0],
                   'files': ['scales.webp']},
        'quats': {'shape': [4, 4], 'dtype': 'uint8', 'encoding': 'quaternion_packed',
                  'files': ['quats.webp']},
        'sh0': {'shape': [4, 1, 4], 'dtype': 'float32', 'mins': [-1, -1, -1, -2],
                'maxs': [1, 1, 1, 2], 'files': ['sh0.webp']},
    }
    if with_sh:
        meta['shN'] = {'shape': [4, 3], 'dtype': 'float32', 'mins': -1, 'maxs': 1,
                       'files': ['shN_centroids.webp', 'shN_labels.webp']}
    return meta


def v2_meta(count=4, **overrides):
    codebook = np.linspace(-1.0, 1.0, 256).tolist()
    meta = {
        'version': 2,
        'count': count,
        'antialias': True,
        'means': {'mins': [-1, -1, -1], 'maxs': [1, 1, 1], 'files': ['means_l.webp', 'means_u.webp']},
        'scales': {'codebook': codebook, 'files': ['scales.webp']},
        'quats': {'files': ['quats.webp']},
        'sh0': {'codebook': codebook, 'files': ['sh0.webp']},
    }
    meta.update(overrides)
    return meta


def sh_textures(entry_texels=3):
    """One-band palette: label 0 holds zeros, label 1 holds 255s."""
    centroids = np.full((1, 192, 4), 255, dtype=np.uint8)
    centroids[0, :entry_texels, :3] = 0
    labels = plane([[0, 0, 0, 255], [1, 0, 0, 255], [0, 0, 0, 255], [1, 0, 0, 255]])
    return {'shN_centroids.webp': centroids, 'shN_labels.webp': labels}


def write_scene(directory, meta, textures):
    directory.mkdir(parents=True, exist_ok=True)
    for name, pixels in textures.items():
        (directory / name).write_bytes(encode_webp(pixels))
    path = directory / 'meta.json'
    path.write_text(json.dumps(meta))
    return path


def write_bundle(path, meta, textures, folder=''):
    with zipfile.ZipFile(path, 'w') as archive:
        archive.writestr(folder + 'meta.json', json.dumps(meta))
        for name, pixels in textures.items():
            archive.writestr(folder + name, encode_webp(pixels))
    return path


class TestQuaternionModes:
    """Test the packed quaternion layouts."""

    def test_layouts(self):
        """Alpha 252-255 choose where the reconstructed component goes."""
        texels = np.array([[128, 128, 128, 252 + mode] for mode in range(4)], dtype=np.uint8)
        q = decode_quats(TexturePlane(4, 1, texels.reshape(1, 4, 4)), 0, 4)
        # The reconstructed component is close to 1
        assert np.argmax(q[0]) == 3  # mode 0: (a, b, c, d)
        assert np.argmax(q[1]) == 0  # mode 1: (d, b, c, a)
        assert np.argmax(q[2]) == 1  # mode 2: (b, d, c, a)
        assert np.argmax(q[3]) == 2  # mode 3: (b, c, d, a)
        np.testing.assert_allclose(np.linalg.norm(q, axis=1), 1.0, atol=1e-5)


class TestSOGSv1:
    """Test meta.json scenes with sibling textures."""

    def test_decode(self, tmp_path):
        """Means, scales, opacity and colors follow the v1 transforms."""
        path = write_scene(tmp_path, v1_meta(), base_textures())
        cloud = decode_sogs(path)
        assert cloud.count == 4
        assert cloud.scale_kind is ScaleKind.EXPONENT
        assert cloud.opacity_kind is OpacityKind.LINEAR
        assert cloud.color_kind is ColorKind.LINEAR_FLOAT

        np.testing.assert_allclose(cloud.positions, expected_positions(), rtol=1e-5, atol=1e-5)
        np.testing.assert_allclose(cloud.scales[0], [-5, -5, -5])
        np.testing.assert_allclose(cloud.scales[1], [0, 0, 0], atol=1e-6)
        np.testing.assert_allclose(cloud.scales[2], [-4, -3, -2], atol=1e-5)

        np.testing.assert_allclose(cloud.opacities[0], 1.0 / (1.0 + np.exp(-2.0)), rtol=1e-5)
        np.testing.assert_allclose(cloud.colors[0], [0.5 + SH_C0, 0.5 - SH_C0, 0.5 + SH_C0 / 255],
                                   atol=1e-5)

    def test_rotations(self, tmp_path):
        """Mode 3 texels put the reconstructed component in z."""
        cloud = decode_sogs(write_scene(tmp_path, v1_meta(), base_textures()))
        assert np.argmax(cloud.rotations[0]) == 3
        assert np.argmax(cloud.rotations[1]) == 2

    def test_sh_palette(self, tmp_path):
        """Palette rows are 15 texels wide whatever the centroid width."""
        textures = dict(base_textures(), **sh_textures(entry_texels=15))
        cloud = decode_sogs(write_scene(tmp_path, v1_meta(with_sh=True), textures))
        assert cloud.color_kind is ColorKind.SPHERICAL_HARMONIC
        assert cloud.colors.shape == (4, 16, 3)
        np.testing.assert_allclose(cloud.colors[0, 1:], -1.0)
        np.testing.assert_allclose(cloud.colors[1, 1:], 1.0)
        np.testing.assert_allclose(cloud.colors[1, 0], [-1.0, 1.0, 1.0 / 255], atol=1e-5)

    def test_sh_palette_row_offset(self):
        """Label L starts at texel ((L % 64) * 15, L // 64) and yields 15 coefficients."""
        centroids = np.zeros((2, 192, 4), dtype=np.uint8)
        centroids[0, 15:30, :3] = 255
        centroids[1, 30:45, :3] = 255
        labels = TexturePlane(2, 1, np.array([[[1, 0, 0, 255], [66, 0, 0, 255]]], dtype=np.uint8))
        palette = decode_sh_palette(labels, TexturePlane(192, 2, centroids), 0, 2, 15, 128,
                                    lambda raw: raw.astype(np.float32) / 255.0)
        assert palette.shape == (2, 15, 3)
        np.testing.assert_allclose(palette, 1.0)

    def test_sh_palette_wide_centroids(self, tmp_path):
        """A 512-wide centroid texture still reads 15 coefficients per entry."""
        centroids = np.zeros((1, 512, 4), dtype=np.uint8)
        centroids[0, 15:30, :3] = 255
        labels = plane([[0, 0, 0, 255], [1, 0, 0, 255], [0, 0, 0, 255], [1, 0, 0, 255]])
        textures = dict(base_textures(), **{'shN_centroids.webp': centroids,
                                            'shN_labels.webp': labels})
        cloud = decode_sogs(write_scene(tmp_path, v1_meta(with_sh=True), textures))
        assert cloud.colors.shape == (4, 16, 3)
        np.testing.assert_allclose(cloud.colors[0, 1:], -1.0)
        np.testing.assert_allclose(cloud.colors[3, 1:], 1.0)

    def test_missing_attribute(self, tmp_path):
        """Metadata without sh0 is rejected."""
        meta = v1_meta()
        del meta['sh0']
        with pytest.raises(InvalidMetadataError):
            decode_sogs(write_scene(tmp_path, meta, base_textures()))

    def test_too_few_files(self, tmp_path):
        """A means entry with one file is a missing resource."""
        meta = v1_meta()
        meta['means']['files'] = ['means_l.webp']
        with pytest.raises(ResourceMissingError):
            decode_sogs(write_scene(tmp_path, meta, base_textures()))

    def test_missing_texture(self, tmp_path):
        """A listed texture absent from disk raises ResourceMissingError."""
        textures = base_textures()
        del textures['quats.webp']
        with pytest.raises(ResourceMissingError):
            decode_sogs(write_scene(tmp_path, v1_meta(), textures))

    def test_count_exceeds_capacity(self, tmp_path):
        """More points than texels is invalid."""
        meta = v1_meta()
        meta['means']['shape'] = [9, 3]
        with pytest.raises(InvalidMetadataError):
            decode_sogs(write_scene(tmp_path, meta, base_textures()))

    def test_zip_archive(self, tmp_path):
        """A .zip with a nested folder decodes like loose files."""
        path = write_bundle(tmp_path / 'scene.zip', v1_meta(), base_textures(), folder='scene/')
        assert FormatDetector.detect(path) is SplatFormat.SOGS_ZIP
        points = read_scene(path)
        assert len(points) == 4

    def test_read_scene_from_meta(self, tmp_path):
        """meta.json paths are detected and read."""
        path = write_scene(tmp_path, v1_meta(), base_textures())
        assert FormatDetector.detect(path) is SplatFormat.SOGS
        assert len(read_scene(path)) == 4


class TestSOGSv2:
    """Test versioned metadata with codebooks."""

    def test_without_sh(self, tmp_path):
        """No shN gives linear float colors."""
        cloud = decode_sogs(write_scene(tmp_path, v2_meta(), base_textures()))
        assert cloud.count == 4
        assert cloud.color_kind is ColorKind.LINEAR_FLOAT
        codebook = np.linspace(-1.0, 1.0, 256)
        np.testing.assert_allclose(cloud.scales[2], codebook[[51, 102, 153]], atol=1e-6)
        # No 4-channel sh0 range: opacity is sigmoid(alpha / 255)
        np.testing.assert_allclose(cloud.opacities[0], 1.0 / (1.0 + np.exp(-1.0)), rtol=1e-5)
        np.testing.assert_allclose(cloud.positions, expected_positions(), rtol=1e-5, atol=1e-5)

    def test_range_opacity(self, tmp_path):
        """A 4-channel sh0 range maps alpha through its last channel."""
        meta = v2_meta(sh0={'mins': [-1, -1, -1, -4], 'maxs': [1, 1, 1, 4], 'files': ['sh0.webp']})
        cloud = decode_sogs(write_scene(tmp_path, meta, base_textures()))
        np.testing.assert_allclose(cloud.opacities[0], 1.0 / (1.0 + np.exp(-4.0)), rtol=1e-5)

    def test_with_sh(self, tmp_path):
        """A consistent shN entry yields SH colors."""
        meta = v2_meta(shN={'count': 2, 'bands': 1, 'mins': -2, 'maxs': 2,
                            'files': ['shN_centroids.webp', 'shN_labels.webp']})
        textures = dict(base_textures(), **sh_textures())
        cloud = decode_sogs(write_scene(tmp_path, meta, textures))
        assert cloud.color_kind is ColorKind.SPHERICAL_HARMONIC
        assert cloud.colors.shape == (4, 4, 3)
        np.testing.assert_allclose(cloud.colors[0, 1:], -2.0)
        np.testing.assert_allclose(cloud.colors[3, 1:], 2.0)

    def test_bad_sh_disabled(self, tmp_path):
        """A centroid texture of the wrong width disables SH instead of failing."""
        meta = v2_meta(shN={'count': 2, 'bands': 2, 'mins': -2, 'maxs': 2,
                            'files': ['shN_centroids.webp', 'shN_labels.webp']})
        textures = dict(base_textures(), **sh_textures())
        cloud = decode_sogs(write_scene(tmp_path, meta, textures))
        assert cloud.color_kind is ColorKind.LINEAR_FLOAT

    def test_metadata_validation(self):
        """Structural metadata errors raise InvalidMetadataError."""
        with pytest.raises(InvalidMetadataError):
            parse_metadata(v2_meta(version=3))
        with pytest.raises(InvalidMetadataError):
            parse_metadata(v2_meta(count=-1))
        with pytest.raises(InvalidMetadataError):
            parse_metadata(v2_meta(means={'mins': [0, 0], 'maxs': [1, 1], 'files': ['a', 'b']}))
        with pytest.raises(InvalidMetadataError):
            parse_metadata(v2_meta(means={'mins': [0, 0, 0], 'maxs': [1, 1, 1], 'files': ['a']}))
        with pytest.raises(ResourceMissingError):
            parse_metadata(v2_meta(quats={'files': []}))

    def test_short_codebook(self, tmp_path):
        """A scales entry with a short codebook and no range is invalid."""
        meta = v2_meta(scales={'codebook': [0.0] * 10, 'files': ['scales.webp']})
        with pytest.raises(InvalidMetadataError):
            decode_sogs(write_scene(tmp_path, meta, base_textures()))

    def test_count_exceeds_capacity(self, tmp_path):
        with pytest.raises(InvalidMetadataError):
            decode_sogs(write_scene(tmp_path, v2_meta(count=5), base_textures()))

    def test_mismatched_texture_sizes(self, tmp_path):
        """All attribute planes must share the means dimensions."""
        textures = base_textures()
        textures['scales.webp'] = np.full((1, 4, 4), 255, dtype=np.uint8)
        with pytest.raises(InvalidMetadataError):
            decode_sogs(write_scene(tmp_path, v2_meta(), textures))

    def test_sog_bundle(self, tmp_path):
        """A .sog bundle always decodes as version 2."""
        path = write_bundle(tmp_path / 'scene.sog', v2_meta(), base_textures())
        assert FormatDetector.detect(path) is SplatFormat.SOGS_V2_BUNDLE
        cloud = open_scene(path).read_cloud()
        assert cloud.count == 4
        assert cloud.color_kind is ColorKind.LINEAR_FLOAT

    def test_texture_cache(self, tmp_path):
        """A shared cache serves the second decode."""
        path = write_scene(tmp_path, v2_meta(), base_textures())
        cache = DecodeCache()
        first = decode_sogs(path, ReaderConfig(), cache)
        second = decode_sogs(path, ReaderConfig(), cache)
        assert cache.stats.hits == 1 and cache.stats.misses == 1
        np.testing.assert_array_equal(first.positions, second.positions)
