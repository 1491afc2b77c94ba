# ABOUTME: Test suite for the PLY reader and writer
# ABOUTME: Builds ascii and binary PLY files in memory, covering property aliases, SH layout and truncation

import struct
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splatio.errors import HeaderError, ValidationError
from splatio.formats import read_scene
from splatio.formats.ply import (
    PLYSceneReader, PLYSceneWriter, parse_header, read_ply, read_vertices, serialize_ply,
    vertices_to_cloud,
)
from splatio.quantization import normalize_quaternions
from splatio.splat_cloud import SplatCloud
from splatio.splat_point import ColorKind, OpacityKind, ScaleKind


def binary_ply(fields, records, preamble=b''):
    """Binary little-endian PLY with one vertex element built from a structured array."""
    type_names = {'<f4': 'float', '|u1': 'uchar', '<i4': 'int'}
    lines = ['ply', 'format binary_little_endian 1.0', 'comment made in a test']
    lines.append(f'element vertex {len(records)}')
    lines += [f'property {type_names[records.dtype[name].str]} {name}' for name in fields]
    lines.append('end_header')
    return ('\n'.join(lines) + '\n').encode('ascii') + preamble + records.tobytes()


def splat_records(n, rest=0):
    names = ['x', 'y', 'z', 'f_dc_0', 'f_dc_1', 'f_dc_2']
    names += [f'f_rest_{i}' for i in range(rest)]
    names += ['opacity', 'scale_0', 'scale_1', 'scale_2', 'rot_0', 'rot_1', 'rot_2', 'rot_3']
    records = np.zeros(n, dtype=[(name, '<f4') for name in names])
    records['x'] = np.arange(n)
    records['y'] = np.arange(n) * 2
    records['z'] = -np.arange(n)
    records['f_dc_0'] = 1.0
    records['opacity'] = 2.0
    records['scale_0'] = -1.0
    records['rot_0'] = 1.0
    for i in range(rest):
        records[f'f_rest_{i}'] = i
    return names, records


def read_ply_bytes(data):
    header = parse_header(data)
    return header, vertices_to_cloud(read_vertices(data, header))


class TestPLYHeader:
    """Test header parsing."""

    def test_parse(self):
        """Format, elements, properties and comments are parsed."""
        names, records = splat_records(2)
        header = parse_header(binary_ply(names, records))
        assert header.format == 'binary_little_endian'
        assert header.byte_order == '<'
        assert header.comments == ['made in a test']
        assert header.element('vertex').count == 2
        assert header.element('vertex').property_names() == names

    def test_missing_signature(self):
        with pytest.raises(HeaderError):
            parse_header(b'not a ply file')

    def test_missing_end_header(self):
        """A header without end_header raises HeaderError."""
        with pytest.raises(HeaderError):
            parse_header(b'ply\nformat ascii 1.0\nelement vertex 1\n')

    def test_unknown_property_type(self):
        """Unknown scalar types raise HeaderError."""
        data = b'ply\nformat ascii 1.0\nelement vertex 1\nproperty quad x\nend_header\n'
        with pytest.raises(HeaderError):
            parse_header(data)


class TestPLYDecode:
    """Test mapping vertex properties onto clouds."""

    def test_binary_splat(self):
        """Canonical gaussian splat properties decode to SH, log scale and logit opacity."""
        names, records = splat_records(3)
        _, cloud = read_ply_bytes(binary_ply(names, records))
        assert cloud.count == 3
        assert cloud.color_kind is ColorKind.SPHERICAL_HARMONIC
        assert cloud.scale_kind is ScaleKind.EXPONENT
        assert cloud.opacity_kind is OpacityKind.LOGIT
        np.testing.assert_array_equal(cloud.positions[2], [2, 4, -2])
        np.testing.assert_array_equal(cloud.colors[:, 0, 0], 1.0)
        np.testing.assert_array_equal(cloud.opacities, 2.0)
        np.testing.assert_array_equal(cloud.scales[:, 0], -1.0)

    def test_rotation_reordered(self):
        """rot_0 is w and moves to the last slot."""
        names, records = splat_records(1)
        _, cloud = read_ply_bytes(binary_ply(names, records))
        np.testing.assert_allclose(cloud.rotations[0], [0, 0, 0, 1])

    def test_sh_rest_channel_major(self):
        """f_rest values are grouped per channel."""
        names, records = splat_records(2, rest=9)
        _, cloud = read_ply_bytes(binary_ply(names, records))
        assert cloud.colors.shape == (2, 4, 3)
        # Channel c, coefficient k comes from f_rest_{c * 3 + k}
        np.testing.assert_array_equal(cloud.colors[0, 1:, 0], [0, 1, 2])
        np.testing.assert_array_equal(cloud.colors[0, 1:, 1], [3, 4, 5])
        np.testing.assert_array_equal(cloud.colors[0, 1:, 2], [6, 7, 8])

    def test_partial_sh_bands(self):
        """Extra f_rest values beyond a full band are dropped."""
        names, records = splat_records(1, rest=12)
        _, cloud = read_ply_bytes(binary_ply(names, records))
        assert cloud.colors.shape == (1, 4, 3)

    def test_ascii_defaults(self):
        """Positions alone get grey colour, unit opacity and identity rotation."""
        data = (b'ply\nformat ascii 1.0\nelement vertex 2\n'
                b'property float x\nproperty float y\nproperty float z\nend_header\n'
                b'1 2 3\n4 5 6\n')
        _, cloud = read_ply_bytes(data)
        np.testing.assert_array_equal(cloud.positions, [[1, 2, 3], [4, 5, 6]])
        assert cloud.color_kind is ColorKind.LINEAR_FLOAT
        np.testing.assert_allclose(cloud.colors, 0.5)
        np.testing.assert_allclose(cloud.linear_opacities(), 1.0)
        np.testing.assert_allclose(cloud.linear_scales(), 1.0)
        np.testing.assert_array_equal(cloud.rotations[1], [0, 0, 0, 1])

    def test_aliases_and_byte_colors(self):
        """Alias names and uchar colours are recognised."""
        records = np.zeros(2, dtype=[('px', '<f4'), ('py', '<f4'), ('pz', '<f4'),
                                     ('red', 'u1'), ('green', 'u1'), ('blue', 'u1')])
        records['px'] = [1, 2]
        records['red'] = [255, 10]
        records['blue'] = 7
        _, cloud = read_ply_bytes(binary_ply(records.dtype.names, records))
        assert cloud.color_kind is ColorKind.LINEAR_UINT8
        np.testing.assert_array_equal(cloud.colors[0], [255, 0, 7])
        np.testing.assert_array_equal(cloud.positions[:, 0], [1, 2])

    def test_list_element_skipped(self):
        """A face element with list properties before the vertices is skipped."""
        records = np.zeros(2, dtype=[('x', '<f4'), ('y', '<f4'), ('z', '<f4')])
        records['z'] = [5, 6]
        header = (b'ply\nformat binary_little_endian 1.0\n'
                  b'element face 1\nproperty list uchar int vertex_indices\n'
                  b'element vertex 2\nproperty float x\nproperty float y\nproperty float z\n'
                  b'end_header\n')
        face = bytes([3]) + struct.pack('<3i', 0, 1, 1)
        _, cloud = read_ply_bytes(header + face + records.tobytes())
        np.testing.assert_array_equal(cloud.positions[:, 2], [5, 6])

    def test_truncated_body(self):
        """A short body yields only the complete vertices."""
        names, records = splat_records(3)
        data = binary_ply(names, records)
        _, cloud = read_ply_bytes(data[:-10])
        assert cloud.count == 2

    def test_missing_position(self):
        """Vertices without positions raise ValidationError."""
        records = np.zeros(1, dtype=[('red', 'u1'), ('green', 'u1'), ('blue', 'u1')])
        data = binary_ply(records.dtype.names, records)
        header = parse_header(data)
        with pytest.raises(ValidationError):
            vertices_to_cloud(read_vertices(data, header))

    def test_no_vertex_element(self):
        data = b'ply\nformat ascii 1.0\nelement face 0\nend_header\n'
        with pytest.raises(HeaderError):
            read_vertices(data, parse_header(data))


class TestPLYFiles:
    """Test writing and reading PLY files."""

    def make_cloud(self, n=6):
        rng = np.random.default_rng(4)
        return SplatCloud(
            positions=rng.normal(size=(n, 3)),
            rotations=normalize_quaternions(rng.normal(size=(n, 4))),
            scales=rng.uniform(-3, 0, size=(n, 3)),
            opacities=rng.uniform(-2, 2, size=n),
            colors=rng.uniform(-1, 1, size=(n, 4, 3)),
            scale_kind=ScaleKind.EXPONENT,
            opacity_kind=OpacityKind.LOGIT,
            color_kind=ColorKind.SPHERICAL_HARMONIC,
        )

    def test_writer_round_trip(self, tmp_path):
        """Written files decode back to the same values."""
        source = self.make_cloud()
        path = PLYSceneWriter(comments=['splatio']).write(source, tmp_path / 'out.ply')
        header, cloud = read_ply(path)
        assert header.comments == ['splatio']
        np.testing.assert_allclose(cloud.positions, source.positions, rtol=1e-6)
        np.testing.assert_allclose(cloud.colors, source.colors, rtol=1e-6)
        np.testing.assert_allclose(cloud.scales, source.scales, rtol=1e-6)
        np.testing.assert_allclose(cloud.opacities, source.opacities, rtol=1e-5)
        np.testing.assert_allclose(cloud.rotations, source.rotations, atol=1e-6)

    def test_serialize_header(self):
        """Serialized files are binary little-endian with canonical names."""
        data = serialize_ply(self.make_cloud(2))
        header = parse_header(data)
        names = header.element('vertex').property_names()
        assert names[:3] == ['x', 'y', 'z']
        assert 'f_rest_8' in names and 'rot_3' in names

    def test_scene_reader(self, tmp_path):
        """PLY files read through the reader and the dispatcher."""
        path = PLYSceneWriter().write(self.make_cloud(5), tmp_path / 'scene.ply')
        assert PLYSceneReader.open(path).read_cloud().count == 5
        assert len(read_scene(path)) == 5
