# ABOUTME: Test suite for the splat point model and the columnar SplatCloud
# ABOUTME: Covers representation conversions, subsets, merging and point materialization

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splatio.quantization import SH_C0
from splatio.splat_cloud import SplatCloud
from splatio.splat_point import (
    Color, ColorKind, Opacity, OpacityKind, Scale, ScaleKind, SplatPoint, sh_degree_for_count,
)


def make_cloud(n=10, color_kind=ColorKind.LINEAR_FLOAT, seed=0):
    rng = np.random.default_rng(seed)
    colors = rng.random((n, 3))
    if color_kind is ColorKind.LINEAR_UINT8:
        colors = (colors * 255).astype(np.uint8)
    return SplatCloud(
        positions=rng.normal(size=(n, 3)),
        rotations=np.tile([0.0, 0.0, 0.0, 1.0], (n, 1)),
        scales=np.full((n, 3), 0.1),
        opacities=np.full(n, 0.5),
        colors=colors,
        scale_kind=ScaleKind.LINEAR,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=color_kind,
    )


class TestColor:
    """Test Color conversions."""

    def test_sh_to_linear(self):
        """The DC term maps to 0.5 + C0 * dc."""
        color = Color.sh([[1.0, 0.0, -1.0]])
        np.testing.assert_allclose(color.as_linear_float(), [0.5 + SH_C0, 0.5, 0.5 - SH_C0], rtol=1e-6)

    def test_uint8_and_float256(self):
        """Byte and 0-256 colors normalize to [0, 1]."""
        np.testing.assert_allclose(Color.linear_uint8([255, 0, 51]).as_linear_float(), [1.0, 0.0, 0.2])
        np.testing.assert_allclose(Color.linear_float256([128, 0, 256]).as_linear_float(), [0.5, 0.0, 1.0])

    def test_sh_degree(self):
        """Degree follows the coefficient count."""
        assert Color.sh(np.zeros((9, 3))).sh_degree == 2
        assert Color.linear_float([0, 0, 0]).sh_degree == 0
        with pytest.raises(ValueError):
            sh_degree_for_count(5)

    def test_as_sh_for_rgb(self):
        """Linear colors become a single DC triple."""
        sh = Color.linear_float([0.5, 0.5, 0.5]).as_sh()
        assert sh.shape == (1, 3)
        np.testing.assert_allclose(sh, 0.0, atol=1e-6)


class TestScaleOpacity:
    """Test Scale and Opacity conversions."""

    def test_scale_conversions(self):
        """Exponent scales are the log of linear scales."""
        scale = Scale.exponent([0.0, np.log(2.0), np.log(0.5)])
        np.testing.assert_allclose(scale.as_linear(), [1.0, 2.0, 0.5], rtol=1e-6)
        np.testing.assert_allclose(Scale.linear([1.0, 2.0, 4.0]).as_exponent(),
                                   [0.0, np.log(2.0), np.log(4.0)], rtol=1e-6)

    def test_opacity_conversions(self):
        """Logit 0 is linear 0.5."""
        assert Opacity.logit(0.0).as_linear() == pytest.approx(0.5)
        assert Opacity.linear(0.5).as_logit() == pytest.approx(0.0, abs=1e-6)


class TestSplatPoint:
    """Test SplatPoint helpers."""

    def test_default_rotation(self):
        """Rotation defaults to identity (x, y, z, w)."""
        point = SplatPoint([0, 0, 0], Color.linear_float([1, 1, 1]), Opacity.linear(1.0), Scale.linear([1, 1, 1]))
        np.testing.assert_array_equal(point.rotation, [0, 0, 0, 1])

    def test_normalized(self):
        """normalized() converts to linear forms and a unit quaternion."""
        point = SplatPoint([1, 2, 3], Color.sh([[0, 0, 0]]), Opacity.logit(0.0),
                           Scale.exponent([0, 0, 0]), rotation=[0, 0, 0, 2])
        norm = point.normalized()
        assert norm.opacity.kind is OpacityKind.LINEAR
        assert norm.scale.kind is ScaleKind.LINEAR
        np.testing.assert_allclose(norm.rotation, [0, 0, 0, 1])

    def test_is_close_across_representations(self):
        """Equivalent points in different representations compare close."""
        a = SplatPoint([0, 0, 0], Color.linear_uint8([255, 0, 0]), Opacity.linear(0.5),
                       Scale.linear([1, 1, 1]), rotation=[0, 0, 0, 1])
        b = SplatPoint([0, 0, 0], Color.linear_float([1, 0, 0]), Opacity.logit(0.0),
                       Scale.exponent([0, 0, 0]), rotation=[0, 0, 0, -1])
        assert a.is_close(b)


class TestSplatCloud:
    """Test SplatCloud data structure."""

    def test_creation(self):
        """A cloud reports its count and keeps its shapes."""
        cloud = make_cloud(20)
        assert cloud.count == 20
        assert len(cloud) == 20
        assert cloud.positions.shape == (20, 3)

    def test_sh_colors_reshaped(self):
        """(N, 3) SH colors are promoted to (N, 1, 3)."""
        cloud = SplatCloud(
            positions=np.zeros((2, 3)), rotations=np.tile([0, 0, 0, 1.0], (2, 1)),
            scales=np.zeros((2, 3)), opacities=np.zeros(2), colors=np.zeros((2, 3)),
        )
        assert cloud.colors.shape == (2, 1, 3)
        assert cloud.sh_coefficient_count == 1

    def test_invalid_shapes(self):
        """Mismatched arrays raise ValueError."""
        with pytest.raises(ValueError):
            SplatCloud(positions=np.zeros((2, 3)), rotations=np.zeros((3, 4)),
                       scales=np.zeros((2, 3)), opacities=np.zeros(2), colors=np.zeros((2, 3)))
        with pytest.raises(ValueError):
            SplatCloud(positions=np.zeros((2, 3)), rotations=np.zeros((2, 4)),
                       scales=np.zeros((2, 3)), opacities=np.zeros(2), colors=np.zeros((2, 5, 3)))

    def test_subset(self):
        """Subsets pick rows by index."""
        cloud = make_cloud(10)
        subset = cloud.subset(np.array([0, 5, 9]))
        assert subset.count == 3
        np.testing.assert_array_equal(subset.positions[1], cloud.positions[5])
        assert subset.color_kind is cloud.color_kind

    def test_conversions(self):
        """Linear and log forms convert consistently."""
        cloud = make_cloud(5)
        np.testing.assert_allclose(cloud.exponent_scales(), np.log(0.1), rtol=1e-5)
        np.testing.assert_allclose(cloud.logit_opacities(), 0.0, atol=1e-6)
        np.testing.assert_allclose(cloud.sh_coefficients()[:, 0, :],
                                   (cloud.colors - 0.5) / SH_C0, rtol=1e-5, atol=1e-5)

    def test_bounds(self):
        """Bounds are the per-axis extremes, zeros when empty."""
        cloud = make_cloud(30)
        lo, hi = cloud.bounds()
        np.testing.assert_array_equal(lo, cloud.positions.min(axis=0))
        np.testing.assert_array_equal(hi, cloud.positions.max(axis=0))
        lo, hi = SplatCloud.empty().bounds()
        np.testing.assert_array_equal(lo, 0)

    def test_points_round_trip(self):
        """Materialized points rebuild an identical cloud."""
        cloud = make_cloud(8, ColorKind.LINEAR_UINT8)
        points = cloud.points()
        assert len(points) == 8
        assert points[3].color.kind is ColorKind.LINEAR_UINT8
        rebuilt = SplatCloud.from_points(points)
        np.testing.assert_array_equal(rebuilt.colors, cloud.colors)
        np.testing.assert_array_equal(rebuilt.positions, cloud.positions)

    def test_iter_batches(self):
        """Batches cover every point in order."""
        cloud = make_cloud(25)
        batches = list(cloud.iter_batches(10))
        assert [len(b) for b in batches] == [10, 10, 5]

    def test_from_points_mixed(self):
        """Mixed representations are unified to linear forms."""
        a = SplatPoint([0, 0, 0], Color.sh([[0, 0, 0]]), Opacity.logit(0.0), Scale.exponent([0, 0, 0]))
        b = SplatPoint([1, 1, 1], Color.linear_uint8([255, 255, 255]), Opacity.linear(1.0), Scale.linear([2, 2, 2]))
        cloud = SplatCloud.from_points([a, b])
        assert cloud.color_kind is ColorKind.LINEAR_FLOAT
        assert cloud.scale_kind is ScaleKind.LINEAR
        assert cloud.opacity_kind is OpacityKind.LINEAR
        np.testing.assert_allclose(cloud.colors, [[0.5, 0.5, 0.5], [1.0, 1.0, 1.0]], atol=1e-6)
        np.testing.assert_allclose(cloud.scales[0], [1.0, 1.0, 1.0])

    def test_from_points_empty(self):
        """No points give an empty cloud."""
        assert SplatCloud.from_points([]).count == 0

    def test_concatenate_and_merge(self):
        """Matching clouds concatenate; mismatched ones merge point by point."""
        a = make_cloud(3)
        b = make_cloud(4, seed=1)
        assert SplatCloud.concatenate([a, b]).count == 7

        c = make_cloud(2, ColorKind.LINEAR_UINT8)
        with pytest.raises(ValueError):
            SplatCloud.concatenate([a, c])
        merged = SplatCloud.merge([a, c])
        assert merged.count == 5
        assert merged.color_kind is ColorKind.LINEAR_FLOAT

    def test_dict_round_trip(self):
        """to_dict and from_dict preserve kinds."""
        cloud = make_cloud(4, ColorKind.LINEAR_UINT8)
        restored = SplatCloud.from_dict(cloud.to_dict())
        assert restored.color_kind is ColorKind.LINEAR_UINT8
        assert restored.scale_kind is ScaleKind.LINEAR
        np.testing.assert_array_equal(restored.colors, cloud.colors)
