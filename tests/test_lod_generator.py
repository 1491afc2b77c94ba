# ABOUTME: Test suite for LOD pruning strategies and octree construction
# ABOUTME: Checks selection counts, per-voxel spatial picks, leaf layout and interior level ranges

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splatio.lod_generator import LODGenerator, OctreeBuilder, importance_scores
from splatio.splat_cloud import SplatCloud
from splatio.splat_point import ColorKind, OpacityKind, ScaleKind


def make_cloud(positions, opacities=None, scales=None):
    positions = np.asarray(positions, dtype=np.float32)
    n = len(positions)
    return SplatCloud(
        positions=positions,
        rotations=np.tile([0.0, 0.0, 0.0, 1.0], (n, 1)),
        scales=np.ones((n, 3)) if scales is None else scales,
        opacities=np.linspace(0.1, 1.0, n) if opacities is None else opacities,
        colors=np.full((n, 3), 0.5),
        scale_kind=ScaleKind.LINEAR,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=ColorKind.LINEAR_FLOAT,
    )


def random_cloud(n, seed=0):
    rng = np.random.default_rng(seed)
    return make_cloud(rng.uniform(-10, 10, size=(n, 3)),
                      opacities=rng.uniform(0.05, 1.0, size=n),
                      scales=rng.uniform(0.01, 0.2, size=(n, 3)))


class TestLODGenerator:
    """Test pruning strategies."""

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            LODGenerator(strategy='random')

    def test_importance(self):
        """The splats with the largest opacity x volume are kept."""
        scales = np.ones((6, 3))
        scales[0] = 3.0
        opacities = np.full(6, 0.5)
        opacities[5] = 0.9
        cloud = make_cloud(np.zeros((6, 3)), opacities=opacities, scales=scales)
        indices = LODGenerator('importance').select_indices(cloud, 2)
        np.testing.assert_array_equal(indices, [0, 5])
        assert indices.dtype == np.int64

    def test_opacity(self):
        """The most opaque splats are kept, in ascending index order."""
        cloud = make_cloud(np.zeros((5, 3)), opacities=np.array([0.9, 0.1, 0.8, 0.2, 0.7]))
        np.testing.assert_array_equal(LODGenerator('opacity').select_indices(cloud, 3), [0, 2, 4])

    def test_target_edges(self):
        """Targets at or above the count keep everything, zero keeps nothing."""
        cloud = random_cloud(10)
        generator = LODGenerator()
        np.testing.assert_array_equal(generator.select_indices(cloud, 10), np.arange(10))
        assert len(generator.select_indices(cloud, 0)) == 0
        assert generator.generate_lod(cloud, 50) is cloud
        with pytest.raises(ValueError):
            generator.select_indices(cloud, -1)

    def test_spatial_one_per_voxel(self):
        """Each occupied voxel contributes its most important splat."""
        rng = np.random.default_rng(7)
        corners = np.array([[x, y, z] for x in (0, 1) for y in (0, 1) for z in (0, 1)], dtype=float)
        positions = np.repeat(corners, 10, axis=0) + rng.uniform(0, 0.01, size=(80, 3))
        opacities = rng.uniform(0.1, 1.0, size=80)
        cloud = make_cloud(positions, opacities=opacities)

        indices = LODGenerator('spatial').select_indices(cloud, 8)
        assert len(indices) == 8
        for corner in range(8):
            members = np.arange(corner * 10, corner * 10 + 10)
            best = members[np.argmax(opacities[members])]
            assert best in indices

    def test_spatial_trims_to_target(self):
        """Spatial selection never exceeds the target."""
        cloud = random_cloud(500)
        assert len(LODGenerator('spatial').select_indices(cloud, 20)) <= 20

    def test_generate_lods(self):
        """Levels come back largest first."""
        lods = LODGenerator().generate_lods(random_cloud(100), [10, 50, 25])
        assert [lod.count for lod in lods] == [50, 25, 10]

    def test_importance_scores(self):
        cloud = make_cloud(np.zeros((2, 3)), opacities=np.array([0.5, 1.0]),
                           scales=np.array([[1, 2, 3], [1, 1, 1]], dtype=float))
        np.testing.assert_allclose(importance_scores(cloud), [3.0, 1.0])


class TestOctreeBuilder:
    """Test octree construction."""

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            OctreeBuilder(leaf_capacity=0)
        with pytest.raises(ValueError):
            OctreeBuilder(reduction=1)
        with pytest.raises(ValueError):
            OctreeBuilder(strategy='random')

    def test_single_leaf(self):
        """A cloud under the leaf capacity is one root leaf."""
        result = OctreeBuilder(leaf_capacity=100).build(random_cloud(50))
        assert len(result.arena) == 1
        root = result.arena.root
        assert root.is_leaf
        assert root.lod_levels[0].splat_range == (0, 50)
        assert result.cloud.count == 50

    def test_leaves_partition_cloud(self):
        """Leaf ranges are disjoint, cover every splat and lie inside their bounds."""
        source = random_cloud(2000)
        result = OctreeBuilder(max_depth=6, leaf_capacity=100).build(source)
        arena, cloud = result.arena, result.cloud

        ranges = sorted(leaf.lod_levels[0].splat_range for leaf in arena.leaves)
        assert ranges[0][0] == 0 and ranges[-1][1] == 2000
        assert all(a[1] == b[0] for a, b in zip(ranges, ranges[1:]))
        for leaf in arena.leaves:
            start, stop = leaf.lod_levels[0].splat_range
            assert stop - start <= 100 or leaf.depth == 6
            for position in cloud.positions[start:stop]:
                assert leaf.bounds.contains(position)

    def test_interior_levels(self):
        """Interior nodes hold reduced levels stored after the leaf splats."""
        result = OctreeBuilder(max_depth=6, leaf_capacity=100, lod_count=2, reduction=4).build(
            random_cloud(1000))
        root = result.arena.root
        assert not root.is_leaf
        assert [lod.splat_count for lod in root.lod_levels] == [250, 62]
        thresholds = [lod.screen_space_error_threshold for lod in root.lod_levels]
        assert thresholds[0] < thresholds[1]

        interior_total = sum(lod.splat_count for node in result.arena if not node.is_leaf
                             for lod in node.lod_levels)
        assert result.cloud.count == 1000 + interior_total
        for node in result.arena:
            for lod in node.lod_levels:
                start, stop = lod.splat_range
                assert stop - start == lod.splat_count
                if not node.is_leaf:
                    assert start >= 1000

    def test_child_links(self):
        """Children point back at their parent one level deeper."""
        arena = OctreeBuilder(leaf_capacity=200).build(random_cloud(1000)).arena
        for node in arena:
            for child in arena.children(node.id):
                assert child.parent_id == node.id
                assert child.depth == node.depth + 1
                assert node.bounds.contains(child.bounds.center)

    def test_coincident_points(self):
        """Points at one location stop splitting immediately."""
        cloud = make_cloud(np.ones((300, 3)))
        result = OctreeBuilder(leaf_capacity=10).build(cloud)
        assert len(result.arena) == 1
        assert result.arena.root.lod_levels[0].splat_count == 300
