# ABOUTME: Test suite for the octree scene model
# ABOUTME: Covers bounding boxes, LOD selection, caller-driven residency and JSON persistence

import json
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splatio.octree import AABB, OctreeArena, OctreeLODLevel, OctreeNode


def unit_box():
    return AABB([0, 0, 0], [2, 2, 2])


def make_node(node_id, thresholds=(0.0, 1.0, 2.0), parent_id=None, depth=0):
    levels = [OctreeLODLevel(level=i, splat_count=10 * (i + 1), screen_space_error_threshold=t,
                             splat_range=(0, 10 * (i + 1)))
              for i, t in enumerate(thresholds)]
    return OctreeNode(id=node_id, bounds=unit_box(), lod_levels=levels,
                      parent_id=parent_id, depth=depth)


def small_arena():
    arena = OctreeArena()
    root = arena.add(make_node(0))
    for child_id in (1, 2):
        arena.add(make_node(child_id, thresholds=(0.0,), parent_id=0, depth=1))
        root.child_ids.append(child_id)
    return arena


class TestAABB:
    """Test bounding box helpers."""

    def test_geometry(self):
        box = unit_box()
        np.testing.assert_array_equal(box.center, [1, 1, 1])
        np.testing.assert_array_equal(box.half_extents, [1, 1, 1])
        assert box.diagonal_length == pytest.approx(np.sqrt(12.0))

    def test_from_points(self):
        """Bounds wrap the points, zeros when there are none."""
        box = AABB.from_points([[1, -2, 3], [-1, 4, 0]])
        np.testing.assert_array_equal(box.min, [-1, -2, 0])
        np.testing.assert_array_equal(box.max, [1, 4, 3])
        np.testing.assert_array_equal(AABB.from_points(np.zeros((0, 3))).size, 0)

    def test_octants(self):
        """Bit 0 is x, bit 1 is y and bit 2 is z."""
        box = unit_box()
        assert box.octant_index([1.5, 0.5, 1.5]) == 5
        assert box.octant_index([0.5, 1.5, 0.5]) == 2
        np.testing.assert_array_equal(
            box.octant_indices([[1.5, 0.5, 1.5], [0.5, 1.5, 0.5], [1, 1, 1]]), [5, 2, 7])
        child = box.octant_bounds(5)
        np.testing.assert_array_equal(child.min, [1, 0, 1])
        np.testing.assert_array_equal(child.max, [2, 1, 2])

    def test_contains_intersects_expand(self):
        box = unit_box()
        assert box.contains([2, 2, 2])
        assert not box.contains([2.1, 0, 0])
        assert box.intersects(AABB([1, 1, 1], [3, 3, 3]))
        assert not box.intersects(AABB([3, 3, 3], [4, 4, 4]))
        box.expand([5, -1, 0]).expand(AABB([0, 0, 0], [0, 0, 9]))
        np.testing.assert_array_equal(box.min, [0, -1, 0])
        np.testing.assert_array_equal(box.max, [5, 2, 9])


class TestOctreeNode:
    """Test node helpers."""

    def test_select_lod(self):
        """The coarsest level whose threshold the error meets is chosen."""
        node = make_node(0)
        assert node.select_lod(0.5) == 0
        assert node.select_lod(1.0) == 1
        assert node.select_lod(1.5) == 1
        assert node.select_lod(10.0) == 2

    def test_select_lod_fallback(self):
        """Errors below every threshold fall back to the finest level."""
        assert make_node(0, thresholds=(0.5, 1.0)).select_lod(0.1) == 0
        assert OctreeNode(id=0, bounds=unit_box()).select_lod(1.0) is None

    def test_counts(self):
        node = make_node(0)
        assert node.is_leaf
        assert not node.is_loaded
        assert node.total_splat_count == 60


class TestOctreeArena:
    """Test the id-keyed arena."""

    def test_lookup(self):
        """Nodes are found by id; unknown ids raise KeyError."""
        arena = small_arena()
        assert len(arena) == 3
        assert 2 in arena
        assert arena.root.id == 0
        assert [n.id for n in arena.children(0)] == [1, 2]
        assert {n.id for n in arena.leaves} == {1, 2}
        assert arena.max_depth == 1
        assert [n.id for n in arena.nodes_at_depth(1)] == [1, 2]
        with pytest.raises(KeyError):
            arena.get(99)

    def test_duplicate_id(self):
        arena = small_arena()
        with pytest.raises(ValueError):
            arena.add(make_node(1))

    def test_acquire_release(self):
        """Reference counts track acquires and releases."""
        arena = small_arena()
        arena.acquire(1, tick=5)
        arena.acquire(1, tick=6)
        node = arena.release(1)
        assert node.reference_count == 1
        assert node.last_used_tick == 6
        arena.release(1, tick=9)
        assert node.last_used_tick == 9
        with pytest.raises(ValueError):
            arena.release(1)

    def test_mark_loaded(self):
        """Single levels or whole nodes can be marked loaded."""
        arena = small_arena()
        arena.mark_loaded(0, level=1)
        assert arena.get(0).is_loaded
        assert [lod.is_loaded for lod in arena.get(0).lod_levels] == [False, True, False]
        arena.mark_unloaded(0)
        assert not arena.get(0).is_loaded
        with pytest.raises(KeyError):
            arena.mark_loaded(0, level=7)

    def test_eviction(self):
        """Only loaded, unreferenced and idle nodes are evicted, oldest first."""
        arena = small_arena()
        for node_id, tick in ((0, 50), (1, 10), (2, 20)):
            arena.mark_loaded(node_id)
            arena.acquire(node_id, tick)
            arena.release(node_id)
        arena.acquire(2, tick=20)

        candidates = arena.eviction_candidates(current_tick=130, cooldown=100)
        assert [n.id for n in candidates] == [1]
        assert arena.evict(current_tick=200, cooldown=100) == [1, 0]
        assert not arena.get(1).is_loaded
        assert arena.get(2).is_loaded
        assert arena.evict(current_tick=200, cooldown=100) == []

    def test_no_eviction_without_call(self):
        """Idle nodes stay loaded until evict is called."""
        arena = small_arena()
        arena.mark_loaded(1)
        arena.eviction_candidates(current_tick=10_000)
        assert arena.get(1).is_loaded


class TestOctreePersistence:
    """Test JSON serialization."""

    def test_header(self):
        data = small_arena().to_dict()
        assert data['version'] == OctreeArena.VERSION
        assert data['node_count'] == 3
        assert data['max_depth'] == 1
        assert data['total_splat_count'] == 60 + 10 + 10
        assert data['scene_bounds'] == {'min': [0, 0, 0], 'max': [2, 2, 2]}

    def test_save_load(self, tmp_path):
        """Saved arenas load with identical structure; residency is not persisted."""
        arena = small_arena()
        arena.mark_loaded(0)
        path = arena.save(tmp_path / 'octree.json')
        loaded = OctreeArena.load(path)
        assert len(loaded) == 3
        assert loaded.get(0).child_ids == [1, 2]
        assert loaded.get(1).parent_id == 0
        assert loaded.get(0).lod_levels[2].splat_range == (0, 30)
        assert loaded.get(0).lod_levels[1].screen_space_error_threshold == 1.0
        assert not loaded.get(0).is_loaded

    def test_version_mismatch(self, tmp_path):
        path = tmp_path / 'octree.json'
        path.write_text(json.dumps({'version': 99, 'nodes': []}))
        with pytest.raises(ValueError):
            OctreeArena.load(path)
