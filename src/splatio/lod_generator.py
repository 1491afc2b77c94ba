# ABOUTME: Level of Detail (LOD) generation for splat clouds and octree construction
# ABOUTME: Implements importance-based, opacity-based, and spatial pruning strategies

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from .octree import AABB, OctreeArena, OctreeLODLevel, OctreeNode
from .splat_cloud import SplatCloud
from .utils.logging_utils import Timer, get_logger

logger = get_logger('lod')

STRATEGIES = ('importance', 'opacity', 'spatial')


class LODGenerator:
    """
    Generates reduced versions of a splat cloud.

    Available Pruning Strategies:

    1. 'importance' (default)
       - Keeps splats with highest visual impact
       - Metric: opacity x volume (product of linear scales)

    2. 'opacity'
       - Keeps the most opaque splats

    3. 'spatial'
       - Voxel grid subsampling, one splat per voxel
       - The most important splat of each voxel is kept

    Usage:
        lod_gen = LODGenerator(strategy='importance')
        lod_5k = lod_gen.generate_lod(cloud, 5000)
        lods = lod_gen.generate_lods(cloud, [5000, 25000, 100000])
    """

    def __init__(self, strategy: str = 'importance'):
        """
        Initialize LOD generator.

        Args:
            strategy: Pruning strategy - 'importance', 'opacity', or 'spatial'
        """
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy: {strategy}. Must be one of {', '.join(STRATEGIES)}")
        self.strategy = strategy

    def select_indices(self, cloud: SplatCloud, target_count: int) -> np.ndarray:
        """
        Indices of the splats to keep, ascending.

        Args:
            cloud: Cloud to prune
            target_count: Maximum number of splats to keep

        Returns:
            Sorted int64 index array of at most ``target_count`` entries
        """
        if target_count < 0:
            raise ValueError(f"target_count must be non-negative, got {target_count}")
        if target_count >= cloud.count:
            return np.arange(cloud.count, dtype=np.int64)
        if target_count == 0:
            return np.zeros(0, dtype=np.int64)

        if self.strategy == 'importance':
            indices = self._top(importance_scores(cloud), target_count)
        elif self.strategy == 'opacity':
            indices = self._top(cloud.linear_opacities(), target_count)
        else:
            indices = self._spatial(cloud, target_count)
        return np.sort(indices).astype(np.int64)

    def generate_lod(self, cloud: SplatCloud, target_count: int) -> SplatCloud:
        """Return a pruned copy of ``cloud`` holding at most ``target_count`` splats."""
        if target_count >= cloud.count:
            return cloud
        return cloud.subset(self.select_indices(cloud, target_count))

    def generate_lods(self, cloud: SplatCloud, target_counts: List[int]) -> List[SplatCloud]:
        """One pruned cloud per target count, largest first."""
        return [self.generate_lod(cloud, count) for count in sorted(target_counts, reverse=True)]

    @staticmethod
    def _top(scores: np.ndarray, target_count: int) -> np.ndarray:
        return np.argsort(scores, kind='stable')[-target_count:]

    def _spatial(self, cloud: SplatCloud, target_count: int) -> np.ndarray:
        grid_size = max(1, int(np.cbrt(target_count) * 1.5))
        positions = cloud.positions
        min_pos = positions.min(axis=0)
        extent = positions.max(axis=0) - min_pos

        voxel = ((positions - min_pos) / (extent + 1e-8) * grid_size).astype(np.int64)
        voxel = np.clip(voxel, 0, grid_size - 1)
        keys = voxel[:, 0] * grid_size ** 2 + voxel[:, 1] * grid_size + voxel[:, 2]

        # Most important splat first within each voxel
        importance = importance_scores(cloud)
        order = np.lexsort((-importance, keys))
        first = np.concatenate([[True], keys[order][1:] != keys[order][:-1]])
        selected = order[first]

        if len(selected) > target_count:
            selected = selected[self._top(importance[selected], target_count)]
        return selected


def importance_scores(cloud: SplatCloud) -> np.ndarray:
    """Opacity times volume for every splat."""
    return cloud.linear_opacities() * np.prod(cloud.linear_scales(), axis=1)


@dataclass
class OctreeBuildResult:
    """
    Output of ``OctreeBuilder.build``.

    Attributes:
        arena: The octree; every LOD level references ``cloud`` through its splat_range
        cloud: Leaf splats grouped by leaf, followed by the pruned interior levels
    """
    arena: OctreeArena
    cloud: SplatCloud


class OctreeBuilder:
    """
    Splits a cloud into an octree with pruned levels of detail.

    Leaves hold their splats at full detail. Each interior node gets
    ``lod_count`` levels, each ``reduction`` times smaller than the one
    before, drawn from every splat beneath it.
    """

    def __init__(self, max_depth: int = 8, leaf_capacity: int = 65536,
                 lod_count: int = 2, reduction: int = 4,
                 strategy: str = 'importance', error_scale: float = 1.0):
        if max_depth < 0:
            raise ValueError(f"max_depth must be non-negative, got {max_depth}")
        if leaf_capacity < 1:
            raise ValueError(f"leaf_capacity must be positive, got {leaf_capacity}")
        if lod_count < 1:
            raise ValueError(f"lod_count must be positive, got {lod_count}")
        if reduction < 2:
            raise ValueError(f"reduction must be at least 2, got {reduction}")
        self.max_depth = max_depth
        self.leaf_capacity = leaf_capacity
        self.lod_count = lod_count
        self.reduction = reduction
        self.error_scale = error_scale
        self.generator = LODGenerator(strategy)

    def build(self, cloud: SplatCloud) -> OctreeBuildResult:
        with Timer(f"Octree build ({cloud.count} splats)", logger):
            self._arena = OctreeArena(root_id=0)
            self._cloud = cloud
            self._leaf_indices: List[np.ndarray] = []
            self._leaf_total = 0
            self._interior = []

            bounds = AABB.from_points(cloud.positions)
            self._build_node(np.arange(cloud.count, dtype=np.int64), bounds, 0, None)

            # Interior levels live after all leaf splats
            offset = self._leaf_total
            chunks = list(self._leaf_indices)
            for lod, indices in self._interior:
                lod.splat_range = (offset, offset + len(indices))
                offset += len(indices)
                chunks.append(indices)

            order = np.concatenate(chunks) if chunks else np.zeros(0, dtype=np.int64)
            result = OctreeBuildResult(self._arena, cloud.subset(order))

        logger.info(f"Octree: {len(result.arena)} nodes, {len(result.arena.leaves)} leaves, "
                    f"depth {result.arena.max_depth}")
        return result

    def _build_node(self, indices: np.ndarray, bounds: AABB, depth: int,
                    parent_id: Optional[int]) -> int:
        node = self._arena.add(OctreeNode(id=len(self._arena), bounds=bounds,
                                          parent_id=parent_id, depth=depth))

        if (len(indices) <= self.leaf_capacity or depth >= self.max_depth
                or np.all(bounds.size == 0)):
            start = self._leaf_total
            self._leaf_total += len(indices)
            self._leaf_indices.append(indices)
            node.lod_levels.append(OctreeLODLevel(
                level=0, splat_count=len(indices), screen_space_error_threshold=0.0,
                splat_range=(start, self._leaf_total)))
            return node.id

        octants = bounds.octant_indices(self._cloud.positions[indices])
        for octant in range(8):
            members = indices[octants == octant]
            if len(members) == 0:
                continue
            child_id = self._build_node(members, bounds.octant_bounds(octant), depth + 1, node.id)
            node.child_ids.append(child_id)

        self._add_interior_levels(node, indices)
        return node.id

    def _add_interior_levels(self, node: OctreeNode, indices: np.ndarray) -> None:
        subset = self._cloud.subset(indices)
        diagonal = node.bounds.diagonal_length
        target = len(indices)
        for level in range(self.lod_count):
            target = max(1, target // self.reduction)
            kept = indices[self.generator.select_indices(subset, target)]
            lod = OctreeLODLevel(
                level=level,
                splat_count=len(kept),
                screen_space_error_threshold=self.error_scale * diagonal * (level + 1),
            )
            node.lod_levels.append(lod)
            self._interior.append((lod, kept))
