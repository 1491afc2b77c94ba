# ABOUTME: Octree scene model for level-of-detail streaming: bounds, nodes, LOD levels and an id-keyed arena
# ABOUTME: Residency is driven explicitly by the caller (acquire/release with a caller-advanced tick, then evict)

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .utils.logging_utils import get_logger

logger = get_logger('octree')

DEFAULT_COOLDOWN_TICKS = 100


@dataclass
class AABB:
    """Axis-aligned bounding box."""
    min: np.ndarray
    max: np.ndarray

    def __post_init__(self):
        self.min = np.asarray(self.min, dtype=np.float32).reshape(3)
        self.max = np.asarray(self.max, dtype=np.float32).reshape(3)

    @classmethod
    def from_points(cls, positions) -> 'AABB':
        positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
        if len(positions) == 0:
            return cls(np.zeros(3), np.zeros(3))
        return cls(positions.min(axis=0), positions.max(axis=0))

    @property
    def center(self) -> np.ndarray:
        return (self.min + self.max) * 0.5

    @property
    def size(self) -> np.ndarray:
        return self.max - self.min

    @property
    def half_extents(self) -> np.ndarray:
        return self.size * 0.5

    @property
    def diagonal_length(self) -> float:
        return float(np.linalg.norm(self.size))

    def expand(self, other) -> 'AABB':
        """Grow to include a point or another box. Returns self."""
        if isinstance(other, AABB):
            self.min = np.minimum(self.min, other.min)
            self.max = np.maximum(self.max, other.max)
        else:
            point = np.asarray(other, dtype=np.float32).reshape(3)
            self.min = np.minimum(self.min, point)
            self.max = np.maximum(self.max, point)
        return self

    def contains(self, point) -> bool:
        point = np.asarray(point, dtype=np.float32).reshape(3)
        return bool(np.all(point >= self.min) and np.all(point <= self.max))

    def intersects(self, other: 'AABB') -> bool:
        return bool(np.all(self.min <= other.max) and np.all(self.max >= other.min))

    def octant_index(self, point) -> int:
        """Octant 0-7: bit 0 set for x >= center, bit 1 for y, bit 2 for z."""
        point = np.asarray(point, dtype=np.float32).reshape(3)
        above = point >= self.center
        return int(above[0]) | (int(above[1]) << 1) | (int(above[2]) << 2)

    def octant_indices(self, positions) -> np.ndarray:
        """Vectorized ``octant_index`` for an (N, 3) array."""
        above = np.asarray(positions, dtype=np.float32).reshape(-1, 3) >= self.center
        bits = above.astype(np.int64)
        return bits[:, 0] | (bits[:, 1] << 1) | (bits[:, 2] << 2)

    def octant_bounds(self, index: int) -> 'AABB':
        c = self.center
        lo = self.min.copy()
        hi = self.max.copy()
        for axis in range(3):
            if index & (1 << axis):
                lo[axis] = c[axis]
            else:
                hi[axis] = c[axis]
        return AABB(lo, hi)

    def to_dict(self) -> dict:
        return {'min': self.min.tolist(), 'max': self.max.tolist()}

    @classmethod
    def from_dict(cls, data: dict) -> 'AABB':
        return cls(data['min'], data['max'])


@dataclass
class OctreeLODLevel:
    """
    One level of detail of a node.

    Either ``splat_range`` (start, stop) indexes an inline cloud, or
    ``resource`` names an external file holding the level's splats.
    """
    level: int
    splat_count: int
    screen_space_error_threshold: float
    splat_range: Optional[Tuple[int, int]] = None
    resource: Optional[str] = None
    is_loaded: bool = False

    def to_dict(self) -> dict:
        return {
            'level': self.level,
            'splat_count': self.splat_count,
            'screen_space_error_threshold': self.screen_space_error_threshold,
            'splat_range': list(self.splat_range) if self.splat_range is not None else None,
            'resource': self.resource,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'OctreeLODLevel':
        splat_range = data.get('splat_range')
        return cls(
            level=int(data['level']),
            splat_count=int(data['splat_count']),
            screen_space_error_threshold=float(data['screen_space_error_threshold']),
            splat_range=tuple(splat_range) if splat_range is not None else None,
            resource=data.get('resource'),
        )


@dataclass
class OctreeNode:
    """
    A node of the octree.

    Attributes:
        id: Stable integer id within its arena
        bounds: Spatial extent of the node
        lod_levels: Levels ordered finest first
        child_ids: Ids of child nodes (empty for leaves)
        parent_id: Id of the parent, None for the root
        depth: Distance from the root
        reference_count: Active users; nodes in use are never evicted
        last_used_tick: Tick of the most recent acquire or release
    """
    id: int
    bounds: AABB
    lod_levels: List[OctreeLODLevel] = field(default_factory=list)
    child_ids: List[int] = field(default_factory=list)
    parent_id: Optional[int] = None
    depth: int = 0
    reference_count: int = 0
    last_used_tick: int = 0

    @property
    def is_leaf(self) -> bool:
        return not self.child_ids

    @property
    def is_loaded(self) -> bool:
        return any(level.is_loaded for level in self.lod_levels)

    @property
    def total_splat_count(self) -> int:
        return sum(level.splat_count for level in self.lod_levels)

    def select_lod(self, error: float) -> Optional[int]:
        """
        Level to draw for a screen-space error.

        Returns the coarsest level whose threshold the error meets, falling
        back to the finest level. None when the node has no levels.
        """
        for lod in reversed(self.lod_levels):
            if error >= lod.screen_space_error_threshold:
                return lod.level
        return self.lod_levels[0].level if self.lod_levels else None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'bounds': self.bounds.to_dict(),
            'lod_levels': [level.to_dict() for level in self.lod_levels],
            'child_ids': list(self.child_ids),
            'parent_id': self.parent_id,
            'depth': self.depth,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'OctreeNode':
        return cls(
            id=int(data['id']),
            bounds=AABB.from_dict(data['bounds']),
            lod_levels=[OctreeLODLevel.from_dict(d) for d in data.get('lod_levels', [])],
            child_ids=[int(c) for c in data.get('child_ids', [])],
            parent_id=data.get('parent_id'),
            depth=int(data.get('depth', 0)),
        )


class OctreeArena:
    """
    Nodes keyed by stable integer ids.

    The arena never frees anything on its own: callers advance the tick,
    acquire and release nodes, and call ``evict`` when they want memory back.
    """

    VERSION = 1

    def __init__(self, root_id: int = 0):
        self.root_id = root_id
        self._nodes: Dict[int, OctreeNode] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._nodes

    def __iter__(self):
        return iter(self._nodes.values())

    def add(self, node: OctreeNode) -> OctreeNode:
        if node.id in self._nodes:
            raise ValueError(f"Duplicate octree node id: {node.id}")
        self._nodes[node.id] = node
        return node

    def get(self, node_id: int) -> OctreeNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown octree node id: {node_id}") from None

    @property
    def root(self) -> Optional[OctreeNode]:
        return self._nodes.get(self.root_id)

    @property
    def leaves(self) -> List[OctreeNode]:
        return [node for node in self._nodes.values() if node.is_leaf]

    def nodes_at_depth(self, depth: int) -> List[OctreeNode]:
        return [node for node in self._nodes.values() if node.depth == depth]

    def children(self, node_id: int) -> List[OctreeNode]:
        return [self._nodes[c] for c in self.get(node_id).child_ids]

    @property
    def max_depth(self) -> int:
        return max((node.depth for node in self._nodes.values()), default=0)

    @property
    def total_splat_count(self) -> int:
        return sum(node.total_splat_count for node in self._nodes.values())

    # --- Residency --------------------------------------------------------

    def acquire(self, node_id: int, tick: int) -> OctreeNode:
        node = self.get(node_id)
        node.reference_count += 1
        node.last_used_tick = tick
        return node

    def release(self, node_id: int, tick: Optional[int] = None) -> OctreeNode:
        node = self.get(node_id)
        if node.reference_count <= 0:
            raise ValueError(f"Octree node {node_id} released more times than acquired")
        node.reference_count -= 1
        if tick is not None:
            node.last_used_tick = tick
        return node

    def mark_loaded(self, node_id: int, level: Optional[int] = None) -> None:
        for lod in self._levels(node_id, level):
            lod.is_loaded = True

    def mark_unloaded(self, node_id: int, level: Optional[int] = None) -> None:
        for lod in self._levels(node_id, level):
            lod.is_loaded = False

    def _levels(self, node_id: int, level: Optional[int]) -> Iterable[OctreeLODLevel]:
        levels = self.get(node_id).lod_levels
        if level is None:
            return levels
        matching = [lod for lod in levels if lod.level == level]
        if not matching:
            raise KeyError(f"Octree node {node_id} has no LOD level {level}")
        return matching

    def eviction_candidates(self, current_tick: int,
                            cooldown: int = DEFAULT_COOLDOWN_TICKS) -> List[OctreeNode]:
        """Loaded, unreferenced nodes idle for longer than ``cooldown``, oldest first."""
        candidates = [
            node for node in self._nodes.values()
            if node.reference_count == 0 and node.is_loaded
            and current_tick - node.last_used_tick > cooldown
        ]
        return sorted(candidates, key=lambda node: (node.last_used_tick, node.id))

    def evict(self, current_tick: int, cooldown: int = DEFAULT_COOLDOWN_TICKS) -> List[int]:
        """Unload every eviction candidate and return their ids, oldest first."""
        evicted = []
        for node in self.eviction_candidates(current_tick, cooldown):
            self.mark_unloaded(node.id)
            evicted.append(node.id)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} octree nodes at tick {current_tick}")
        return evicted

    # --- Persistence ------------------------------------------------------

    def to_dict(self) -> dict:
        root = self.root
        return {
            'version': self.VERSION,
            'root_id': self.root_id,
            'node_count': len(self),
            'total_splat_count': self.total_splat_count,
            'max_depth': self.max_depth,
            'scene_bounds': root.bounds.to_dict() if root is not None else None,
            'nodes': [node.to_dict() for node in self._nodes.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'OctreeArena':
        if data.get('version', cls.VERSION) != cls.VERSION:
            raise ValueError(f"Unsupported octree version: {data.get('version')}")
        arena = cls(root_id=int(data.get('root_id', 0)))
        for node in data.get('nodes', []):
            arena.add(OctreeNode.from_dict(node))
        return arena

    def save(self, path) -> Path:
        path = Path(path)
        path.write_text(json.dumps(self.to_dict(), indent=2))
        return path

    @classmethod
    def load(cls, path) -> 'OctreeArena':
        return cls.from_dict(json.loads(Path(path).read_text()))
