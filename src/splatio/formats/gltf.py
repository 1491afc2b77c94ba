# ABOUTME: Reader for glTF 2.0 / GLB scenes carrying KHR_gaussian_splatting point primitives
# ABOUTME: Resolves buffers and accessors, then applies each node's uniform TRS transform to its splats

import base64
import binascii
import json
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import trimesh.transformations as tf
from scipy.spatial.transform import Rotation

from ..errors import GltfError, HeaderError, ResourceMissingError, TruncatedDataError
from ..reader import SceneReader
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind
from ..utils.logging_utils import get_logger

logger = get_logger('gltf')

GLB_MAGIC = 0x46546C67  # "glTF"
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

EXTENSION = 'KHR_gaussian_splatting'
ATTR_POSITION = 'POSITION'
ATTR_COLOR = 'COLOR_0'
ATTR_ROTATION = f'{EXTENSION}:ROTATION'
ATTR_SCALE = f'{EXTENSION}:SCALE'
ATTR_OPACITY = f'{EXTENSION}:OPACITY'
SH_BAND_SIZES = {0: 1, 1: 3, 2: 5, 3: 7}

MODE_POINTS = 0
UNIFORM_SCALE_EPSILON = 1e-4

COMPONENT_TYPES = {
    5120: np.dtype('i1'),
    5121: np.dtype('u1'),
    5122: np.dtype('<i2'),
    5123: np.dtype('<u2'),
    5125: np.dtype('<u4'),
    5126: np.dtype('<f4'),
}
COMPONENT_COUNTS = {'SCALAR': 1, 'VEC2': 2, 'VEC3': 3, 'VEC4': 4}


def sh_attribute(degree: int, coefficient: int) -> str:
    return f'{EXTENSION}:SH_DEGREE_{degree}_COEF_{coefficient}'


def parse_glb(data: bytes) -> Tuple[bytes, Optional[bytes]]:
    """
    Split a GLB container into its JSON and (optional) BIN chunks.

    Raises:
        HeaderError: bad magic, version or chunk layout
        GltfError: no JSON chunk
    """
    if len(data) < 12:
        raise HeaderError("GLB data too short for header")
    magic, version, total_length = struct.unpack_from('<III', data, 0)
    if magic != GLB_MAGIC:
        raise HeaderError(f"Invalid GLB magic number 0x{magic:08X}")
    if version != GLB_VERSION:
        raise HeaderError(f"Unsupported GLB version: {version}")
    if total_length > len(data):
        raise HeaderError(f"GLB declares {total_length} bytes, file has {len(data)}")

    json_chunk = bin_chunk = None
    offset = 12
    while offset + 8 <= len(data):
        length, chunk_type = struct.unpack_from('<II', data, offset)
        start = offset + 8
        end = start + length
        if end > len(data):
            raise HeaderError("GLB chunk extends past end of file")
        if chunk_type == CHUNK_JSON:
            json_chunk = data[start:end]
        elif chunk_type == CHUNK_BIN:
            bin_chunk = data[start:end]
        offset = end

    if json_chunk is None:
        raise GltfError("GLB has no JSON chunk")
    return json_chunk, bin_chunk


def decode_data_uri(uri: str) -> bytes:
    marker = 'base64,'
    index = uri.find(marker)
    if index < 0:
        raise GltfError("Only base64 data URIs are supported")
    try:
        return base64.b64decode(uri[index + len(marker):], validate=True)
    except (binascii.Error, ValueError) as e:
        raise GltfError(f"Invalid base64 buffer data: {e}") from e


def load_buffers(root: dict, base_dir: Path, glb_bin: Optional[bytes]) -> List[bytes]:
    buffers = []
    for index, buffer in enumerate(root.get('buffers') or []):
        uri = buffer.get('uri')
        if uri is None:
            if index == 0 and glb_bin is not None:
                buffers.append(glb_bin)
                continue
            raise GltfError(f"Buffer {index} has no uri and no GLB binary chunk")
        if uri.startswith('data:'):
            buffers.append(decode_data_uri(uri))
            continue
        path = base_dir / uri
        if not path.is_file():
            raise ResourceMissingError(path, f"glTF buffer not found: {path}")
        buffers.append(path.read_bytes())
    return buffers


@dataclass
class NodeTransform:
    """Translation, rotation and uniform scale of a scene node."""
    translation: np.ndarray
    rotation: Rotation
    scale: float = 1.0

    @classmethod
    def identity(cls) -> 'NodeTransform':
        return cls(np.zeros(3), Rotation.identity(), 1.0)

    @classmethod
    def from_node(cls, node: dict) -> 'NodeTransform':
        """
        Build a transform from a node's ``matrix`` or TRS properties.

        Raises:
            GltfError: non-uniform or non-positive scale
        """
        matrix = node.get('matrix')
        if matrix is not None and len(matrix) == 16:
            return cls.from_matrix(np.asarray(matrix, dtype=np.float64).reshape(4, 4).T)

        translation = _padded(node.get('translation'), (0.0, 0.0, 0.0))
        xyzw = _padded(node.get('rotation'), (0.0, 0.0, 0.0, 1.0))
        scale = _padded(node.get('scale'), (1.0, 1.0, 1.0))
        _check_scale(scale)
        return cls(translation, _rotation_from_quat(xyzw), float(scale[0]))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> 'NodeTransform':
        """Decompose a row-major 4x4 matrix using its column lengths as scale."""
        scale = np.linalg.norm(matrix[:3, :3], axis=0)
        _check_scale(scale)
        rotation = Rotation.from_matrix(matrix[:3, :3] / scale[0])
        return cls(np.asarray(tf.translation_from_matrix(matrix)), rotation, float(scale[0]))

    def combined(self, child: 'NodeTransform') -> 'NodeTransform':
        if self.scale <= 0 or child.scale <= 0:
            raise GltfError("Node scale must be positive")
        return NodeTransform(
            translation=self.translation + self.rotation.apply(child.translation * self.scale),
            rotation=self.rotation * child.rotation,
            scale=self.scale * child.scale,
        )

    def matrix(self) -> np.ndarray:
        """Row-major 4x4 matrix equivalent of this transform."""
        return tf.compose_matrix(scale=[self.scale] * 3,
                                 angles=self.rotation.as_euler('xyz'),
                                 translate=self.translation)


def _padded(values, default) -> np.ndarray:
    result = np.array(default, dtype=np.float64)
    if values:
        count = min(len(values), len(result))
        result[:count] = values[:count]
    return result


def _check_scale(scale) -> None:
    if abs(scale[0] - scale[1]) > UNIFORM_SCALE_EPSILON or abs(scale[0] - scale[2]) > UNIFORM_SCALE_EPSILON:
        raise GltfError("non-uniform node scale")
    if scale[0] <= 0:
        raise GltfError("Node scale must be positive")


def _rotation_from_quat(xyzw) -> Rotation:
    if np.linalg.norm(xyzw) == 0:
        return Rotation.identity()
    return Rotation.from_quat(xyzw)


class AccessorReader:
    """Reads typed accessor data out of resolved buffers."""

    def __init__(self, root: dict, buffers: List[bytes]):
        self.accessors = root.get('accessors') or []
        self.buffer_views = root.get('bufferViews') or []
        self.buffers = buffers

    def component_count(self, index: int) -> int:
        return COMPONENT_COUNTS.get(self._accessor(index).get('type'), 0)

    def read(self, index: int, components: Optional[int] = None) -> np.ndarray:
        """
        Return accessor ``index`` as an (count, components) float32 array.

        Raises:
            GltfError: unknown accessor, buffer view, type or sparse storage
            TruncatedDataError: the data runs past the end of its buffer
        """
        accessor = self._accessor(index)
        if accessor.get('sparse') is not None:
            raise GltfError("Sparse accessors are not supported")

        count = int(accessor.get('count', 0))
        width = COMPONENT_COUNTS.get(accessor.get('type'), 0)
        if width == 0 or (components is not None and width != components):
            raise GltfError(f"Unsupported accessor type {accessor.get('type')!r} for accessor {index}")
        dtype = COMPONENT_TYPES.get(accessor.get('componentType'))
        if dtype is None:
            raise GltfError(f"Unsupported component type {accessor.get('componentType')}")

        view_index = accessor.get('bufferView')
        if view_index is None or not 0 <= view_index < len(self.buffer_views):
            raise GltfError(f"Accessor {index} has no valid bufferView")
        view = self.buffer_views[view_index]
        buffer_index = view.get('buffer', -1)
        if not 0 <= buffer_index < len(self.buffers):
            raise GltfError(f"bufferView {view_index} references missing buffer {buffer_index}")
        buffer = self.buffers[buffer_index]

        element_size = dtype.itemsize * width
        stride = view.get('byteStride') or element_size
        if stride < element_size:
            raise TruncatedDataError(f"byteStride {stride} smaller than element size {element_size}")
        base = int(view.get('byteOffset', 0)) + int(accessor.get('byteOffset', 0))
        # The last element only needs element_size bytes, not a full stride
        needed = stride * (count - 1) + element_size if count else 0
        if base + needed > len(buffer):
            raise TruncatedDataError(f"Accessor {index} reads past end of buffer",
                                     offset=base, size=needed, available=len(buffer))
        if count == 0:
            return np.zeros((0, width), dtype=np.float32)

        element = np.dtype({'names': ['v'], 'formats': [(dtype, (width,))],
                            'offsets': [0], 'itemsize': stride})
        data = bytes(buffer[base:base + needed]) + b'\x00' * (stride - element_size)
        raw = np.frombuffer(data, dtype=element, count=count)['v']
        return self._to_float(raw.reshape(count, width), dtype, bool(accessor.get('normalized')))

    @staticmethod
    def _to_float(raw: np.ndarray, dtype: np.dtype, normalized: bool) -> np.ndarray:
        values = raw.astype(np.float32)
        if not normalized or dtype.kind == 'f':
            return values
        limit = float(np.iinfo(dtype).max)
        if dtype.kind == 'i':
            return np.clip(values / limit, -1.0, 1.0)
        return values / limit

    def _accessor(self, index: int) -> dict:
        if not isinstance(index, int) or not 0 <= index < len(self.accessors):
            raise GltfError(f"Missing accessor {index}")
        return self.accessors[index]


def load_gltf(path) -> Tuple[dict, List[bytes]]:
    """Read the glTF JSON document and its buffers from a .gltf or .glb file."""
    path = Path(path)
    data = path.read_bytes()
    glb_bin = None
    if path.suffix.lower() == '.glb':
        data, glb_bin = parse_glb(data)
    elif path.suffix.lower() != '.gltf':
        raise GltfError(f"Unsupported glTF file type: {path.suffix}")
    try:
        root = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise GltfError(f"Invalid glTF JSON: {e}") from e
    return root, load_buffers(root, path.parent, glb_bin)


class GltfSceneBuilder:
    """Walks the scene graph and converts gaussian primitives into clouds."""

    def __init__(self, root: dict, buffers: List[bytes]):
        self.root = root
        self.accessors = AccessorReader(root, buffers)
        self.meshes = root.get('meshes') or []
        self.nodes = root.get('nodes') or []
        self.clouds: List[SplatCloud] = []

    def build(self) -> SplatCloud:
        if not self.meshes or not root_has_data(self.root):
            return SplatCloud.empty()

        if self.nodes and self.root.get('scenes'):
            for index in self._scene_roots():
                self._traverse(index, NodeTransform.identity(), set())
        else:
            for index in range(len(self.meshes)):
                self._append_mesh(index, NodeTransform.identity())

        if not self.clouds:
            return SplatCloud.empty()
        return SplatCloud.merge(self.clouds)

    def _scene_roots(self) -> List[int]:
        scenes = self.root['scenes']
        scene_index = self.root.get('scene', 0)
        nodes = []
        if 0 <= scene_index < len(scenes):
            nodes = scenes[scene_index].get('nodes') or []
        if nodes:
            return list(nodes)
        children = {c for node in self.nodes for c in node.get('children') or []}
        return [i for i in range(len(self.nodes)) if i not in children]

    def _traverse(self, index: int, parent: NodeTransform, visiting: set) -> None:
        if not 0 <= index < len(self.nodes) or index in visiting:
            return
        node = self.nodes[index]
        transform = parent.combined(NodeTransform.from_node(node))
        if node.get('mesh') is not None:
            self._append_mesh(node['mesh'], transform)
        for child in node.get('children') or []:
            self._traverse(child, transform, visiting | {index})

    def _append_mesh(self, index: int, transform: NodeTransform) -> None:
        if not 0 <= index < len(self.meshes):
            return
        for primitive in self.meshes[index].get('primitives') or []:
            cloud = self._primitive_cloud(primitive, transform)
            if cloud is not None and cloud.count:
                self.clouds.append(cloud)

    def _primitive_cloud(self, primitive: dict, transform: NodeTransform) -> Optional[SplatCloud]:
        if primitive.get('mode', 4) != MODE_POINTS:
            return None
        extension = (primitive.get('extensions') or {}).get(EXTENSION)
        if extension is None:
            return None
        if extension.get('kernel', 'ellipse') != 'ellipse':
            logger.debug(f"Skipping primitive with kernel {extension.get('kernel')!r}")
            return None

        attributes: Dict[str, int] = primitive.get('attributes') or {}
        required = (ATTR_POSITION, ATTR_ROTATION, ATTR_SCALE, ATTR_OPACITY)
        if any(name not in attributes for name in required):
            return None

        positions = self.accessors.read(attributes[ATTR_POSITION], 3)
        rotations = self.accessors.read(attributes[ATTR_ROTATION], 4)
        scales = self.accessors.read(attributes[ATTR_SCALE], 3)
        opacities = self.accessors.read(attributes[ATTR_OPACITY], 1)[:, 0]
        count = len(positions)
        if len(rotations) != count or len(scales) != count or len(opacities) != count:
            logger.warning("Skipping gaussian primitive with mismatched attribute counts")
            return None

        colors, color_kind = self._colors(attributes, count)
        if colors is None:
            logger.warning("Skipping gaussian primitive without SH or COLOR_0 data")
            return None

        local = Rotation.from_quat(_safe_quats(rotations))
        world_rotations = (transform.rotation * local).as_quat().astype(np.float32)
        world_positions = transform.translation + transform.rotation.apply(positions * transform.scale)
        world_scales = scales + np.float32(np.log(transform.scale)) if transform.scale != 1 else scales

        return SplatCloud(
            positions=world_positions.astype(np.float32),
            rotations=world_rotations,
            scales=world_scales,
            opacities=np.clip(opacities, 0.0, 1.0),
            colors=colors,
            scale_kind=ScaleKind.EXPONENT,
            opacity_kind=OpacityKind.LINEAR,
            color_kind=color_kind,
        )

    def _colors(self, attributes: Dict[str, int], count: int):
        bands = []
        for degree in range(4):
            names = [sh_attribute(degree, k) for k in range(SH_BAND_SIZES[degree])]
            present = [name for name in names if name in attributes]
            if not present:
                break
            if len(present) != len(names):
                logger.warning(f"Incomplete SH degree {degree} attributes, ignoring higher bands")
                break
            values = [self.accessors.read(attributes[name], 3) for name in names]
            if any(len(v) != count for v in values):
                logger.warning(f"SH degree {degree} count mismatch, ignoring higher bands")
                break
            bands.extend(values)

        if bands:
            return np.stack(bands, axis=1), ColorKind.SPHERICAL_HARMONIC

        if ATTR_COLOR in attributes:
            index = attributes[ATTR_COLOR]
            width = self.accessors.component_count(index)
            if width not in (3, 4):
                raise GltfError(f"COLOR_0 must be VEC3 or VEC4, got {width} components")
            rgba = self.accessors.read(index, width)
            if len(rgba) == count:
                return rgba[:, :3], ColorKind.LINEAR_FLOAT
        return None, None


def root_has_data(root: dict) -> bool:
    return bool(root.get('accessors')) and bool(root.get('bufferViews'))


def _safe_quats(xyzw: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(xyzw, axis=1)
    result = xyzw.astype(np.float64)
    result[norms == 0] = (0.0, 0.0, 0.0, 1.0)
    return result


def read_gltf(path) -> SplatCloud:
    root, buffers = load_gltf(path)
    cloud = GltfSceneBuilder(root, buffers).build()
    logger.debug(f"glTF {Path(path).name}: {cloud.count} gaussians")
    return cloud


class GltfSceneReader(SceneReader):
    """Reads ``.gltf`` and ``.glb`` files using KHR_gaussian_splatting."""

    format_name = 'glTF'

    def decode_cloud(self) -> SplatCloud:
        return read_gltf(self.source)
