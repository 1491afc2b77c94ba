# ABOUTME: PLY reader and writer for gaussian splat point clouds
# ABOUTME: Parses ascii and binary headers, maps aliased vertex properties onto a SplatCloud

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..errors import HeaderError, TruncatedDataError, ValidationError
from ..quantization import normalize_quaternions
from ..reader import SceneReader
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind, SH_COEFFICIENT_COUNTS
from ..utils.logging_utils import get_logger

logger = get_logger('ply')

VERTEX_ELEMENT = 'vertex'

FORMATS = {
    'ascii': None,
    'binary_little_endian': '<',
    'binary_big_endian': '>',
}

# PLY scalar type names to numpy type codes
PLY_TYPES = {
    'char': 'i1', 'int8': 'i1',
    'uchar': 'u1', 'uint8': 'u1',
    'short': 'i2', 'int16': 'i2',
    'ushort': 'u2', 'uint16': 'u2',
    'int': 'i4', 'int32': 'i4',
    'uint': 'u4', 'uint32': 'u4',
    'float': 'f4', 'float32': 'f4',
    'double': 'f8', 'float64': 'f8',
}

# Accepted property names per canonical field; the first entry is written
POSITION_NAMES = (('x', 'px', 'pos_x', 'position_x'),
                  ('y', 'py', 'pos_y', 'position_y'),
                  ('z', 'pz', 'pos_z', 'position_z'))
NORMAL_NAMES = ('nx', 'ny', 'nz')
DC_NAMES = ('f_dc_0', 'f_dc_1', 'f_dc_2')
REST_PREFIX = 'f_rest_'
COLOR_NAMES = (('red', 'r', 'diffuse_red'),
               ('green', 'g', 'diffuse_green'),
               ('blue', 'b', 'diffuse_blue'))
SCALE_NAMES = (('scale_0', 'scale_x', 'sx'),
               ('scale_1', 'scale_y', 'sy'),
               ('scale_2', 'scale_z', 'sz'))
OPACITY_NAMES = ('opacity', 'alpha')
ROTATION_NAMES = (('rot_0', 'rot_w'),
                  ('rot_1', 'rot_x'),
                  ('rot_2', 'rot_y'),
                  ('rot_3', 'rot_z'))

GREY = 0.5


@dataclass
class PLYProperty:
    name: str
    type: str
    count_type: Optional[str] = None

    @property
    def is_list(self) -> bool:
        return self.count_type is not None


@dataclass
class PLYElement:
    name: str
    count: int
    properties: List[PLYProperty] = field(default_factory=list)

    def property_names(self) -> List[str]:
        return [p.name for p in self.properties]

    def dtype(self, byte_order: str = '<') -> np.dtype:
        """Structured dtype of one record. Only valid without list properties."""
        return np.dtype([(p.name, byte_order + PLY_TYPES[p.type]) for p in self.properties])


@dataclass
class PLYHeader:
    format: str
    version: str
    elements: List[PLYElement]
    comments: List[str]
    size: int

    @property
    def byte_order(self) -> Optional[str]:
        return FORMATS[self.format]

    def element(self, name: str) -> Optional[PLYElement]:
        for element in self.elements:
            if element.name == name:
                return element
        return None


_END_HEADER = re.compile(rb'end_header\r?\n')


def parse_header(data: bytes) -> PLYHeader:
    """
    Parse the text header of a PLY file.

    Raises:
        HeaderError: missing ``ply`` signature or ``end_header``, unknown
            format, or an unknown property type
    """
    if not data.startswith(b'ply'):
        raise HeaderError("Not a PLY file: missing 'ply' signature")
    match = _END_HEADER.search(data)
    if match is None:
        raise HeaderError("PLY header has no end_header line")

    fmt = version = None
    elements: List[PLYElement] = []
    comments: List[str] = []
    for raw_line in data[:match.start()].decode('ascii', errors='replace').splitlines()[1:]:
        parts = raw_line.split()
        if not parts:
            continue
        keyword = parts[0]
        if keyword == 'format':
            if len(parts) < 3 or parts[1] not in FORMATS:
                raise HeaderError(f"Unsupported PLY format line: {raw_line!r}")
            fmt, version = parts[1], parts[2]
        elif keyword in ('comment', 'obj_info'):
            comments.append(raw_line.partition(' ')[2])
        elif keyword == 'element':
            if len(parts) != 3:
                raise HeaderError(f"Malformed PLY element line: {raw_line!r}")
            elements.append(PLYElement(parts[1], int(parts[2])))
        elif keyword == 'property':
            if not elements:
                raise HeaderError("PLY property declared before any element")
            if parts[1] == 'list':
                if len(parts) != 5 or parts[2] not in PLY_TYPES or parts[3] not in PLY_TYPES:
                    raise HeaderError(f"Malformed PLY list property: {raw_line!r}")
                elements[-1].properties.append(PLYProperty(parts[4], parts[3], parts[2]))
            else:
                if len(parts) != 3 or parts[1] not in PLY_TYPES:
                    raise HeaderError(f"Unknown PLY property type: {raw_line!r}")
                elements[-1].properties.append(PLYProperty(parts[2], parts[1]))
        else:
            logger.debug(f"Ignoring PLY header line: {raw_line!r}")

    if fmt is None:
        raise HeaderError("PLY header has no format line")
    return PLYHeader(fmt, version, elements, comments, match.end())


def _skip_binary_element(data: bytes, offset: int, element: PLYElement, byte_order: str) -> int:
    if not any(p.is_list for p in element.properties):
        return offset + element.count * element.dtype(byte_order).itemsize
    for _ in range(element.count):
        for prop in element.properties:
            if prop.is_list:
                count_dtype = np.dtype(byte_order + PLY_TYPES[prop.count_type])
                if offset + count_dtype.itemsize > len(data):
                    raise TruncatedDataError(f"PLY element '{element.name}' truncated")
                length = int(np.frombuffer(data, count_dtype, 1, offset)[0])
                offset += count_dtype.itemsize + length * np.dtype(PLY_TYPES[prop.type]).itemsize
            else:
                offset += np.dtype(PLY_TYPES[prop.type]).itemsize
    return offset


def read_vertices(data: bytes, header: PLYHeader) -> np.ndarray:
    """
    Return the vertex element as a numpy structured array.

    Elements declared before the vertex element are skipped. A body shorter
    than the declared vertex count yields only the complete records.
    """
    vertex = header.element(VERTEX_ELEMENT)
    if vertex is None:
        raise HeaderError("PLY file has no vertex element")
    if any(p.is_list for p in vertex.properties):
        raise HeaderError("List properties on the vertex element are not supported")

    if header.byte_order is None:
        return _read_ascii_vertices(data, header, vertex)

    offset = header.size
    for element in header.elements:
        if element is vertex:
            break
        offset = _skip_binary_element(data, offset, element, header.byte_order)

    dtype = vertex.dtype(header.byte_order)
    available = max(0, (len(data) - offset) // dtype.itemsize)
    count = vertex.count
    if available < count:
        logger.warning(f"PLY vertex data truncated: reading {available} of {count} vertices")
        count = available
    return np.frombuffer(data, dtype=dtype, count=count, offset=offset) if count else \
        np.zeros(0, dtype=dtype)


def _read_ascii_vertices(data: bytes, header: PLYHeader, vertex: PLYElement) -> np.ndarray:
    lines = data[header.size:].decode('ascii', errors='replace').splitlines()
    lines = [line for line in lines if line.strip()]
    start = 0
    for element in header.elements:
        if element is vertex:
            break
        start += element.count

    dtype = vertex.dtype('<')
    width = len(vertex.properties)
    rows = []
    for line in lines[start:start + vertex.count]:
        values = line.split()
        if len(values) < width:
            break
        rows.append(tuple(float(v) for v in values[:width]))
    if len(rows) < vertex.count:
        logger.warning(f"PLY vertex data truncated: reading {len(rows)} of {vertex.count} vertices")

    records = np.zeros(len(rows), dtype=dtype)
    if rows:
        table = np.array(rows, dtype=np.float64)
        for i, name in enumerate(dtype.names):
            records[name] = table[:, i].astype(dtype[name])
    return records


def _find(names: Sequence[str], aliases: Sequence[str]) -> Optional[str]:
    for alias in aliases:
        if alias in names:
            return alias
    return None


def _columns(records: np.ndarray, alias_groups) -> Optional[np.ndarray]:
    names = records.dtype.names
    found = [_find(names, group) for group in alias_groups]
    if any(name is None for name in found):
        return None
    return np.stack([records[name] for name in found], axis=1)


def _rest_columns(records: np.ndarray) -> List[str]:
    rest = [n for n in records.dtype.names if n.startswith(REST_PREFIX)]
    return sorted(rest, key=lambda n: int(n[len(REST_PREFIX):]) if n[len(REST_PREFIX):].isdigit() else 0)


def vertices_to_cloud(records: np.ndarray) -> SplatCloud:
    """
    Map PLY vertex records onto a cloud.

    Colour precedence is SH (``f_dc_*`` plus ``f_rest_*``), then
    ``red/green/blue``, then grey.

    Raises:
        ValidationError: position properties are missing
    """
    n = len(records)
    names = records.dtype.names

    positions = _columns(records, POSITION_NAMES)
    if positions is None:
        raise ValidationError("PLY vertex element has no x/y/z position properties",
                              field='position')

    dc = _columns(records, [(name,) for name in DC_NAMES])
    rgb = _columns(records, COLOR_NAMES)
    if dc is not None:
        colors = _sh_colors(records, dc.astype(np.float32))
        color_kind = ColorKind.SPHERICAL_HARMONIC
    elif rgb is not None:
        if rgb.dtype == np.uint8:
            colors, color_kind = rgb, ColorKind.LINEAR_UINT8
        elif np.issubdtype(rgb.dtype, np.integer):
            colors, color_kind = np.clip(rgb, 0, 255).astype(np.uint8), ColorKind.LINEAR_UINT8
        else:
            colors, color_kind = rgb.astype(np.float32), ColorKind.LINEAR_FLOAT
    else:
        logger.debug("PLY has no colour properties, using grey")
        colors, color_kind = np.full((n, 3), GREY, dtype=np.float32), ColorKind.LINEAR_FLOAT

    scales = _columns(records, SCALE_NAMES)
    if scales is None:
        scales = np.zeros((n, 3), dtype=np.float32)

    opacity_name = _find(names, OPACITY_NAMES)
    if opacity_name is None:
        opacities, opacity_kind = np.ones(n, dtype=np.float32), OpacityKind.LINEAR
    else:
        opacities, opacity_kind = records[opacity_name].astype(np.float32), OpacityKind.LOGIT

    wxyz = _columns(records, ROTATION_NAMES)
    if wxyz is None:
        rotations = np.tile(np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float32), (n, 1))
    else:
        rotations = normalize_quaternions(wxyz[:, [1, 2, 3, 0]].astype(np.float32))

    return SplatCloud(
        positions=positions.astype(np.float32),
        rotations=rotations,
        scales=scales.astype(np.float32),
        opacities=opacities,
        colors=colors,
        scale_kind=ScaleKind.EXPONENT,
        opacity_kind=opacity_kind,
        color_kind=color_kind,
    )


def _sh_colors(records: np.ndarray, dc: np.ndarray) -> np.ndarray:
    rest_names = _rest_columns(records)
    per_channel = len(rest_names) // 3
    usable = max(k for k in SH_COEFFICIENT_COUNTS if k - 1 <= per_channel) - 1
    if len(rest_names) != usable * 3:
        logger.warning(f"PLY has {len(rest_names)} f_rest properties, using {usable * 3}")

    colors = np.zeros((len(records), 1 + usable, 3), dtype=np.float32)
    colors[:, 0, :] = dc
    # Channel-major: channel c, coefficient k at index c * per_channel + k
    for c in range(3):
        for k in range(usable):
            colors[:, 1 + k, c] = records[rest_names[c * per_channel + k]]
    return colors


def read_ply(path) -> Tuple[PLYHeader, SplatCloud]:
    data = Path(path).read_bytes()
    header = parse_header(data)
    records = read_vertices(data, header)
    logger.debug(f"PLY {header.format}: {len(records)} vertices, "
                 f"properties {', '.join(records.dtype.names)}")
    return header, vertices_to_cloud(records)


class PLYSceneReader(SceneReader):
    """Reads gaussian splat ``.ply`` files in ascii or binary encodings."""

    format_name = 'PLY'

    def decode_cloud(self) -> SplatCloud:
        return read_ply(self.source)[1]


def cloud_to_vertices(cloud: SplatCloud) -> np.ndarray:
    """Build canonical vertex records (SH colour, log scale, logit opacity, w-first rotation)."""
    n = cloud.count
    sh = cloud.sh_coefficients()
    rest = sh.shape[1] - 1

    fields = [(name, '<f4') for name in ('x', 'y', 'z')]
    fields += [(name, '<f4') for name in NORMAL_NAMES]
    fields += [(name, '<f4') for name in DC_NAMES]
    fields += [(f'{REST_PREFIX}{i}', '<f4') for i in range(rest * 3)]
    fields += [('opacity', '<f4')]
    fields += [(group[0], '<f4') for group in SCALE_NAMES]
    fields += [(group[0], '<f4') for group in ROTATION_NAMES]

    records = np.zeros(n, dtype=np.dtype(fields))
    for axis, name in enumerate(('x', 'y', 'z')):
        records[name] = cloud.positions[:, axis]
    for c, name in enumerate(DC_NAMES):
        records[name] = sh[:, 0, c]
    for c in range(3):
        for k in range(rest):
            records[f'{REST_PREFIX}{c * rest + k}'] = sh[:, 1 + k, c]
    records['opacity'] = cloud.logit_opacities()
    scales = cloud.exponent_scales()
    for axis, group in enumerate(SCALE_NAMES):
        records[group[0]] = scales[:, axis]
    wxyz = cloud.rotations[:, [3, 0, 1, 2]]
    for i, group in enumerate(ROTATION_NAMES):
        records[group[0]] = wxyz[:, i]
    return records


def serialize_ply(cloud: SplatCloud, comments: Sequence[str] = ()) -> bytes:
    records = cloud_to_vertices(cloud)
    lines = ['ply', 'format binary_little_endian 1.0']
    lines += [f'comment {c}' for c in comments]
    lines.append(f'element {VERTEX_ELEMENT} {cloud.count}')
    lines += [f'property float {name}' for name in records.dtype.names]
    lines.append('end_header')
    return ('\n'.join(lines) + '\n').encode('ascii') + records.tobytes()


class PLYSceneWriter:
    """Writes clouds as binary little-endian PLY with the canonical property names."""

    def __init__(self, comments: Sequence[str] = ()):
        self.comments = list(comments)

    def write(self, cloud: SplatCloud, path) -> Path:
        path = Path(path)
        path.write_bytes(serialize_ply(cloud, self.comments))
        logger.info(f"Wrote {cloud.count} points to {path}")
        return path
