# ABOUTME: Reader and writer for the headerless 32-byte-per-record .splat format
# ABOUTME: The push reader streams the file through a fixed 64 KiB buffer, one batch per fill

from pathlib import Path

import numpy as np

from ..errors import TruncatedDataError
from ..quantization import normalize_quaternions, unit_to_byte
from ..reader import SceneReader, SceneReaderDelegate
from ..splat_cloud import SplatCloud
from ..splat_point import ColorKind, OpacityKind, ScaleKind
from ..utils.logging_utils import get_logger

logger = get_logger('dot_splat')

RECORD_SIZE = 32
BUFFER_SIZE = 64 * 1024

RECORD_DTYPE = np.dtype([
    ('position', '<f4', (3,)),
    ('scale', '<f4', (3,)),
    ('color', 'u1', (4,)),
    ('rotation', 'u1', (4,)),  # w, x, y, z
])


def records_to_cloud(records: np.ndarray) -> SplatCloud:
    wxyz = records['rotation'].astype(np.float32) / 128.0 - 1.0
    rotations = normalize_quaternions(wxyz[:, [1, 2, 3, 0]])
    return SplatCloud(
        positions=records['position'],
        rotations=rotations,
        scales=records['scale'],
        opacities=records['color'][:, 3].astype(np.float32) / 255.0,
        colors=records['color'][:, :3],
        scale_kind=ScaleKind.LINEAR,
        opacity_kind=OpacityKind.LINEAR,
        color_kind=ColorKind.LINEAR_UINT8,
    )


def parse_dot_splat(data: bytes) -> SplatCloud:
    """
    Decode a whole .splat payload.

    Raises:
        TruncatedDataError: trailing bytes do not form a complete record
    """
    complete, leftover = divmod(len(data), RECORD_SIZE)
    if leftover:
        raise TruncatedDataError(f".splat data has {leftover} trailing bytes after "
                                 f"{complete} complete records")
    return records_to_cloud(np.frombuffer(data, dtype=RECORD_DTYPE, count=complete))


class DotSplatSceneReader(SceneReader):
    """Reads ``.splat`` files."""

    format_name = 'dotSplat'

    def decode_cloud(self) -> SplatCloud:
        return parse_dot_splat(self.source.read_bytes())

    def read(self, delegate: SceneReaderDelegate) -> None:
        """
        Stream records to the delegate.

        Complete records already delivered stay delivered when the file
        ends on a partial record; the read then fails with TruncatedDataError.
        """
        try:
            delegate.did_start_reading(self.source.stat().st_size // RECORD_SIZE)
            self._stream(delegate)
        except Exception as e:
            logger.error(f"Failed to read {self.source}: {e}")
            delegate.did_fail_reading(e)
            return
        delegate.did_finish_reading()

    def _stream(self, delegate: SceneReaderDelegate) -> None:
        buffer = bytearray(BUFFER_SIZE)
        view = memoryview(buffer)
        filled = 0
        total = 0
        with open(self.source, 'rb') as f:
            while True:
                read = f.readinto(view[filled:])
                if not read:
                    break
                filled += read
                complete = filled - filled % RECORD_SIZE
                if complete:
                    records = np.frombuffer(bytes(view[:complete]), dtype=RECORD_DTYPE)
                    points = records_to_cloud(records).points()
                    self._validate(points)
                    delegate.did_read(points)
                    total += len(points)
                # Shift the partial record to the front
                leftover = filled - complete
                buffer[:leftover] = buffer[complete:filled]
                filled = leftover

        if filled:
            raise TruncatedDataError(f".splat file {self.source.name} ends with {filled} "
                                     f"bytes of a partial record after {total} points")
        logger.debug(f"Streamed {total} points from {self.source.name}")


def serialize_dot_splat(cloud: SplatCloud) -> bytes:
    records = np.zeros(cloud.count, dtype=RECORD_DTYPE)
    records['position'] = cloud.positions
    records['scale'] = cloud.linear_scales()
    records['color'][:, :3] = unit_to_byte(cloud.linear_colors())
    records['color'][:, 3] = unit_to_byte(cloud.linear_opacities())
    wxyz = normalize_quaternions(cloud.rotations)[:, [3, 0, 1, 2]]
    records['rotation'] = np.clip(np.round(wxyz * 128.0 + 128.0), 0, 255).astype(np.uint8)
    return records.tobytes()


class DotSplatSceneWriter:
    """Writes clouds as ``.splat`` records."""

    def write(self, cloud: SplatCloud, path) -> Path:
        path = Path(path)
        path.write_bytes(serialize_dot_splat(cloud))
        logger.info(f"Wrote {cloud.count} points to {path}")
        return path
