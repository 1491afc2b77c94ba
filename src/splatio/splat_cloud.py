# ABOUTME: Columnar batch of gaussian splats backed by numpy arrays
# ABOUTME: Decoders fill these vectorized, then materialize SplatPoint values for callers

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .quantization import SH_C0, sigmoid, logit
from .splat_point import (
    Color, ColorKind, Opacity, OpacityKind, Scale, ScaleKind, SplatPoint,
    SH_COEFFICIENT_COUNTS,
)


@dataclass
class SplatCloud:
    """
    Represents a collection of 3D gaussian splats in columnar form.

    Attributes:
        positions: (N, 3) array of gaussian centers
        rotations: (N, 4) array of quaternions (x, y, z, w)
        scales: (N, 3) array of scales, linear or exponent per ``scale_kind``
        opacities: (N,) array of opacity, linear or logit per ``opacity_kind``
        colors: (N, 3) RGB array, or (N, K, 3) SH coefficients when
            ``color_kind`` is SPHERICAL_HARMONIC
    """
    positions: np.ndarray
    rotations: np.ndarray
    scales: np.ndarray
    opacities: np.ndarray
    colors: np.ndarray
    scale_kind: ScaleKind = ScaleKind.EXPONENT
    opacity_kind: OpacityKind = OpacityKind.LOGIT
    color_kind: ColorKind = ColorKind.SPHERICAL_HARMONIC

    def __post_init__(self):
        """Validate array shapes."""
        n = len(self.positions)
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(n, 3)
        self.rotations = np.asarray(self.rotations, dtype=np.float32)
        self.scales = np.asarray(self.scales, dtype=np.float32)
        self.opacities = np.asarray(self.opacities, dtype=np.float32)
        color_dtype = np.uint8 if self.color_kind is ColorKind.LINEAR_UINT8 else np.float32
        self.colors = np.asarray(self.colors, dtype=color_dtype)

        if self.rotations.shape != (n, 4):
            raise ValueError(f"Rotations must be (N, 4), got {self.rotations.shape}")
        if self.scales.shape != (n, 3):
            raise ValueError(f"Scales must be (N, 3), got {self.scales.shape}")
        if self.opacities.shape != (n,):
            raise ValueError(f"Opacities must be (N,), got {self.opacities.shape}")

        if self.color_kind is ColorKind.SPHERICAL_HARMONIC:
            if self.colors.ndim == 2 and self.colors.shape == (n, 3):
                self.colors = self.colors.reshape(n, 1, 3)
            if (self.colors.ndim != 3 or self.colors.shape[0] != n
                    or self.colors.shape[2] != 3
                    or self.colors.shape[1] not in SH_COEFFICIENT_COUNTS):
                raise ValueError(f"SH colors must be (N, K, 3) with K in "
                                 f"{SH_COEFFICIENT_COUNTS}, got {self.colors.shape}")
        elif self.colors.shape != (n, 3):
            raise ValueError(f"Colors must be (N, 3), got {self.colors.shape}")

    @property
    def count(self) -> int:
        """Return number of gaussians."""
        return len(self.positions)

    def __len__(self) -> int:
        return self.count

    @property
    def sh_coefficient_count(self) -> int:
        if self.color_kind is ColorKind.SPHERICAL_HARMONIC:
            return self.colors.shape[1]
        return 1

    @classmethod
    def empty(cls, color_kind: ColorKind = ColorKind.SPHERICAL_HARMONIC) -> 'SplatCloud':
        colors = np.zeros((0, 1, 3) if color_kind is ColorKind.SPHERICAL_HARMONIC else (0, 3))
        return cls(
            positions=np.zeros((0, 3)),
            rotations=np.zeros((0, 4)),
            scales=np.zeros((0, 3)),
            opacities=np.zeros(0),
            colors=colors,
            color_kind=color_kind,
        )

    def subset(self, indices) -> 'SplatCloud':
        """Create a subset of gaussians by indices (or a slice)."""
        return SplatCloud(
            positions=self.positions[indices],
            rotations=self.rotations[indices],
            scales=self.scales[indices],
            opacities=self.opacities[indices],
            colors=self.colors[indices],
            scale_kind=self.scale_kind,
            opacity_kind=self.opacity_kind,
            color_kind=self.color_kind,
        )

    # --- Representation conversions -----------------------------------

    def linear_scales(self) -> np.ndarray:
        if self.scale_kind is ScaleKind.LINEAR:
            return self.scales
        return np.exp(self.scales).astype(np.float32)

    def exponent_scales(self) -> np.ndarray:
        if self.scale_kind is ScaleKind.EXPONENT:
            return self.scales
        return np.log(np.maximum(self.scales, 1e-30)).astype(np.float32)

    def linear_opacities(self) -> np.ndarray:
        if self.opacity_kind is OpacityKind.LINEAR:
            return self.opacities
        return sigmoid(self.opacities)

    def logit_opacities(self) -> np.ndarray:
        if self.opacity_kind is OpacityKind.LOGIT:
            return self.opacities
        return logit(self.opacities)

    def linear_colors(self) -> np.ndarray:
        """(N, 3) linear RGB floats from the DC term or the stored RGB."""
        if self.color_kind is ColorKind.SPHERICAL_HARMONIC:
            return (0.5 + SH_C0 * self.colors[:, 0, :]).astype(np.float32)
        if self.color_kind is ColorKind.LINEAR_FLOAT256:
            return (self.colors / 256.0).astype(np.float32)
        if self.color_kind is ColorKind.LINEAR_UINT8:
            return self.colors.astype(np.float32) / 255.0
        return self.colors

    def sh_coefficients(self) -> np.ndarray:
        """(N, K, 3) SH coefficients; RGB colors become a DC-only set."""
        if self.color_kind is ColorKind.SPHERICAL_HARMONIC:
            return self.colors
        return ((self.linear_colors() - 0.5) / SH_C0).reshape(-1, 1, 3).astype(np.float32)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Axis-aligned bounds of the positions; zeros for an empty cloud."""
        if self.count == 0:
            return np.zeros(3, dtype=np.float32), np.zeros(3, dtype=np.float32)
        return self.positions.min(axis=0), self.positions.max(axis=0)

    # --- SplatPoint interop ----------------------------------------------

    def points(self, start: int = 0, stop: Optional[int] = None) -> List[SplatPoint]:
        """Materialize ``SplatPoint`` values for the index range [start, stop)."""
        stop = self.count if stop is None else min(stop, self.count)
        result = []
        for i in range(start, stop):
            result.append(SplatPoint(
                position=self.positions[i],
                color=Color(self.color_kind, self.colors[i]),
                opacity=Opacity(self.opacity_kind, float(self.opacities[i])),
                scale=Scale(self.scale_kind, self.scales[i]),
                rotation=self.rotations[i],
            ))
        return result

    def iter_batches(self, batch_size: int) -> Iterable[List[SplatPoint]]:
        for start in range(0, self.count, batch_size):
            yield self.points(start, start + batch_size)

    @classmethod
    def from_points(cls, points: Sequence[SplatPoint]) -> 'SplatCloud':
        """
        Build a cloud from points.

        Mixed representations are unified: mixed scale or opacity kinds
        become linear, and mixed colors (or SH sets of different sizes)
        become linear floats.
        """
        if len(points) == 0:
            return cls.empty()

        scale_kinds = {p.scale.kind for p in points}
        scale_kind = scale_kinds.pop() if len(scale_kinds) == 1 else ScaleKind.LINEAR
        if scale_kind is ScaleKind.LINEAR:
            scales = [p.scale.as_linear() for p in points]
        else:
            scales = [p.scale.values for p in points]

        opacity_kinds = {p.opacity.kind for p in points}
        opacity_kind = opacity_kinds.pop() if len(opacity_kinds) == 1 else OpacityKind.LINEAR
        if opacity_kind is OpacityKind.LINEAR:
            opacities = [p.opacity.as_linear() for p in points]
        else:
            opacities = [p.opacity.value for p in points]

        color_kinds = {p.color.kind for p in points}
        color_kind = color_kinds.pop() if len(color_kinds) == 1 else ColorKind.LINEAR_FLOAT
        if (color_kind is ColorKind.SPHERICAL_HARMONIC
                and len({len(p.color.values) for p in points}) != 1):
            color_kind = ColorKind.LINEAR_FLOAT
        if color_kind is ColorKind.LINEAR_FLOAT:
            colors = [p.color.as_linear_float() for p in points]
        else:
            colors = [p.color.values for p in points]

        return cls(
            positions=np.stack([p.position for p in points]),
            rotations=np.stack([p.rotation for p in points]),
            scales=np.stack(scales),
            opacities=np.asarray(opacities),
            colors=np.stack(colors),
            scale_kind=scale_kind,
            opacity_kind=opacity_kind,
            color_kind=color_kind,
        )

    @classmethod
    def concatenate(cls, clouds: Sequence['SplatCloud']) -> 'SplatCloud':
        """Join clouds that share representations."""
        clouds = [c for c in clouds if c.count > 0]
        if not clouds:
            return cls.empty()
        first = clouds[0]
        for other in clouds[1:]:
            if (other.scale_kind, other.opacity_kind, other.color_kind) != \
                    (first.scale_kind, first.opacity_kind, first.color_kind):
                raise ValueError("Cannot concatenate clouds with different representations")
            if other.colors.shape[1:] != first.colors.shape[1:]:
                raise ValueError("Cannot concatenate clouds with different SH sizes")
        return cls(
            positions=np.concatenate([c.positions for c in clouds]),
            rotations=np.concatenate([c.rotations for c in clouds]),
            scales=np.concatenate([c.scales for c in clouds]),
            opacities=np.concatenate([c.opacities for c in clouds]),
            colors=np.concatenate([c.colors for c in clouds]),
            scale_kind=first.scale_kind,
            opacity_kind=first.opacity_kind,
            color_kind=first.color_kind,
        )

    @classmethod
    def merge(cls, clouds: Sequence['SplatCloud']) -> 'SplatCloud':
        """Join clouds, unifying point by point when representations differ."""
        try:
            return cls.concatenate(clouds)
        except ValueError:
            return cls.from_points([p for cloud in clouds for p in cloud.points()])

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'positions': self.positions,
            'rotations': self.rotations,
            'scales': self.scales,
            'opacities': self.opacities,
            'colors': self.colors,
            'scale_kind': self.scale_kind.value,
            'opacity_kind': self.opacity_kind.value,
            'color_kind': self.color_kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SplatCloud':
        """Create from dictionary."""
        return cls(
            positions=data['positions'],
            rotations=data['rotations'],
            scales=data['scales'],
            opacities=data['opacities'],
            colors=data['colors'],
            scale_kind=ScaleKind(data.get('scale_kind', ScaleKind.EXPONENT.value)),
            opacity_kind=OpacityKind(data.get('opacity_kind', OpacityKind.LOGIT.value)),
            color_kind=ColorKind(data.get('color_kind', ColorKind.SPHERICAL_HARMONIC.value)),
        )
