# ABOUTME: Canonical single-splat value with tagged color, scale and opacity representations
# ABOUTME: Each representation converts to the others on demand (linear, log-space, logit, SH)

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .quantization import SH_C0, sigmoid, logit

# Valid numbers of SH coefficient triples (degrees 0 to 3)
SH_COEFFICIENT_COUNTS = (1, 4, 9, 16)


class ColorKind(Enum):
    SPHERICAL_HARMONIC = 'sh'
    LINEAR_FLOAT = 'linear_float'
    LINEAR_FLOAT256 = 'linear_float256'
    LINEAR_UINT8 = 'linear_uint8'


class ScaleKind(Enum):
    LINEAR = 'linear'
    EXPONENT = 'exponent'


class OpacityKind(Enum):
    LINEAR = 'linear'
    LOGIT = 'logit'


def sh_degree_for_count(count: int) -> int:
    """SH degree for a number of coefficient triples (1 -> 0, 4 -> 1, 9 -> 2, 16 -> 3)."""
    if count not in SH_COEFFICIENT_COUNTS:
        raise ValueError(f"Invalid SH coefficient count: {count}")
    return SH_COEFFICIENT_COUNTS.index(count)


@dataclass(frozen=True, eq=False)
class Color:
    """
    Color of a splat in one of four representations.

    ``values`` is a (K, 3) array of SH coefficients (coefficient 0 is the
    DC term) for SPHERICAL_HARMONIC, otherwise a (3,) RGB array.
    """
    kind: ColorKind
    values: np.ndarray

    @classmethod
    def sh(cls, coefficients) -> 'Color':
        return cls(ColorKind.SPHERICAL_HARMONIC, np.asarray(coefficients, dtype=np.float32).reshape(-1, 3))

    @classmethod
    def linear_float(cls, rgb) -> 'Color':
        return cls(ColorKind.LINEAR_FLOAT, np.asarray(rgb, dtype=np.float32).reshape(3))

    @classmethod
    def linear_float256(cls, rgb) -> 'Color':
        return cls(ColorKind.LINEAR_FLOAT256, np.asarray(rgb, dtype=np.float32).reshape(3))

    @classmethod
    def linear_uint8(cls, rgb) -> 'Color':
        return cls(ColorKind.LINEAR_UINT8, np.asarray(rgb, dtype=np.uint8).reshape(3))

    @property
    def sh_degree(self) -> int:
        if self.kind is ColorKind.SPHERICAL_HARMONIC:
            return sh_degree_for_count(len(self.values))
        return 0

    def as_linear_float(self) -> np.ndarray:
        """Base color as linear RGB floats (view-independent term only)."""
        if self.kind is ColorKind.SPHERICAL_HARMONIC:
            return (0.5 + SH_C0 * self.values[0]).astype(np.float32)
        if self.kind is ColorKind.LINEAR_FLOAT256:
            return (self.values / 256.0).astype(np.float32)
        if self.kind is ColorKind.LINEAR_UINT8:
            return (self.values.astype(np.float32) / 255.0)
        return self.values.astype(np.float32)

    def as_linear_uint8(self) -> np.ndarray:
        if self.kind is ColorKind.LINEAR_UINT8:
            return self.values
        return np.clip(np.round(self.as_linear_float() * 255.0), 0, 255).astype(np.uint8)

    def as_sh(self) -> np.ndarray:
        """SH coefficients; non-SH colors become a single DC triple."""
        if self.kind is ColorKind.SPHERICAL_HARMONIC:
            return self.values
        return ((self.as_linear_float() - 0.5) / SH_C0).reshape(1, 3).astype(np.float32)

    def __eq__(self, other):
        if not isinstance(other, Color):
            return NotImplemented
        return self.kind is other.kind and np.array_equal(self.values, other.values)

    def __repr__(self):
        return f"Color({self.kind.value}, {self.values.tolist()})"


@dataclass(frozen=True, eq=False)
class Scale:
    """Per-axis scale stored either linearly or as a log-space exponent."""
    kind: ScaleKind
    values: np.ndarray

    @classmethod
    def linear(cls, xyz) -> 'Scale':
        return cls(ScaleKind.LINEAR, np.asarray(xyz, dtype=np.float32).reshape(3))

    @classmethod
    def exponent(cls, xyz) -> 'Scale':
        return cls(ScaleKind.EXPONENT, np.asarray(xyz, dtype=np.float32).reshape(3))

    def as_linear(self) -> np.ndarray:
        if self.kind is ScaleKind.LINEAR:
            return self.values
        return np.exp(self.values).astype(np.float32)

    def as_exponent(self) -> np.ndarray:
        if self.kind is ScaleKind.EXPONENT:
            return self.values
        return np.log(self.values).astype(np.float32)

    def __eq__(self, other):
        if not isinstance(other, Scale):
            return NotImplemented
        return self.kind is other.kind and np.array_equal(self.values, other.values)

    def __repr__(self):
        return f"Scale({self.kind.value}, {self.values.tolist()})"


@dataclass(frozen=True)
class Opacity:
    """Opacity stored either as linear alpha or in logit space."""
    kind: OpacityKind
    value: float

    @classmethod
    def linear(cls, value: float) -> 'Opacity':
        return cls(OpacityKind.LINEAR, float(value))

    @classmethod
    def logit(cls, value: float) -> 'Opacity':
        return cls(OpacityKind.LOGIT, float(value))

    def as_linear(self) -> float:
        if self.kind is OpacityKind.LINEAR:
            return self.value
        return float(sigmoid(self.value))

    def as_logit(self) -> float:
        if self.kind is OpacityKind.LOGIT:
            return self.value
        return float(logit(self.value))


@dataclass(eq=False)
class SplatPoint:
    """
    One Gaussian splat.

    Attributes:
        position: (3,) world-space center
        color: Color in any representation
        opacity: Opacity in linear or logit space
        scale: Scale in linear or exponent form
        rotation: (4,) quaternion stored x, y, z, w
    """
    position: np.ndarray
    color: Color
    opacity: Opacity
    scale: Scale
    rotation: np.ndarray = field(default_factory=lambda: np.array([0, 0, 0, 1], dtype=np.float32))

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float32).reshape(3)
        self.rotation = np.asarray(self.rotation, dtype=np.float32).reshape(4)

    def normalized(self) -> 'SplatPoint':
        """Copy with linear scale, linear opacity and a unit rotation."""
        norm = float(np.linalg.norm(self.rotation))
        rotation = self.rotation / norm if norm > 0 else self.rotation
        return SplatPoint(
            position=self.position.copy(),
            color=self.color,
            opacity=Opacity.linear(self.opacity.as_linear()),
            scale=Scale.linear(self.scale.as_linear()),
            rotation=rotation,
        )

    def is_close(self, other: 'SplatPoint', position_tol: float = 1e-5,
                 color_tol: float = 1.0 / 256, opacity_tol: float = 1.0 / 256,
                 scale_tol: float = 1e-5, rotation_tol: float = 2.0 / 128) -> bool:
        """Compare two points after converting every field to a common representation."""
        def unit(q):
            q = q / np.linalg.norm(q)
            return -q if q[3] < 0 else q

        return (
            np.allclose(self.position, other.position, atol=position_tol)
            and np.allclose(self.color.as_linear_float(), other.color.as_linear_float(), atol=color_tol)
            and abs(self.opacity.as_linear() - other.opacity.as_linear()) <= opacity_tol
            and np.allclose(self.scale.as_linear(), other.scale.as_linear(), atol=scale_tol, rtol=1e-4)
            and np.allclose(unit(self.rotation), unit(other.rotation), atol=rotation_tol)
        )

    def __repr__(self):
        return (f"SplatPoint(position={self.position.tolist()}, color={self.color!r}, "
                f"opacity={self.opacity}, scale={self.scale!r}, rotation={self.rotation.tolist()})")

