# ABOUTME: Point validation with strict, lenient and safety modes
# ABOUTME: Sampled scene validation only fails when the error rate passes a mode-dependent threshold

from enum import Enum
from typing import List, Sequence, Union

import numpy as np

from .errors import CorruptedDataError, TruncatedDataError, ValidationError
from .splat_point import ColorKind, SplatPoint, SH_COEFFICIENT_COUNTS
from .utils.logging_utils import get_logger

logger = get_logger('validation')

MAX_POSITION_MAGNITUDE = 10_000_000.0
MAX_SCALE_MAGNITUDE = 1000.0
MIN_SCALE_MAGNITUDE = 1e-10
MAX_SH_MAGNITUDE = 100.0
MIN_QUATERNION_LENGTH = 0.001
QUATERNION_LENGTH_TOLERANCE = 0.5

MAX_SAMPLES = 1000
MAX_COLLECTED_ERRORS = 50


class ValidationMode(Enum):
    STRICT = 'strict'    # Enforce all range checks
    LENIENT = 'lenient'  # Only NaN/infinity and critical issues
    SAFETY = 'safety'    # Only crash-causing issues (NaN/infinity, bounds)


ERROR_RATE_THRESHOLDS = {
    ValidationMode.STRICT: 0.1,
    ValidationMode.LENIENT: 0.2,
    ValidationMode.SAFETY: 0.5,
}


def _mode(mode: Union[ValidationMode, str]) -> ValidationMode:
    return mode if isinstance(mode, ValidationMode) else ValidationMode(mode)


def _require_finite(values, name: str):
    if not np.all(np.isfinite(values)):
        raise ValidationError(f"{name} contains NaN or infinity values", field=name)


def validate_position(position, mode=ValidationMode.LENIENT):
    _require_finite(position, 'position')
    if _mode(mode) is ValidationMode.STRICT:
        magnitude = float(np.linalg.norm(position))
        if magnitude > MAX_POSITION_MAGNITUDE:
            raise ValidationError(
                f"Position magnitude {magnitude} exceeds maximum {MAX_POSITION_MAGNITUDE}",
                field='position')


def validate_scale(scale, mode=ValidationMode.LENIENT):
    """Scale must be given linear here."""
    _require_finite(scale, 'scale')
    if np.any(np.asarray(scale) < 0):
        raise ValidationError(f"Scale components must be non-negative: {list(scale)}", field='scale')
    if _mode(mode) is ValidationMode.STRICT:
        if np.any(np.asarray(scale) < MIN_SCALE_MAGNITUDE):
            raise ValidationError(f"Scale components {list(scale)} are too small", field='scale')
        if np.max(scale) > MAX_SCALE_MAGNITUDE:
            raise ValidationError(
                f"Scale component {float(np.max(scale))} exceeds maximum {MAX_SCALE_MAGNITUDE}",
                field='scale')


def validate_rotation(rotation, mode=ValidationMode.LENIENT):
    _require_finite(rotation, 'rotation')
    mode = _mode(mode)
    if mode is ValidationMode.SAFETY:
        return
    length = float(np.linalg.norm(rotation))
    if length < MIN_QUATERNION_LENGTH:
        raise ValidationError(f"Quaternion magnitude {length} is too small (near-zero)", field='rotation')
    if mode is ValidationMode.STRICT and abs(length - 1.0) > QUATERNION_LENGTH_TOLERANCE:
        raise ValidationError(
            f"Quaternion magnitude {length} deviates significantly from unit length",
            field='rotation')


def validate_opacity(opacity: float, mode=ValidationMode.LENIENT):
    """Opacity must be given linear here."""
    _require_finite(opacity, 'opacity')
    if _mode(mode) is ValidationMode.STRICT and not 0.0 <= opacity <= 1.0:
        raise ValidationError(f"Opacity {opacity} is outside valid range [0, 1]", field='opacity')


def validate_color(color, mode=ValidationMode.LENIENT):
    _require_finite(color, 'color')
    if _mode(mode) is ValidationMode.STRICT:
        if np.any(np.asarray(color) < 0.0) or np.any(np.asarray(color) > 1.0):
            raise ValidationError(f"Color components {list(color)} are outside valid range [0, 1]",
                                  field='color')


def validate_spherical_harmonics(coefficients):
    coefficients = np.asarray(coefficients)
    if len(coefficients) not in SH_COEFFICIENT_COUNTS:
        raise ValidationError(
            f"Invalid SH coefficient count {len(coefficients)}, expected one of: {SH_COEFFICIENT_COUNTS}",
            field='color')
    _require_finite(coefficients, 'spherical harmonics')
    magnitudes = np.linalg.norm(coefficients, axis=1)
    if np.any(magnitudes > MAX_SH_MAGNITUDE):
        index = int(np.argmax(magnitudes))
        raise ValidationError(
            f"SH coefficient {index} magnitude {float(magnitudes[index])} exceeds maximum {MAX_SH_MAGNITUDE}",
            field='color')


def validate_point(point: SplatPoint, mode=ValidationMode.LENIENT):
    """
    Validate a single point.

    Raises:
        ValidationError: describing the first failing field
    """
    mode = _mode(mode)
    validate_position(point.position, mode)
    validate_scale(point.scale.as_linear(), mode)
    validate_rotation(point.rotation, mode)
    validate_opacity(point.opacity.as_linear(), mode)
    validate_color(point.color.as_linear_float(), mode)
    if mode is ValidationMode.STRICT and point.color.kind is ColorKind.SPHERICAL_HARMONIC:
        validate_spherical_harmonics(point.color.values)


def validate_points(points: Sequence[SplatPoint], mode=ValidationMode.LENIENT) -> List[ValidationError]:
    """
    Sample up to 1000 points and validate them.

    Individual failures are tolerated; only an error rate above the mode's
    threshold (strict 10%, lenient 20%, safety 50%) is fatal.

    Every sampled failure counts towards the rate; at most 50 of them are
    kept and returned.

    Returns:
        The collected (non-fatal) errors

    Raises:
        CorruptedDataError: if the sampled error rate is too high
    """
    mode = _mode(mode)
    if len(points) == 0:
        return []

    sample_size = min(len(points), MAX_SAMPLES)
    step = max(1, len(points) // sample_size)
    errors = []
    failures = 0
    for i in range(0, step * sample_size, step):
        try:
            validate_point(points[i], mode)
        except ValidationError as e:
            failures += 1
            if len(errors) < MAX_COLLECTED_ERRORS:
                errors.append(e)

    threshold = ERROR_RATE_THRESHOLDS[mode]
    error_rate = failures / sample_size
    if error_rate > threshold:
        raise CorruptedDataError(
            f"High validation error rate: {int(error_rate * 100)}% of sampled points "
            f"failed validation. First error: {errors[0]}",
            error_rate=error_rate,
            first_error=errors[0],
        )
    if failures:
        logger.warning(f"{failures} of {sample_size} sampled points failed validation "
                       f"(first: {errors[0]})")
    return errors


def validate_data_bounds(data, offset: int, size: int):
    """Raise TruncatedDataError unless ``data[offset:offset + size]`` is fully available."""
    if offset < 0 or offset + size > len(data):
        raise TruncatedDataError("Data access out of bounds", offset=offset, size=size,
                                 available=len(data))
