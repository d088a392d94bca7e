"""
Diagnostic images of decoded pattern maps.

These are used to inspect decode quality before calibrating or reconstructing:
a clean map shows a smooth ramp across the lit object and grey in shadows.
"""

import logging

import numpy as np

from slscan.exceptions import InputError

logger = logging.getLogger(__name__)

INVALID_COLOR = (128, 128, 128)
RAMP_STEPS = 4


def threshold_pattern(pattern: np.ndarray, min_max: np.ndarray, threshold: int) -> np.ndarray:
    """
    Copy of ``pattern`` with undecoded or low contrast pixels set to NaN.

    A pixel is kept when both coordinates are decoded and its max minus min
    intensity reaches ``threshold``.
    """
    if pattern.shape[:2] != min_max.shape[:2]:
        raise InputError(f"Pattern {pattern.shape[:2]} and min/max {min_max.shape[:2]} sizes differ")
    spread = min_max[..., 1].astype(np.int16) - min_max[..., 0].astype(np.int16)
    invalid = np.isnan(pattern).any(axis=2) | (spread < threshold)
    result = pattern.astype(np.float32, copy=True)
    result[invalid] = np.nan
    return result


def colorize_pattern(pattern: np.ndarray, axis: int, max_value: float) -> np.ndarray:
    """
    Color-code one channel of a pattern map.

    Values run through a black, red, yellow, green, blue ramp from 0 to
    ``max_value``. Undecoded pixels and values above ``max_value`` are grey.

    Args:
        pattern: float (H, W, 2) pattern map
        axis: 0 for projector columns, 1 for projector rows
        max_value: Value mapped to the end of the ramp, usually the projector size

    Returns:
        uint8 (H, W, 3) BGR image
    """
    if pattern.ndim != 3 or pattern.shape[2] != 2:
        raise InputError("Pattern map must be (H, W, 2)")
    if axis not in (0, 1):
        raise InputError(f"Invalid pattern axis {axis}")

    values = pattern[..., axis].astype(np.float32)
    with np.errstate(invalid='ignore'):
        invalid = np.isnan(values) | (values > max_value)
    t = np.nan_to_num(values) * 255.0 / max_value
    dt = 255.0 / RAMP_STEPS

    # ramp position inside the current segment, 0..255
    segment = np.clip(np.ceil(t / dt) - 1, 0, RAMP_STEPS - 1)
    c = np.clip(RAMP_STEPS * (t - segment * dt), 0, 255)

    red = np.select([segment == 0, segment == 1, segment == 2], [c, 255.0, 255.0 - c], 0.0)
    green = np.select([segment == 0, segment == 1, segment == 2], [0.0, c, 255.0], 255.0 - c)
    blue = np.where(segment == 3, c, 0.0)

    image = np.stack([blue, green, red], axis=2).astype(np.uint8)
    image[invalid] = INVALID_COLOR
    return image
