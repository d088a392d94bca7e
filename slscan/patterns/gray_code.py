"""
Gray code arithmetic and projected pattern generation.

Codes are reflected binary Gray codes. When a projector axis is narrower than
the ``2**bits`` addressable codes, the valid window is centered by an offset of
``((1 << bits) - size) // 2`` so that the decoded value of the first projector
column is 0.
"""

import logging
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np

from slscan.core.constants import (
    DEFAULT_PATTERN_COUNT, DEFAULT_PROJECTOR_WIDTH, DEFAULT_PROJECTOR_HEIGHT
)
from slscan.exceptions import InputError

logger = logging.getLogger(__name__)

IntOrArray = Union[int, np.ndarray]


def binary_to_gray(value: IntOrArray, offset: int = 0) -> IntOrArray:
    """
    Convert binary to Gray code.

    Args:
        value: Binary value (int or integer array)
        offset: Added to the value before encoding

    Returns:
        Gray code value
    """
    value = value + offset
    return value ^ (value >> 1)


def gray_to_binary(code: IntOrArray, offset: int = 0, num_bits: int = 32) -> IntOrArray:
    """
    Convert Gray code to binary.

    Args:
        code: Gray code value (int or integer array)
        offset: Subtracted from the decoded value
        num_bits: Width of the code in bits

    Returns:
        Binary value
    """
    shift = 1
    while shift < num_bits:
        code = code ^ (code >> shift)
        shift <<= 1
    return code - offset


def bit_count(length: int) -> int:
    """Smallest number of bits b with 2**b >= length."""
    if length < 1:
        raise InputError(f"Invalid axis length {length}")
    bits = 0
    while (1 << bits) < length:
        bits += 1
    return bits


def pattern_offset(bits: int, size: int) -> int:
    """Offset centering ``size`` valid codes within ``2**bits``, truncated toward zero."""
    return int(((1 << bits) - size) / 2)


def decode_gray_codes(codes: np.ndarray, bits: int, size: int) -> np.ndarray:
    """
    Convert accumulated Gray codes to clamped projector coordinates.

    Args:
        codes: Float array of accumulated codes, NaN where invalid
        bits: Number of pattern bits
        size: Projector resolution along this axis

    Returns:
        Float32 array of coordinates in [0, size - 1], NaN preserved
    """
    valid = ~np.isnan(codes)
    out = np.full(codes.shape, np.nan, dtype=np.float32)
    raw = codes[valid].astype(np.int64)
    decoded = gray_to_binary(raw, pattern_offset(bits, size))
    out[valid] = np.clip(decoded, 0, size - 1)
    return out


def pattern_bit_counts(width: int, height: int,
                       pattern_count: int = DEFAULT_PATTERN_COUNT) -> Tuple[int, int, int]:
    """
    Bits needed per axis and the number of bit planes actually projected.

    Returns:
        (vertical bits, horizontal bits, projected bit count)
    """
    vbits = max(1, bit_count(width))
    hbits = max(1, bit_count(height))
    return vbits, hbits, min(vbits, hbits, pattern_count)


def pattern_image_count(pattern_count: int) -> int:
    """Number of images in a full sequence for ``pattern_count`` bits."""
    return 2 + 4 * pattern_count


def make_pattern_image(index: int, width: int, height: int,
                       pattern_count: int = DEFAULT_PATTERN_COUNT) -> np.ndarray:
    """
    Render one projected image of the Gray code sequence.

    Image 0 is white and image 1 black. Then come the vertical stripe bits,
    most significant first, each as a (normal, inverted) pair, followed by
    the horizontal stripe bits in the same order.

    Args:
        index: Position in the sequence
        width: Projector width
        height: Projector height
        pattern_count: Requested number of bits

    Returns:
        uint8 image of shape (height, width)
    """
    vbits, hbits, count = pattern_bit_counts(width, height, pattern_count)
    total = pattern_image_count(count)
    if not 0 <= index < total:
        raise InputError(f"Pattern index {index} out of range [0, {total})")

    if index < 2:
        return np.full((height, width), 255 if index == 0 else 0, dtype=np.uint8)

    vmask = hmask = 0
    if index < 2 * count + 2:
        vmask = 1 << (vbits - index // 2)
    else:
        hmask = 1 << (hbits + count - index // 2)

    cols = binary_to_gray(np.arange(width, dtype=np.int64), pattern_offset(vbits, width)) & vmask
    rows = binary_to_gray(np.arange(height, dtype=np.int64), pattern_offset(hbits, height)) & hmask
    lit = (rows[:, None] + cols[None, :]) != 0
    if index % 2 == 1:
        lit = ~lit
    return lit.astype(np.uint8) * 255


def generate_pattern_sequence(width: int, height: int,
                              pattern_count: int = DEFAULT_PATTERN_COUNT) -> List[np.ndarray]:
    """
    Render the full projected sequence.

    Returns:
        List of ``2 + 4 * count`` uint8 images
    """
    _, _, count = pattern_bit_counts(width, height, pattern_count)
    images = [make_pattern_image(i, width, height, count)
              for i in range(pattern_image_count(count))]
    logger.info(f"Generated {len(images)} Gray code patterns ({count} bits, {width}x{height})")
    return images


def effective_resolution(width: int, height: int,
                         pattern_count: int = DEFAULT_PATTERN_COUNT) -> Tuple[int, int]:
    """
    Addressable projector resolution when fewer bits are projected than the
    axes need: each dimension is halved until it fits ``2**min(bits, count)``.
    """
    vbits, hbits, count = pattern_bit_counts(width, height, pattern_count)
    max_vert = 1 << min(vbits, count)
    max_horz = 1 << min(hbits, count)
    while width > max_vert:
        width >>= 1
    while height > max_horz:
        height >>= 1
    return width, height


def write_projector_info(path: Union[str, Path], width: int, height: int) -> None:
    """Write the effective resolution record next to a captured sequence."""
    with open(path, 'w') as f:
        f.write(f"{width} {height}\n")
        f.write("\n# width height\n")
    logger.info(f"Saved projector info: {path} ({width}x{height})")


def read_projector_info(path: Union[str, Path]) -> Tuple[int, int]:
    """
    Read the effective resolution record.

    Missing or malformed files fall back to 1024x768, the resolution of scans
    captured before the record existed.
    """
    default = (DEFAULT_PROJECTOR_WIDTH, DEFAULT_PROJECTOR_HEIGHT)
    try:
        with open(path, 'r') as f:
            fields = f.readline().split()
        width, height = int(fields[0]), int(fields[1])
    except (OSError, ValueError, IndexError):
        logger.warning(f"Projector info not available in {path}, using {default[0]}x{default[1]}")
        return default
    if width < 1 or height < 1:
        logger.warning(f"Invalid projector info {width}x{height} in {path}, using default")
        return default
    return width, height
