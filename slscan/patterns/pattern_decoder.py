"""
Gray code pattern decoding for structured light 3D scanning.

A captured sequence holds ``2 + 4 * bits`` images: a white/black pair, then
``bits`` vertical stripe pairs (projector column, most significant bit first)
and ``bits`` horizontal stripe pairs (projector row). Each pair is the normal
pattern followed by its inverse. Decoding compares the two images of every
pair and assembles the bits into per-pixel projector coordinates.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple, Optional, Union, Callable

import numpy as np
import cv2

from slscan.core.constants import DEFAULT_ROBUST_M
from slscan.core.events import ProgressMonitor, checkpoint
from slscan.exceptions import InputError, ImageLoadError, ImageSizeError, report_failure
from slscan.patterns.gray_code import decode_gray_codes

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, np.ndarray]

# Channel order of pattern maps and envelopes
COLUMN, ROW = 0, 1
MIN, MAX = 0, 1


def load_gray_image(source: ImageSource) -> np.ndarray:
    """
    Load a single channel 8-bit image from a file name or an array.

    Raises:
        ImageLoadError: If the file cannot be read
    """
    if isinstance(source, np.ndarray):
        image = source
    else:
        image = cv2.imread(str(source), cv2.IMREAD_COLOR)
        if image is None or image.size == 0:
            raise ImageLoadError(str(source))
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.dtype != np.uint8:
        raise InputError(f"8-bit images required, got {image.dtype}")
    return image


@dataclass(frozen=True, eq=False)
class DecodeResult:
    """
    Decoded projector coordinates of one captured sequence.

    Attributes:
        pattern: float32 (H, W, 2) projector (column, row), NaN where undecodable
        min_max: uint8 (H, W, 2) minimum and maximum intensity over the pattern images
        projector_size: (width, height) the coordinates were clamped to
        bits: Number of decoded bits per axis
    """
    pattern: np.ndarray
    min_max: np.ndarray
    projector_size: Tuple[int, int]
    bits: int

    def __post_init__(self):
        # read-only views, the caller's arrays keep their flags
        for name in ('pattern', 'min_max'):
            view = getattr(self, name).view()
            view.flags.writeable = False
            object.__setattr__(self, name, view)

    @property
    def camera_size(self) -> Tuple[int, int]:
        """(width, height) of the camera images."""
        return self.pattern.shape[1], self.pattern.shape[0]

    def spread(self) -> np.ndarray:
        """Per-pixel max minus min intensity."""
        return self.min_max[..., MAX].astype(np.int16) - self.min_max[..., MIN].astype(np.int16)

    def valid_mask(self, threshold: int = 0) -> np.ndarray:
        """
        Pixels with both coordinates decoded and intensity spread >= threshold.

        Args:
            threshold: Shadow threshold on the intensity envelope
        """
        decoded = ~np.isnan(self.pattern).any(axis=2)
        return decoded & (self.spread() >= threshold)


def robust_bits(value1: np.ndarray, value2: np.ndarray,
                ld: np.ndarray, lg: np.ndarray, m: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Classify pattern bits using the direct/global light estimate.

    A pixel whose direct light is below ``m`` is uncertain. Where direct light
    dominates, the plain comparison is used. Otherwise a bit is only accepted
    when one image is at most the direct level and the other at least the
    global level.

    Args:
        value1: Intensities under the normal pattern
        value2: Intensities under the inverted pattern
        ld: Direct light component
        lg: Global light component
        m: Minimum direct light to trust a pixel

    Returns:
        (bits, uncertain) boolean arrays
    """
    value1 = np.asarray(value1, dtype=np.int32)
    value2 = np.asarray(value2, dtype=np.int32)
    ld = np.asarray(ld, dtype=np.int32)
    lg = np.asarray(lg, dtype=np.int32)

    direct = ld > lg
    zero = (value1 <= ld) & (value2 >= lg)
    one = (value1 >= lg) & (value2 <= ld)

    bits = np.where(direct, value1 > value2, ~zero & one)
    uncertain = (ld < m) | (~direct & ~zero & ~one)
    return bits & ~uncertain, uncertain


class PatternDecoder:
    """
    Decodes a captured Gray code sequence into projector coordinates.

    Example:
        decoder = PatternDecoder((1024, 768), direct_light=light)
        result = decoder.decode(image_files)
        columns = result.pattern[..., 0]
    """

    def __init__(self,
                 projector_size: Tuple[int, int],
                 gray: bool = True,
                 robust: bool = True,
                 direct_light: Optional[np.ndarray] = None,
                 m: int = DEFAULT_ROBUST_M,
                 loader: Callable[[ImageSource], np.ndarray] = load_gray_image,
                 monitor: Optional[ProgressMonitor] = None):
        """
        Initialize the decoder.

        Args:
            projector_size: (width, height) of the projector's addressable area
            gray: Codes are Gray codes (False for plain binary patterns)
            robust: Use the direct/global light bit rule
            direct_light: (H, W, 2) uint8 (Ld, Lg), required when robust
            m: Minimum direct light for the robust rule
            loader: Turns a sequence item into a gray image
            monitor: Optional progress sink and cancellation token
        """
        self.projector_size = (int(projector_size[0]), int(projector_size[1]))
        self.gray = gray
        self.robust = robust
        self.direct_light = direct_light
        self.m = m
        self.loader = loader
        self.monitor = monitor

    @staticmethod
    def bits_for_count(total_images: int) -> int:
        """
        Derive the bit count from the sequence length.

        Raises:
            InputError: If the count is not ``2 + 4 * bits``
        """
        bits = (total_images // 2 - 1) // 2
        if bits < 1 or 2 + 4 * bits != total_images:
            raise InputError(f"Cannot detect pattern and bit count from {total_images} images")
        return bits

    def decode(self, images: Sequence[ImageSource]) -> DecodeResult:
        """
        Decode a full captured sequence.

        Args:
            images: ``2 + 4 * bits`` file names or arrays in capture order.
                The white/black pair is not read.

        Returns:
            DecodeResult

        Raises:
            InputError: On a wrong image count, an unreadable image or a size
                mismatch in the first pair
            OperationCancelled: If the monitor requests cancellation
        """
        bits = self.bits_for_count(len(images))
        if self.robust and self.direct_light is None:
            raise InputError("Robust decoding requires a direct light estimate")

        mode = ("Gray" if self.gray else "Binary") + (" Robust" if self.robust else "")
        logger.info(f"Decode: {mode}, {bits} bits, projector {self.projector_size[0]}x{self.projector_size[1]}")

        codes = None
        uncertain = None
        envelope_min = envelope_max = None
        shape = None
        pairs = 2 * bits

        for pair in range(pairs):
            checkpoint(self.monitor, "Decode")
            channel = COLUMN if pair < bits else ROW
            bit = bits - (pair % bits) - 1
            t = 2 + 2 * pair

            image1 = self.loader(images[t])
            image2 = self.loader(images[t + 1])

            if shape is None:
                if image1.shape != image2.shape:
                    raise ImageSizeError("Initial image pair", image1.shape, image2.shape)
                if self.robust and self.direct_light.shape[:2] != image1.shape:
                    raise ImageSizeError("Direct light image", image1.shape, self.direct_light.shape[:2])
                shape = image1.shape
                codes = np.zeros(shape + (2,), dtype=np.int64)
                uncertain = np.zeros(shape + (2,), dtype=bool)
                envelope_min = np.full(shape, 255, dtype=np.uint8)
                envelope_max = np.zeros(shape, dtype=np.uint8)

            if image1.shape != shape or image2.shape != shape:
                logger.warning(f"Image pair {t} has different size {image1.shape}/{image2.shape}, skipped")
                continue

            np.minimum(envelope_min, np.minimum(image1, image2), out=envelope_min)
            np.maximum(envelope_max, np.maximum(image1, image2), out=envelope_max)

            if self.robust:
                values, unsure = robust_bits(image1, image2,
                                             self.direct_light[..., 0], self.direct_light[..., 1], self.m)
                uncertain[..., channel] |= unsure
            else:
                values = image1 > image2
            codes[..., channel] += values.astype(np.int64) << bit

            logger.debug(f"Pair {t}: channel {channel}, bit {bit}")
            if self.monitor is not None:
                self.monitor.progress(pair + 1, pairs)

        pattern = np.empty(shape + (2,), dtype=np.float32)
        for channel, size in ((COLUMN, self.projector_size[0]), (ROW, self.projector_size[1])):
            raw = codes[..., channel].astype(np.float64)
            raw[uncertain[..., channel]] = np.nan
            if self.gray:
                pattern[..., channel] = decode_gray_codes(raw, bits, size)
            else:
                pattern[..., channel] = raw

        min_max = np.stack([envelope_min, envelope_max], axis=2)
        invalid = np.count_nonzero(np.isnan(pattern).any(axis=2))
        logger.info(f"Decode finished: {invalid} of {shape[0] * shape[1]} pixels undecoded")
        return DecodeResult(pattern, min_max, self.projector_size, bits)


@report_failure(default=None)
def decode_pattern(images: Sequence[ImageSource],
                   projector_size: Tuple[int, int],
                   gray: bool = True,
                   robust: bool = True,
                   direct_light: Optional[np.ndarray] = None,
                   m: int = DEFAULT_ROBUST_M,
                   monitor: Optional[ProgressMonitor] = None) -> Optional[DecodeResult]:
    """
    Decode a captured sequence, returning None on failure.

    See :class:`PatternDecoder`.
    """
    decoder = PatternDecoder(projector_size, gray=gray, robust=robust,
                             direct_light=direct_light, m=m, monitor=monitor)
    return decoder.decode(images)
