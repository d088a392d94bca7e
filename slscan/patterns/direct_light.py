"""
Direct and global light separation.

Given a few images lit by shifted high frequency patterns, every pixel sees
its full direct illumination in at least one image and none of it in another.
The per-pixel maximum and minimum then separate the direct component ``Ld``
from the global (indirect and ambient) component ``Lg``::

    Ld = (Lmax - Lmin) / (1 - b)
    Lg = 2 * (Lmin - b * Lmax) / (1 - b**2)

where ``b`` is the expected fraction of global light that survives when the
projector pixel is off.
"""

import logging
from typing import List, Sequence, Optional

import numpy as np

from slscan.core.constants import (
    DEFAULT_ROBUST_B, MAX_DIRECT_LIGHT_IMAGES, DIRECT_LIGHT_COUNT, DIRECT_LIGHT_OFFSET
)
from slscan.exceptions import InputError, ImageSizeError, report_failure

logger = logging.getLogger(__name__)


def direct_light_indices(total_images: int,
                         count: int = DIRECT_LIGHT_COUNT,
                         offset: int = DIRECT_LIGHT_OFFSET) -> List[int]:
    """
    Select the images used for direct light estimation from a full sequence.

    The highest frequency vertical and horizontal patterns are skipped
    (``offset`` of them) since camera blur washes them out; the next
    ``count`` images before that point are taken from each axis.

    Args:
        total_images: Number of images in the captured sequence
        count: Images taken per axis
        offset: Highest frequency images skipped per axis

    Returns:
        Sorted 0-based image indices, ``2 * count`` of them
    """
    patterns = total_images // 2 - 1
    if patterns < count + offset:
        raise InputError(
            f"Too few pattern images for direct light estimation: "
            f"{patterns} patterns per axis, need {count + offset}"
        )
    first = total_images - patterns - count - offset
    vertical = [first + i for i in range(count)]
    horizontal = [first + patterns + i for i in range(count)]
    return vertical + horizontal


def compute_direct_light(images: Sequence[np.ndarray], b: float = DEFAULT_ROBUST_B) -> np.ndarray:
    """
    Estimate per-pixel direct and global light.

    Args:
        images: Single channel uint8 images of identical size
        b: Global light attenuation ratio in [0, 1)

    Returns:
        uint8 array of shape (H, W, 2) holding (Ld, Lg), saturated to 255

    Raises:
        InputError: If no image is given, an image is not single channel
            uint8 or sizes differ
    """
    if len(images) < 1:
        raise InputError("No images for direct light estimation")
    if not 0.0 <= b < 1.0:
        raise InputError(f"Global light ratio b={b} not in [0, 1)")

    if len(images) > MAX_DIRECT_LIGHT_IMAGES:
        logger.warning(f"Using only {MAX_DIRECT_LIGHT_IMAGES} of {len(images)} images for direct light")
        images = images[:MAX_DIRECT_LIGHT_IMAGES]

    size = None
    for i, image in enumerate(images):
        if not isinstance(image, np.ndarray) or image.dtype != np.uint8 or image.ndim != 2:
            raise InputError(f"Gray images required, image {i} is not single channel 8-bit")
        if size is None:
            size = image.shape
        elif image.shape != size:
            raise ImageSizeError(f"Direct light image {i}", size, image.shape)

    stack = np.stack(images)
    lmax = stack.max(axis=0).astype(np.float64)
    lmin = stack.min(axis=0).astype(np.float64)

    b1 = 1.0 / (1.0 - b)
    b2 = 2.0 / (1.0 - b * b)
    ld = np.trunc(b1 * (lmax - lmin) + 0.5)
    lg = np.trunc(b2 * (lmin - b * lmax) + 0.5)

    positive = lg > 0
    direct_light = np.empty(size + (2,), dtype=np.uint8)
    direct_light[..., 0] = np.clip(np.where(positive, ld, lmax), 0, 255)
    direct_light[..., 1] = np.clip(np.where(positive, lg, 0), 0, 255)

    logger.debug(f"Direct light estimated from {len(images)} images, "
                 f"{np.count_nonzero(positive)} pixels with global light")
    return direct_light


@report_failure(default=None)
def estimate_direct_light(images: Sequence[np.ndarray],
                          b: float = DEFAULT_ROBUST_B) -> Optional[np.ndarray]:
    """
    Estimate direct and global light, returning None on failure.

    See :func:`compute_direct_light`.
    """
    logger.info(f"Estimating direct light from {len(images)} images (b={b})")
    return compute_direct_light(images, b)
