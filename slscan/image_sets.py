"""
On-disk layout of captured scan sets.

A scan root holds one sub-directory per captured set. Each set contains the
captured images, ordered by file name, and optionally a projector info record
with the effective projector resolution::

    scans/
        set_01/
            cap_00.png ... cap_41.png
            projector_info.txt
        set_02/
        ...
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np
import cv2

from slscan.core.constants import SUPPORTED_IMAGE_FORMATS, PROJECTOR_INFO_FILENAME
from slscan.exceptions import InputError, ImageLoadError
from slscan.patterns.gray_code import read_projector_info
from slscan.patterns.pattern_decoder import load_gray_image

logger = logging.getLogger(__name__)


def list_images(directory: Union[str, Path]) -> List[Path]:
    """Supported image files of a directory, sorted by name."""
    directory = Path(directory)
    files = [p for p in directory.iterdir()
             if p.is_file() and p.suffix.lower() in SUPPORTED_IMAGE_FORMATS]
    return sorted(files, key=lambda p: p.name)


@dataclass
class ImageSet:
    """
    One captured sequence.

    Attributes:
        name: Directory name of the set
        path: Directory of the set
        files: Images in capture order
        projector_size: (width, height) from the projector info record
        enabled: Sets can be excluded from calibration without deleting them
    """
    name: str
    path: Path
    files: List[Path] = field(default_factory=list)
    projector_size: Tuple[int, int] = (0, 0)
    enabled: bool = True

    @classmethod
    def from_directory(cls, path: Union[str, Path]) -> 'ImageSet':
        path = Path(path)
        if not path.is_dir():
            raise InputError(f"Not a directory: {path}")
        projector_size = read_projector_info(path / PROJECTOR_INFO_FILENAME)
        return cls(path.name, path, list_images(path), projector_size)

    def __len__(self) -> int:
        return len(self.files)

    def _file(self, index: int) -> Path:
        if not 0 <= index < len(self.files):
            raise InputError(f"Set '{self.name}' has no image {index} ({len(self.files)} images)")
        return self.files[index]

    def load_gray(self, index: int) -> np.ndarray:
        """Load image ``index`` as 8-bit gray."""
        return load_gray_image(self._file(index))

    def load_color(self, index: int = 0) -> np.ndarray:
        """Load image ``index`` as 8-bit BGR. The first image is lit all white."""
        filename = self._file(index)
        image = cv2.imread(str(filename), cv2.IMREAD_COLOR)
        if image is None or image.size == 0:
            raise ImageLoadError(str(filename))
        return image


def discover_image_sets(root: Union[str, Path]) -> List[ImageSet]:
    """
    Find the scan sets below ``root``.

    Sub-directories without images are ignored.

    Raises:
        InputError: If ``root`` is not a directory
    """
    root = Path(root)
    if not root.is_dir():
        raise InputError(f"Scan root not found: {root}")

    sets = []
    for path in sorted(p for p in root.iterdir() if p.is_dir()):
        image_set = ImageSet.from_directory(path)
        if len(image_set) == 0:
            logger.debug(f"Skipping {path}: no images")
            continue
        sets.append(image_set)
        logger.info(f"Found set '{image_set.name}': {len(image_set)} images, "
                    f"projector {image_set.projector_size[0]}x{image_set.projector_size[1]}")
    if not sets:
        logger.warning(f"No image sets found in {root}")
    return sets
