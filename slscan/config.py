"""
Scan configuration for slscan.

All thresholds, window sizes and robustness parameters used by the decode,
calibrate and reconstruct stages live in one :class:`ScanConfig` value that is
passed explicitly to every stage.
"""

import json
import logging
from dataclasses import dataclass, asdict, fields, replace
from pathlib import Path
from typing import Dict, Any, Tuple, Union

from slscan.core.constants import (
    DEFAULT_SHADOW_THRESHOLD, DEFAULT_ROBUST_B, DEFAULT_ROBUST_M,
    DEFAULT_HOMOGRAPHY_WINDOW, DEFAULT_MAX_RESIDUAL,
    DEFAULT_CHESSBOARD_SIZE, DEFAULT_CHESSBOARD_SPACING,
    DETECTION_MAX_WIDTH, RECONSTRUCTION_MODES
)
from slscan.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanConfig:
    """Configuration for decoding, calibration and reconstruction."""
    shadow_threshold: int = DEFAULT_SHADOW_THRESHOLD  # 0-255
    robust_b: float = DEFAULT_ROBUST_B  # [0, 1)
    robust_m: int = DEFAULT_ROBUST_M
    homography_window: int = DEFAULT_HOMOGRAPHY_WINDOW  # pixels
    max_triangulation_residual: float = DEFAULT_MAX_RESIDUAL  # mm
    chessboard_size: Tuple[int, int] = DEFAULT_CHESSBOARD_SIZE  # interior corners (cols, rows)
    chessboard_spacing: Tuple[float, float] = DEFAULT_CHESSBOARD_SPACING  # mm
    gray_decode: bool = True
    robust_decode: bool = True
    reconstruction_mode: str = "patch_center"
    compute_normals: bool = True
    detection_max_width: int = DETECTION_MAX_WIDTH

    def __post_init__(self):
        # JSON round trips turn tuples into lists
        object.__setattr__(self, 'chessboard_size', tuple(int(v) for v in self.chessboard_size))
        object.__setattr__(self, 'chessboard_spacing', tuple(float(v) for v in self.chessboard_spacing))

    def validate(self) -> 'ScanConfig':
        """
        Check every field is within its allowed range.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: If a field is out of range
        """
        if not 0 <= self.shadow_threshold <= 255:
            raise ConfigurationError('shadow_threshold', f"{self.shadow_threshold} not in [0, 255]")
        if not 0.0 <= self.robust_b < 1.0:
            raise ConfigurationError('robust_b', f"{self.robust_b} not in [0, 1)")
        if self.robust_m < 0:
            raise ConfigurationError('robust_m', "must be non-negative")
        if self.homography_window < 4:
            raise ConfigurationError('homography_window', "must be at least 4 pixels")
        if self.max_triangulation_residual <= 0:
            raise ConfigurationError('max_triangulation_residual', "must be positive")
        if len(self.chessboard_size) != 2 or min(self.chessboard_size) < 2:
            raise ConfigurationError('chessboard_size', f"invalid corner count {self.chessboard_size}")
        if len(self.chessboard_spacing) != 2 or min(self.chessboard_spacing) <= 0:
            raise ConfigurationError('chessboard_spacing', f"invalid spacing {self.chessboard_spacing}")
        if self.reconstruction_mode not in RECONSTRUCTION_MODES:
            raise ConfigurationError('reconstruction_mode',
                                     f"'{self.reconstruction_mode}' not one of {RECONSTRUCTION_MODES}")
        if self.detection_max_width < 1:
            raise ConfigurationError('detection_max_width', "must be positive")
        return self

    def with_changes(self, **changes) -> 'ScanConfig':
        """Return a validated copy with some fields replaced."""
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a JSON friendly dictionary."""
        data = asdict(self)
        data['chessboard_size'] = list(self.chessboard_size)
        data['chessboard_spacing'] = list(self.chessboard_spacing)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScanConfig':
        """
        Create configuration from a dictionary.

        Unknown keys are ignored with a warning.

        Args:
            data: Field values

        Returns:
            Validated ScanConfig
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known}).validate()

    def save(self, filepath: Union[str, Path]) -> None:
        """Save configuration to a JSON file."""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved configuration to {filepath}")

    @classmethod
    def load(cls, filepath: Union[str, Path]) -> 'ScanConfig':
        """
        Load configuration from a JSON file.

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        try:
            with open(filepath, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError('file', f"cannot read {filepath}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError('file', f"{filepath} does not hold an object")
        logger.info(f"Loaded configuration from {filepath}")
        return cls.from_dict(data)
