"""
Custom exceptions for slscan.

Processing stages raise these internally; the public decode, calibrate and
reconstruct entry points convert them into explicit failure returns with
:func:`report_failure`.
"""

import functools
import logging
from typing import Optional, Any

logger = logging.getLogger(__name__)


class SlscanError(Exception):
    """Base exception for all slscan errors."""

    def __init__(self, message: str, details: Optional[Any] = None):
        """
        Initialize slscan exception.

        Args:
            message: Error message
            details: Optional additional details
        """
        super().__init__(message)
        self.message = message
        self.details = details


class InputError(SlscanError):
    """Raised when required input images are missing, unreadable or inconsistent."""
    pass


class ImageLoadError(InputError):
    """Raised when an image file cannot be read."""

    def __init__(self, filename: str):
        message = f"Failed to load {filename}"
        super().__init__(message, details={'filename': filename})


class ImageSizeError(InputError):
    """Raised when two images that must match differ in size."""

    def __init__(self, what: str, expected: tuple, actual: tuple):
        message = f"{what} has different size: expected {expected}, got {actual}"
        super().__init__(message, details={'expected': expected, 'actual': actual})


class DegradedSetError(SlscanError):
    """Raised when a single image set is unusable but others may remain."""

    def __init__(self, set_name: str, reason: str):
        message = f"Set '{set_name}' unusable: {reason}"
        super().__init__(message, details={'set': set_name, 'reason': reason})


class CalibrationError(SlscanError):
    """Base exception for calibration-related errors."""
    pass


class CalibrationInvalidError(CalibrationError):
    """Raised when calibration data is invalid or incomplete."""

    def __init__(self, reason: str):
        message = f"Invalid calibration data: {reason}"
        super().__init__(message, details={'reason': reason})


class HomographyError(CalibrationError):
    """Raised when a local homography cannot be fitted around a corner."""

    def __init__(self, set_name: str, corner_index: int, reason: str):
        message = f"Homography failed for set '{set_name}', corner {corner_index}: {reason}"
        super().__init__(message, details={
            'set': set_name,
            'corner': corner_index,
            'reason': reason
        })


class InsufficientDataError(SlscanError):
    """Raised when not enough data is available to continue."""

    def __init__(self, data_type: str, expected: int, actual: int):
        message = f"Insufficient {data_type}: expected at least {expected}, got {actual}"
        super().__init__(message, details={
            'data_type': data_type,
            'expected': expected,
            'actual': actual
        })


class DegenerateRaysError(SlscanError):
    """Raised when two rays are (nearly) parallel and have no stable closest point."""
    pass


class OperationCancelled(SlscanError):
    """Raised when a long running operation is cancelled by the caller."""

    def __init__(self, operation: str):
        message = f"{operation} canceled"
        super().__init__(message, details={'operation': operation})


class ConfigurationError(SlscanError):
    """Raised when configuration is invalid."""

    def __init__(self, field: str, reason: str):
        message = f"Invalid configuration '{field}': {reason}"
        super().__init__(message, details={'field': field, 'reason': reason})


class DependencyError(SlscanError):
    """Raised when an optional dependency is missing."""

    def __init__(self, dependency: str, purpose: str):
        message = f"Missing dependency '{dependency}' required for {purpose}"
        super().__init__(message, details={'dependency': dependency, 'purpose': purpose})


def report_failure(default: Any = None):
    """
    Decorator turning slscan errors into an explicit failure value.

    The wrapped operation logs the error and returns ``default`` instead of
    raising, so callers only ever see a result or a failure marker.

    Args:
        default: Value returned when the operation fails
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except OperationCancelled as e:
                logger.warning(e.message)
                return default
            except SlscanError as e:
                logger.error(f"{func.__name__}: {e.message}")
                return default
        return wrapper
    return decorator
