"""
slscan - structured light scanning with a camera and a projector.

Gray code decoding, camera-projector calibration and dense reconstruction.

Quick start:
    from slscan import ScanPipeline
    pipeline = ScanPipeline()
    pipeline.load_root('scans/')
    calibration = pipeline.calibrate()
    cloud = pipeline.reconstruct('object')
"""

# Import version from pyproject.toml to maintain single source of truth
try:
    import importlib.metadata
    __version__ = importlib.metadata.version("slscan")
except (ImportError, importlib.metadata.PackageNotFoundError):
    # Fallback for development installs
    __version__ = "1.0.0"

from .config import ScanConfig
from .exceptions import SlscanError
from .core.events import EventType, ProgressMonitor, CancellationToken
from .calibration import CalibrationData
from .patterns import DecodeResult, PatternDecoder
from .reconstruction import Pointcloud, Reconstructor
from .image_sets import ImageSet, discover_image_sets
from .pipeline import ScanPipeline
from .logging_config import setup_logging

__all__ = [
    "ScanConfig",
    "SlscanError",
    "EventType",
    "ProgressMonitor",
    "CancellationToken",
    "CalibrationData",
    "DecodeResult",
    "PatternDecoder",
    "Pointcloud",
    "Reconstructor",
    "ImageSet",
    "discover_image_sets",
    "ScanPipeline",
    "setup_logging"
]
