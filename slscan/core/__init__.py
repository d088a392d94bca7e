"""
Core definitions shared by every slscan module: defaults, events and cancellation.
"""

from .constants import (
    DEFAULT_SHADOW_THRESHOLD, DEFAULT_ROBUST_B, DEFAULT_ROBUST_M,
    DEFAULT_HOMOGRAPHY_WINDOW, DEFAULT_MAX_RESIDUAL,
    DEFAULT_CHESSBOARD_SIZE, DEFAULT_CHESSBOARD_SPACING,
    DEFAULT_PROJECTOR_WIDTH, DEFAULT_PROJECTOR_HEIGHT
)

from .events import EventType, EventEmitter, CancellationToken, ProgressMonitor, checkpoint

__all__ = [
    # Constants
    'DEFAULT_SHADOW_THRESHOLD', 'DEFAULT_ROBUST_B', 'DEFAULT_ROBUST_M',
    'DEFAULT_HOMOGRAPHY_WINDOW', 'DEFAULT_MAX_RESIDUAL',
    'DEFAULT_CHESSBOARD_SIZE', 'DEFAULT_CHESSBOARD_SPACING',
    'DEFAULT_PROJECTOR_WIDTH', 'DEFAULT_PROJECTOR_HEIGHT',

    # Events
    'EventType', 'EventEmitter', 'CancellationToken', 'ProgressMonitor', 'checkpoint'
]
