"""
Progress reporting and cooperative cancellation for long running sweeps.

Decoding, calibration and reconstruction accept an optional
:class:`ProgressMonitor`. The monitor forwards messages and progress values to
registered callbacks and carries a :class:`CancellationToken` that the sweeps
poll between coarse units of work.
"""

import enum
import logging
import threading
from typing import Dict, List, Callable, Optional

from slscan.exceptions import OperationCancelled

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    """Event types emitted by processing stages."""
    STAGE_STARTED = "stage_started"
    STAGE_FINISHED = "stage_finished"
    PROGRESS = "progress"
    MESSAGE = "message"


class EventEmitter:
    """
    Implements an observer pattern for event handling.
    """

    def __init__(self):
        """Initialize an event emitter."""
        self._event_callbacks: Dict[EventType, List[Callable]] = {
            event: [] for event in EventType
        }

    def on(self, event_type: EventType, callback: Callable) -> None:
        """
        Register a callback for an event.

        Args:
            event_type: Event type
            callback: Function to call when the event is emitted
        """
        self._event_callbacks[event_type].append(callback)

    def off(self, event_type: EventType, callback: Callable) -> None:
        """
        Remove a callback for an event.

        Args:
            event_type: Event type
            callback: Function to remove
        """
        if callback in self._event_callbacks[event_type]:
            self._event_callbacks[event_type].remove(callback)

    def emit(self, event_type: EventType, *args, **kwargs) -> None:
        """
        Emit an event, executing all registered callbacks.

        A failing callback is logged and never interrupts processing.

        Args:
            event_type: Event type
            *args, **kwargs: Arguments passed to callbacks
        """
        for callback in self._event_callbacks[event_type]:
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in callback for event {event_type}: {e}")


class CancellationToken:
    """Thread-safe cancel flag shared between a caller and a running operation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str = "Operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(operation)


class ProgressMonitor(EventEmitter):
    """
    Progress sink plus cancellation token handed to long operations.

    Example:
        monitor = ProgressMonitor()
        monitor.on(EventType.MESSAGE, print)
        pipeline = ScanPipeline(config, monitor=monitor)
        # from another thread: monitor.token.cancel()
    """

    def __init__(self, token: Optional[CancellationToken] = None):
        super().__init__()
        self.token = token or CancellationToken()
        self._stage = None

    def start(self, stage: str, total: int = 0) -> None:
        self._stage = stage
        self.emit(EventType.STAGE_STARTED, stage, total)

    def finish(self, success: bool = True) -> None:
        self.emit(EventType.STAGE_FINISHED, self._stage, success)
        self._stage = None

    def message(self, text: str) -> None:
        self.emit(EventType.MESSAGE, text)

    def progress(self, value: int, total: int) -> None:
        self.emit(EventType.PROGRESS, value, total)

    def check(self, operation: Optional[str] = None) -> None:
        """
        Raise :class:`OperationCancelled` if cancellation was requested.

        Args:
            operation: Name used in the error message, defaults to the current stage
        """
        self.token.raise_if_cancelled(operation or self._stage or "Operation")


def checkpoint(monitor: Optional[ProgressMonitor], operation: str) -> None:
    """Cancellation check that tolerates a missing monitor."""
    if monitor is not None:
        monitor.check(operation)
