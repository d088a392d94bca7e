"""
Logging setup shared by the command line and library users.

Console output stays short, the optional log file receives every record
with its source location. Debug sessions write into their own directory so
the log of one scan can be kept next to its images.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Dict
from datetime import datetime

from slscan.core.constants import MAX_LOG_FILE_SIZE, DEBUG_DIR_PREFIX

FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
CONSOLE_FORMAT = '%(levelname)s - %(message)s'


class SlscanLogger:
    """Handlers and per-stage levels of the ``slscan`` loggers."""

    # Stage loggers and their quietest level
    STAGE_LEVELS = {
        'slscan.patterns': logging.INFO,
        'slscan.calibration': logging.INFO,
        'slscan.reconstruction': logging.INFO,
        'slscan.pipeline': logging.INFO,
        'slscan.core': logging.WARNING,
    }

    @staticmethod
    def level_of(name: str) -> int:
        level = logging.getLevelName(name.upper())
        return level if isinstance(level, int) else logging.INFO

    @classmethod
    def setup_logging(
        cls,
        level: str = 'INFO',
        log_file: Optional[str] = None,
        console: bool = True,
        module_levels: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Replace the root handlers.

        Args:
            level: Console level name, DEBUG also lowers the stage loggers
            log_file: Rotating file that receives DEBUG and above
            console: Log to stdout
            module_levels: Level names for individual loggers, applied last
        """
        console_level = cls.level_of(level)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.handlers.clear()

        if console:
            stream = logging.StreamHandler(sys.stdout)
            stream.setLevel(console_level)
            stream.setFormatter(logging.Formatter(CONSOLE_FORMAT))
            root.addHandler(stream)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            rotating = RotatingFileHandler(log_file, maxBytes=MAX_LOG_FILE_SIZE, backupCount=3)
            rotating.setLevel(logging.DEBUG)
            rotating.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
            root.addHandler(rotating)

        for name, stage_level in cls.STAGE_LEVELS.items():
            logging.getLogger(name).setLevel(min(stage_level, console_level))
        for name, level_name in (module_levels or {}).items():
            logging.getLogger(name).setLevel(cls.level_of(level_name))

    @classmethod
    def start_debug_session(cls, session_name: Optional[str] = None,
                            base_dir: Optional[str] = None) -> str:
        """
        Log everything into ``<base_dir>/<session>/debug.log``.

        The session is named after the current time when no name is given,
        ``base_dir`` defaults to ``~/.slscan/logs``.

        Returns:
            Path of the session log file
        """
        session = session_name or f"{DEBUG_DIR_PREFIX}_{datetime.now():%Y%m%d_%H%M%S}"
        session_dir = (Path(base_dir) if base_dir else Path.home() / '.slscan' / 'logs') / session
        session_dir.mkdir(parents=True, exist_ok=True)

        log_file = str(session_dir / 'debug.log')
        cls.setup_logging(level='DEBUG', log_file=log_file, console=True)
        logging.getLogger('slscan').info(f"Debug session '{session}' logging to {log_file}")
        return log_file


def setup_logging(**kwargs) -> None:
    SlscanLogger.setup_logging(**kwargs)


def debug_mode(session_name: Optional[str] = None, base_dir: Optional[str] = None) -> str:
    """Start a debug session, see :meth:`SlscanLogger.start_debug_session`."""
    return SlscanLogger.start_debug_session(session_name, base_dir)
