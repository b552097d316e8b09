"""
Logging configuration.

Logs always go to stdout. A rotating log file is added when a log directory
can be found or created:
- A 'logs' directory next to the running executable, if it exists
- Otherwise $XDG_STATE_HOME/openvpn-keeper (~/.local/state/openvpn-keeper)
"""

import sys
import os
import logging
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import List, Optional

import config.constants as constants
from _version import __version__

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def get_executable_dir() -> Path:
    """Get the directory where the running executable is located."""
    return Path(sys.executable).parent


def find_log_dir() -> Optional[Path]:
    """Find (or create) the log directory.

    Returns:
        Path to log directory, or None if no suitable directory found
    """
    logs_dir = get_executable_dir() / "logs"
    if logs_dir.exists():
        return logs_dir

    try:
        state_base = Path(os.environ.get("XDG_STATE_HOME") or Path.home() / ".local" / "state")
        app_state = state_base / constants.APP_DIR
        app_state.mkdir(parents=True, exist_ok=True)
        return app_state
    except OSError:
        pass

    return None


def setup_logging(app_name: str, log_dir: Optional[Path] = None, level: int = logging.DEBUG) -> Optional[Path]:
    """Setup logging for the application.

    Args:
        app_name: Name of the application for logging messages
        log_dir: Directory for the log file, looked up when not given
        level: Root logger level

    Returns:
        Path of the log file, or None when logging only to stdout
    """
    if log_dir is None:
        log_dir = find_log_dir()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_file = None
    if log_dir:
        log_file = log_dir / constants.LOG_FILE
        try:
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=5
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            handlers.append(file_handler)
        except OSError as e:
            print(f"Warning: Could not create log file handler: {e}", file=sys.stderr)
            log_file = None

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers
    )

    logger.info(f"{app_name} {__version__} starting...")
    if log_file:
        logger.info(f"Log file: {log_file}")
    return log_file
