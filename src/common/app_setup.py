"""
Common application setup functionality

This module provides shared functionality for setting up the application,
including dependency checking, directory initialization, and logging configuration.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import config.constants as constants
from common.logging_config import setup_logging
from service.openvpn_finder import find_openvpn

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Get the directory for settings ($XDG_CONFIG_HOME/openvpn-keeper)"""
    config_base = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    app_config = config_base / constants.APP_DIR
    app_config.mkdir(parents=True, exist_ok=True)
    return app_config


def check_dependencies(openvpn_path: Optional[str] = None) -> bool:
    """Check that the tunnel daemon can be found

    Args:
        openvpn_path: Explicit daemon path from the settings, if any
    """
    executable = find_openvpn(openvpn_path)
    if executable is None:
        if openvpn_path:
            print(f"Configured OpenVPN executable not found: {openvpn_path}")
        else:
            print(f"'{constants.OPENVPN_EXECUTABLE}' was not found on PATH")
            print("\nPlease install it using your package manager, or set tunnel.openvpn_path in the settings")
        return False

    logger.info(f"Using OpenVPN at: {executable}")
    return True


def initialize_app_environment(app_name: str, log_dir: Optional[Path] = None) -> Optional[Path]:
    """Initialize the application environment (directories and logging)

    Args:
        app_name: Name of the application for logging messages
        log_dir: Overrides the log directory lookup

    Returns:
        The config directory if successful, None if failed
    """
    try:
        config_dir = get_config_dir()
    except OSError as e:
        print(f"Could not create configuration directory: {e}")
        return None

    setup_logging(app_name, log_dir)
    return config_dir
