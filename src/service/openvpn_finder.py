"""
Locates the OpenVPN executable
"""
import sys
import shutil
from pathlib import Path
from typing import Optional

import config.constants as constants


def find_openvpn(configured_path: Optional[str] = None) -> Optional[Path]:
    """
    Find OpenVPN executable

    Args:
        configured_path: Path from the settings; used as-is when it exists

    Returns:
        Path to the openvpn executable if found, None otherwise
    """
    if configured_path:
        exe = Path(configured_path)
        return exe if exe.exists() else None

    if getattr(sys, "frozen", False):
        # When frozen, we're running as a bundled executable
        base_dir = Path(sys.executable).resolve().parent
    else:
        # When not frozen, we're running from source
        base_dir = Path(__file__).resolve().parent.parent.parent

    # Typically running as an executable in a bundled folder
    exe = base_dir / "openvpn" / constants.OPENVPN_EXECUTABLE
    if exe.exists():
        return exe

    # Typically running from source using build artifacts
    exe = base_dir / "build" / "openvpn" / constants.OPENVPN_EXECUTABLE
    if exe.exists():
        return exe

    found = shutil.which(constants.OPENVPN_EXECUTABLE)
    return Path(found) if found else None
