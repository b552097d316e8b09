"""
Reads the few things we need to know from an OpenVPN configuration file.

Discovery and validation of configurations is done elsewhere; this module only
resolves the tunnel interface kind and builds the daemon's launch arguments.
"""

import logging
import shlex
from pathlib import Path
from typing import List, Optional

from api.tunnel_interface import TunnelKind
from config.app_settings import TunnelSettings

logger = logging.getLogger(__name__)

# Configurations shipped as a package directory keep the real file here
PACKAGE_CONFIG = Path("Contents") / "Resources" / "config.ovpn"


def resolve_config_file(config_path: Path) -> Path:
    """Return the actual configuration file for a plain file or a package directory"""
    if config_path.is_dir():
        return config_path / PACKAGE_CONFIG
    return config_path


def _directive_lines(config_file: Path) -> List[List[str]]:
    directives = []
    with open(config_file, 'r', encoding='utf-8', errors='replace') as f:
        for raw in f:
            line = raw.strip()
            if not line or line[0] in '#;':
                continue
            try:
                tokens = shlex.split(line, comments=True)
            except ValueError:
                tokens = line.split()
            if tokens:
                directives.append(tokens)
    return directives


def parse_tunnel_kind(config_path: Path) -> TunnelKind:
    """Determine tun/tap from the 'dev' and 'dev-type' directives.

    'dev-type' wins over the device name prefix. Unreadable files and
    configurations without a device yield TunnelKind.UNKNOWN.
    """
    try:
        directives = _directive_lines(resolve_config_file(config_path))
    except OSError as e:
        logger.warning(f"Could not read configuration {config_path}: {e}")
        return TunnelKind.UNKNOWN

    kind = TunnelKind.UNKNOWN
    dev_type: Optional[TunnelKind] = None
    for tokens in directives:
        if len(tokens) < 2:
            continue
        name, value = tokens[0].lower(), tokens[1].lower()
        if name == "dev-type":
            dev_type = TunnelKind.from_name(value)
        elif name == "dev":
            kind = TunnelKind.from_name(value)
    if dev_type is not None and dev_type is not TunnelKind.UNKNOWN:
        return dev_type
    return kind


def modify_nameserver_options(settings: TunnelSettings) -> List[str]:
    """Extra daemon arguments that ask the daemon to run the nameserver script"""
    if not settings.modify_nameserver or not settings.nameserver_script:
        return []
    script = settings.nameserver_script
    return ["--script-security", "2", "--up", script, "--down", script]


def build_launch_command(executable: str, config_path: Path, port: int,
                         settings: TunnelSettings) -> List[str]:
    """Command line for a daemon managed through its management interface"""
    config_file = resolve_config_file(config_path)
    cmd = list(settings.elevate_command)
    cmd += [
        executable,
        "--config", str(config_file),
        "--cd", str(config_file.parent),
        "--management", settings.management_host, str(port),
        "--management-query-passwords",
        "--management-forget-disconnect",
    ]
    cmd += modify_nameserver_options(settings)
    return cmd
