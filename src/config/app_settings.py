"""
Application settings management
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Any

import config.constants as constants

logger = logging.getLogger(__name__)


@dataclass
class TunnelSettings:
    """Settings that drive how a tunnel daemon is launched, attached to and stopped"""
    openvpn_path: Optional[str] = None
    elevate_command: List[str] = field(default_factory=list)
    management_host: str = constants.MANAGEMENT_HOST
    port_first: int = constants.MANAGEMENT_PORT_FIRST
    port_last: int = constants.MANAGEMENT_PORT_LAST
    attach_timeout: float = constants.ATTACH_TIMEOUT
    attach_retry_interval: float = constants.ATTACH_RETRY_INTERVAL
    hookup_max_attempts: int = constants.HOOKUP_MAX_ATTEMPTS
    hookup_probe_timeout: float = constants.HOOKUP_PROBE_TIMEOUT
    force_kill_timeout: int = constants.FORCE_KILL_TIMEOUT
    force_kill_interval: int = constants.FORCE_KILL_INTERVAL
    force_kill_max_attempts: int = constants.FORCE_KILL_MAX_ATTEMPTS
    bytecount_interval: int = constants.BYTECOUNT_INTERVAL
    modify_nameserver: bool = False
    nameserver_script: Optional[str] = None

    def port_range(self) -> range:
        return range(self.port_first, self.port_last + 1)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TunnelSettings':
        """Build settings from a (possibly partial) dictionary, ignoring unknown keys"""
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown tunnel settings: {', '.join(sorted(unknown))}")
        return cls(**{key: value for key, value in data.items() if key in known})


class AppSettings:
    """Manages application settings and preferences"""

    def __init__(self, config_dir: Path):
        self.settings_file = config_dir / constants.APP_SETTINGS_FILE
        self.settings: Dict[str, Any] = {}
        self.load_settings()

    def load_settings(self) -> None:
        """Load settings from YAML file"""
        try:
            if self.settings_file.exists():
                with open(self.settings_file, 'r') as f:
                    self.settings = yaml.safe_load(f) or {}
                logger.info("Loaded application settings")
            else:
                logger.info("No existing settings file found, starting with default settings")
                self.settings = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading settings: {e}")
            self.settings = {}

    def save_settings(self) -> None:
        """Save settings to YAML file"""
        try:
            with open(self.settings_file, 'w') as f:
                yaml.safe_dump(self.settings, f, indent=2, default_flow_style=False)
            logger.debug("Saved application settings")
        except OSError as e:
            logger.error(f"Error saving settings: {e}")

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key"""
        return self.settings.get(key, default)

    def set_setting(self, key: str, value: Any) -> None:
        """Set a setting value by key"""
        self.settings[key] = value
        self.save_settings()

    def get_tunnel_settings(self, display_name: Optional[str] = None) -> TunnelSettings:
        """Tunnel settings, with per-connection overrides from the 'connections' section"""
        merged: Dict[str, Any] = dict(self.settings.get('tunnel') or {})
        if display_name:
            overrides = (self.settings.get('connections') or {}).get(display_name) or {}
            merged.update(overrides)
        return TunnelSettings.from_dict(merged)

    def set_modify_nameserver(self, display_name: str, enabled: bool) -> None:
        connections = self.settings.setdefault('connections', {})
        connections.setdefault(display_name, {})['modify_nameserver'] = enabled
        self.save_settings()
        logger.debug(f"Saved modify_nameserver={enabled} for {display_name}")
