"""
Data model of one configured tunnel.

A Connection lives as long as its configuration is known and is reused across
connect/disconnect cycles. Everything that only matters for one connect
attempt is kept in a ConnectionAttempt, created when the attempt starts and
dropped when the daemon is gone.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from api.tunnel_interface import ConnectionState, TunnelKind
from config.tunnel_config import parse_tunnel_kind

logger = logging.getLogger(__name__)


@dataclass
class ConnectionAttempt:
    """Flags describing the current (or most recent) connect attempt"""
    tunnel_kind: TunnelKind = TunnelKind.UNKNOWN
    modify_nameserver: bool = False
    hookup_in_progress: bool = False
    hooked_up: bool = False
    disconnecting: bool = False
    disconnect_requested: bool = False

    @property
    def used_tun(self) -> bool:
        return self.tunnel_kind is TunnelKind.TUN

    @property
    def used_tap(self) -> bool:
        return self.tunnel_kind is TunnelKind.TAP


class Connection:
    """One configured tunnel and the runtime state of its daemon"""

    def __init__(self, config_path: Path, display_name: Optional[str] = None):
        self._config_path = Path(config_path)
        self._display_name = display_name or self._config_path.stem
        self._parsed_tunnel_kind: Optional[TunnelKind] = None

        self.logs_may_exist = False
        self.authentication_failed = False
        self.last_attempt: Optional[ConnectionAttempt] = None
        self.leaked_pids: List[int] = []
        self.requested_state = ConnectionState.DISCONNECTED
        self.reinitialize()

    def reinitialize(self) -> None:
        """Reset the runtime handle and state; identity and sticky flags are kept"""
        self.pid = 0
        self.port = 0
        self.tunnel_kind = TunnelKind.UNKNOWN
        self.state = ConnectionState.DISCONNECTED
        self.last_state = ConnectionState.DISCONNECTED
        self.daemon_state: Optional[str] = None
        self.connected_since: Optional[datetime] = None
        self.bytes_in = 0
        self.bytes_out = 0
        self.attempt: Optional[ConnectionAttempt] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def display_location(self) -> str:
        """Directory the configuration lives in, for telling same-named configurations apart"""
        return str(self._config_path.parent)

    def set_state(self, new_state: ConnectionState) -> ConnectionState:
        """Move to new_state and return the previous state.

        connected_since is stamped on entering CONNECTED and cleared on leaving it.
        """
        old_state = self.state
        if new_state is old_state:
            return old_state
        self.last_state = old_state
        self.state = new_state
        if new_state is ConnectionState.CONNECTED:
            self.connected_since = datetime.now()
        else:
            self.connected_since = None
        return old_state

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def is_disconnected(self) -> bool:
        return self.state is ConnectionState.DISCONNECTED

    def take_authentication_failure(self) -> bool:
        """Return whether an authentication failure is pending, clearing it"""
        failed = self.authentication_failed
        self.authentication_failed = False
        return failed

    def start_attempt(self, attempt: ConnectionAttempt) -> None:
        self.attempt = attempt
        self.last_attempt = attempt
        self.logs_may_exist = True

    @property
    def hooked_up(self) -> bool:
        return self.attempt is not None and self.attempt.hooked_up

    @property
    def trying_to_hookup(self) -> bool:
        return self.attempt is not None and self.attempt.hookup_in_progress

    @property
    def disconnecting(self) -> bool:
        return self.attempt is not None and self.attempt.disconnecting

    @property
    def used_tun(self) -> bool:
        return self.last_attempt is not None and self.last_attempt.used_tun

    @property
    def used_tap(self) -> bool:
        return self.last_attempt is not None and self.last_attempt.used_tap

    @property
    def used_modify_nameserver(self) -> bool:
        return self.last_attempt is not None and self.last_attempt.modify_nameserver

    def resolve_tunnel_kind(self) -> TunnelKind:
        """tun/tap from the configuration file, parsed once until invalidated"""
        if self._parsed_tunnel_kind is None:
            self._parsed_tunnel_kind = parse_tunnel_kind(self._config_path)
            logger.debug(f"{self._display_name}: configuration uses {self._parsed_tunnel_kind.value}")
        return self._parsed_tunnel_kind

    def invalidate_configuration_parse(self) -> None:
        self._parsed_tunnel_kind = None

    def __repr__(self) -> str:
        return f"Connection({self._display_name!r}, state={self.state.value}, pid={self.pid})"
