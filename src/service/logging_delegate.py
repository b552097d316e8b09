"""
Delegate that writes every connection notification to the log, optionally
forwarding it to another delegate.
"""

import logging
from typing import Optional

from api.errors import TunnelError
from api.tunnel_interface import ConnectionDelegate, ConnectionState
from service.connection import Connection

logger = logging.getLogger(__name__)

daemon_logger = logging.getLogger("openvpn")


class LoggingDelegate(ConnectionDelegate):
    """Delegate adapter that logs connection events"""

    def __init__(self, forward_to: Optional[ConnectionDelegate] = None):
        self.forward_to = forward_to

    def on_state_changed(self, connection: Connection, old_state: ConnectionState,
                         new_state: ConnectionState) -> None:
        logger.info(f"[{connection.display_name}] State: {old_state.value} -> {new_state.value}")
        if self.forward_to:
            self.forward_to.on_state_changed(connection, old_state, new_state)

    def on_authentication_failed(self, connection: Connection) -> None:
        logger.warning(f"[{connection.display_name}] Authentication failed")
        if self.forward_to:
            self.forward_to.on_authentication_failed(connection)

    def on_process_exited(self, connection: Connection, expected: bool) -> None:
        if expected:
            logger.info(f"[{connection.display_name}] OpenVPN stopped")
        else:
            logger.warning(f"[{connection.display_name}] OpenVPN terminated unexpectedly")
        if self.forward_to:
            self.forward_to.on_process_exited(connection, expected)

    def on_unkillable_process(self, connection: Connection) -> None:
        pids = ", ".join(str(pid) for pid in connection.leaked_pids)
        logger.error(f"[{connection.display_name}] OpenVPN could not be killed (pid {pids}); "
                     f"it must be stopped manually")
        if self.forward_to:
            self.forward_to.on_unkillable_process(connection)

    def on_log_line(self, connection: Connection, line: str) -> None:
        daemon_logger.debug(f"[{connection.display_name}] {line}")
        if self.forward_to:
            self.forward_to.on_log_line(connection, line)

    def on_byte_count(self, connection: Connection, bytes_in: int, bytes_out: int) -> None:
        if self.forward_to:
            self.forward_to.on_byte_count(connection, bytes_in, bytes_out)

    def on_unknown_state(self, connection: Connection, state_name: str) -> None:
        logger.warning(f"[{connection.display_name}] Unknown state reported: {state_name}")
        if self.forward_to:
            self.forward_to.on_unknown_state(connection, state_name)

    def on_error(self, connection: Connection, error: TunnelError) -> None:
        logger.error(f"[{connection.display_name}] {type(error).__name__}: {error}")
        if self.forward_to:
            self.forward_to.on_error(connection, error)
