"""
Registry of the configured connections and their state machines.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from api.tunnel_interface import ConnectionDelegate, CredentialProvider
from config.app_settings import AppSettings
from service.connection import Connection
from service.connection_state_machine import ConnectionStateMachine
from service.hookup import ChannelFactory
from service.logging_delegate import LoggingDelegate
from service.process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns one ConnectionStateMachine per configuration, keyed by display name"""

    def __init__(self, app_settings: AppSettings,
                 delegate: Optional[ConnectionDelegate] = None,
                 credential_provider: Optional[CredentialProvider] = None,
                 channel_factory: Optional[ChannelFactory] = None):
        self.app_settings = app_settings
        self.delegate = LoggingDelegate(forward_to=delegate)
        self.credential_provider = credential_provider
        self.channel_factory = channel_factory
        self._machines: Dict[str, ConnectionStateMachine] = {}
        self._lock = threading.Lock()

    def add_connection(self, config_path: Path, display_name: Optional[str] = None,
                       supervisor: Optional[ProcessSupervisor] = None) -> ConnectionStateMachine:
        connection = Connection(Path(config_path), display_name)
        with self._lock:
            if connection.display_name in self._machines:
                raise ValueError(f"A connection named '{connection.display_name}' already exists")
            settings = self.app_settings.get_tunnel_settings(connection.display_name)
            machine = ConnectionStateMachine(
                connection,
                supervisor or ProcessSupervisor(settings),
                settings,
                delegate=self.delegate,
                credential_provider=self.credential_provider,
                channel_factory=self.channel_factory,
            )
            self._machines[connection.display_name] = machine
        machine.start()
        logger.info(f"Added connection '{connection.display_name}' ({connection.config_path})")
        return machine

    def remove_connection(self, display_name: str) -> None:
        """Forget a connection. It must be disconnected."""
        machine = self.get(display_name)
        if not machine.connection.is_disconnected():
            raise ValueError(f"Connection '{display_name}' is not disconnected")
        with self._lock:
            del self._machines[display_name]
        machine.stop()

    def get(self, display_name: str) -> ConnectionStateMachine:
        with self._lock:
            machine = self._machines.get(display_name)
        if machine is None:
            raise KeyError(f"Unknown connection '{display_name}'")
        return machine

    def connections(self) -> List[Connection]:
        with self._lock:
            return [machine.connection for machine in self._machines.values()]

    def connect(self, display_name: str) -> None:
        self.get(display_name).connect()

    def disconnect(self, display_name: str) -> None:
        self.get(display_name).disconnect()

    def toggle(self, display_name: str) -> None:
        self.get(display_name).toggle()

    def hookup_existing(self) -> int:
        """Hook up every connection whose daemon survived a previous session.

        Returns:
            Number of connections for which a running daemon was found
        """
        with self._lock:
            machines = list(self._machines.values())
        found = 0
        for machine in machines:
            if not machine.connection.is_disconnected():
                continue
            candidates = machine.supervisor.find_running_daemons(machine.connection.config_path)
            if candidates:
                found += 1
                machine.hookup(candidates)
        logger.info(f"Found {found} running OpenVPN instance(s) to hook up to")
        return found

    def disconnect_all(self) -> None:
        with self._lock:
            machines = list(self._machines.values())
        for machine in machines:
            machine.stop_trying_to_hookup()
            machine.disconnect()

    def shutdown(self, timeout: float = 30.0) -> bool:
        """Disconnect everything, wait for the daemons to go away, then stop the event loops.

        Returns:
            True if every connection reached DISCONNECTED within the timeout
        """
        logger.info("Shutting down all connections")
        self.disconnect_all()
        with self._lock:
            machines = list(self._machines.values())

        all_disconnected = True
        for machine in machines:
            if not machine.wait_until_disconnected(timeout):
                logger.warning(f"Connection '{machine.connection.display_name}' did not disconnect "
                               f"within {timeout}s")
                all_disconnected = False
        for machine in machines:
            machine.stop()
        return all_disconnected
