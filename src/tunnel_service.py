#!/usr/bin/env python3
"""
Command-line entry point: keeps one OpenVPN configuration connected until
interrupted, then disconnects it.
"""

import sys
import getpass
import logging
import signal
import argparse
import threading
from pathlib import Path
from types import FrameType
from typing import Optional

from _version import __version__
from api.errors import TunnelError
from api.tunnel_interface import ConnectionState, CredentialKind, Credentials, NullDelegate
from common.app_setup import check_dependencies, initialize_app_environment
from config.app_settings import AppSettings
from service.connection import Connection
from service.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class TerminalCredentialProvider:
    """Asks for credentials on the controlling terminal"""

    def get_credentials(self, connection: Connection, kind: CredentialKind) -> Optional[Credentials]:
        try:
            username = None
            if kind is CredentialKind.AUTH:
                username = input(f"[{connection.display_name}] Username: ")
            password = getpass.getpass(f"[{connection.display_name}] {kind.value} password: ")
        except (EOFError, KeyboardInterrupt):
            return None
        return Credentials(username=username, password=password)


class ExitOnDisconnect(NullDelegate):
    """Sets an event once the connection has gone away"""

    def __init__(self, done: threading.Event):
        self.done = done

    def on_state_changed(self, connection: Connection, old_state: ConnectionState,
                         new_state: ConnectionState) -> None:
        if new_state is ConnectionState.DISCONNECTED and connection.requested_state is ConnectionState.DISCONNECTED:
            self.done.set()

    def on_process_exited(self, connection: Connection, expected: bool) -> None:
        self.done.set()

    def on_unkillable_process(self, connection: Connection) -> None:
        self.done.set()

    def on_error(self, connection: Connection, error: TunnelError) -> None:
        if connection.is_disconnected():
            self.done.set()


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description="OpenVPN Keeper")
    parser.add_argument("config", type=Path, help="OpenVPN configuration file (or package directory)")
    parser.add_argument("--name", default=None, help="Display name of the connection (default: file name)")
    parser.add_argument(
        "--hookup",
        action="store_true",
        default=False,
        help="Attach to an OpenVPN already running for this configuration instead of starting one"
    )
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for the log file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args()


def main() -> int:
    args = parse_arguments()

    config_dir = initialize_app_environment("OpenVPN Keeper", args.log_dir)
    if config_dir is None:
        return 1

    app_settings = AppSettings(config_dir)
    if not args.hookup and not check_dependencies(app_settings.get_tunnel_settings().openvpn_path):
        return 1

    done = threading.Event()
    manager = ConnectionManager(app_settings, delegate=ExitOnDisconnect(done),
                                credential_provider=TerminalCredentialProvider())
    machine = manager.add_connection(args.config, args.name)
    name = machine.connection.display_name

    signal_count = 0
    def signal_handler(signum: int, frame: FrameType | None) -> None:
        """Handle SIGINT and SIGTERM for graceful shutdown"""
        nonlocal signal_count
        signal_count += 1
        signal_name = signal.Signals(signum).name
        if signal_count == 1:
            logger.info(f"Received {signal_name}, disconnecting {name}...")
            machine.disconnect()
        else:
            logger.warning(f"Received second {signal_name}, forcing immediate exit!")
            sys.exit(1)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if args.hookup:
        if manager.hookup_existing() == 0:
            logger.error(f"No running OpenVPN found for {args.config}")
            manager.shutdown()
            return 1
    else:
        machine.connect()

    logger.info(f"{name} running. Press Ctrl+C to disconnect.")
    try:
        while not done.wait(1):
            pass
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
    finally:
        manager.shutdown()

    return 0 if not machine.connection.leaked_pids else 2


if __name__ == "__main__":
    sys.exit(main())
