"""
Interface for observing and driving tunnel connections.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable, TYPE_CHECKING

if TYPE_CHECKING:
    from api.errors import TunnelError
    from service.connection import Connection


class ConnectionState(Enum):
    """Lifecycle states of a connection"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_FOR_INPUT = "waiting-for-input"
    RECONNECTING = "reconnecting"
    CONNECTED = "connected"
    REASSERTING = "reasserting"
    EXITING = "exiting"
    # Only ever set locally, while a stop is in flight
    DISCONNECTING = "disconnecting"


class TunnelKind(Enum):
    """Kind of virtual interface the daemon uses"""
    UNKNOWN = "unknown"
    TUN = "tun"
    TAP = "tap"

    @classmethod
    def from_name(cls, name: str) -> 'TunnelKind':
        """Map a device name or type ('tun', 'tun0', 'tap3', 'null') to a kind"""
        name = name.lower()
        if name.startswith("tun"):
            return cls.TUN
        if name.startswith("tap"):
            return cls.TAP
        return cls.UNKNOWN


class CredentialKind(Enum):
    """Credential the daemon asks for on the control channel"""
    AUTH = "Auth"
    PRIVATE_KEY = "Private Key"


@dataclass(frozen=True)
class Credentials:
    username: Optional[str]
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies credentials when the daemon prompts for them"""

    def get_credentials(self, connection: 'Connection', kind: CredentialKind) -> Optional[Credentials]:
        """Return the credentials to send, or None to cancel the connection attempt.

        Called from the connection's event loop; the daemon does not proceed
        until it is answered.
        """
        ...


@runtime_checkable
class ConnectionDelegate(Protocol):
    """Receives notifications from a connection's state machine"""

    def on_state_changed(self, connection: 'Connection', old_state: ConnectionState,
                         new_state: ConnectionState) -> None:
        """Called on every lifecycle state transition."""
        ...

    def on_authentication_failed(self, connection: 'Connection') -> None:
        """The daemon rejected the credentials; the operator may retry."""
        ...

    def on_process_exited(self, connection: 'Connection', expected: bool) -> None:
        """The daemon exited. expected is False when no disconnect had been requested."""
        ...

    def on_unkillable_process(self, connection: 'Connection') -> None:
        """The daemon survived all forced kills; it needs manual intervention."""
        ...

    def on_log_line(self, connection: 'Connection', line: str) -> None:
        """A log line from the daemon (control channel or its stdout/stderr)."""
        ...

    def on_byte_count(self, connection: 'Connection', bytes_in: int, bytes_out: int) -> None:
        """Traffic counters reported by the daemon."""
        ...

    def on_unknown_state(self, connection: 'Connection', state_name: str) -> None:
        """The daemon reported a state name we do not know."""
        ...

    def on_error(self, connection: 'Connection', error: 'TunnelError') -> None:
        """One-shot notification of a failed connect, hookup or disconnect step."""
        ...


class NullDelegate:
    """Delegate that ignores every notification"""

    def on_state_changed(self, connection: 'Connection', old_state: ConnectionState,
                         new_state: ConnectionState) -> None:
        pass

    def on_authentication_failed(self, connection: 'Connection') -> None:
        pass

    def on_process_exited(self, connection: 'Connection', expected: bool) -> None:
        pass

    def on_unkillable_process(self, connection: 'Connection') -> None:
        pass

    def on_log_line(self, connection: 'Connection', line: str) -> None:
        pass

    def on_byte_count(self, connection: 'Connection', bytes_in: int, bytes_out: int) -> None:
        pass

    def on_unknown_state(self, connection: 'Connection', state_name: str) -> None:
        pass

    def on_error(self, connection: 'Connection', error: 'TunnelError') -> None:
        pass
