"""Exceptions raised while managing a tunnel daemon."""


class TunnelError(Exception):
    """Base exception for tunnel-related errors."""
    pass


class SpawnFailed(TunnelError):
    """The daemon could not be started (missing executable, elevation declined, early exit)."""
    pass


class AttachFailed(TunnelError):
    """The management socket could not be attached (refused, reset or timed out)."""
    pass


class ChannelClosed(TunnelError):
    """A command was sent on a control channel that is already detached."""
    pass


class AuthenticationFailed(TunnelError):
    """The daemon reported that password or passphrase verification failed."""
    pass


class UnkillableProcess(TunnelError):
    """The daemon survived every forceful kill attempt."""

    def __init__(self, pid: int, kills_sent: int):
        super().__init__(f"Process {pid} is still running after {kills_sent} kill attempts")
        self.pid = pid
        self.kills_sent = kills_sent
