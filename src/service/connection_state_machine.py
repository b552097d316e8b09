"""
Lifecycle state machine for one connection.

Every input (operator requests, control channel events, process exit, force-kill
ticks) is posted to the connection's ConnectionEventLoop and applied there, one
at a time. Inputs carry the generation they were produced for; anything from
an earlier daemon or channel is dropped.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from api.errors import (
    AttachFailed, AuthenticationFailed, ChannelClosed, SpawnFailed, TunnelError, UnkillableProcess,
)
from api.tunnel_interface import (
    ConnectionDelegate, ConnectionState, CredentialProvider, NullDelegate,
)
from config.app_settings import TunnelSettings
from config.tunnel_config import modify_nameserver_options
from protocol.control_channel import ControlChannel, DisconnectHandler, EventHandler
from protocol.management_codec import (
    ByteCount, ChannelEvent, CommandResponse, CredentialRequest, DaemonState, LogLine,
    PidReported, StateChanged, VerificationFailed,
    LOG_ON, PID, SIGNAL_SIGTERM, STATE_ON, format_bytecount, format_password, format_username,
    is_single_line,
)
from service.connection import Connection, ConnectionAttempt
from service.event_loop import ConnectionEventLoop
from service.force_kill import EscalationStep, ForceKillEscalation
from service.hookup import ChannelFactory, HookupProbe, HookupResult
from service.process_supervisor import DaemonHandle, LaunchRequest, ProcessSupervisor

logger = logging.getLogger(__name__)

DAEMON_STATE_MAP: Dict[DaemonState, ConnectionState] = {
    DaemonState.CONNECTING: ConnectionState.CONNECTING,
    DaemonState.WAIT: ConnectionState.CONNECTING,
    DaemonState.AUTH: ConnectionState.CONNECTING,
    DaemonState.GET_CONFIG: ConnectionState.CONNECTING,
    DaemonState.ASSIGN_IP: ConnectionState.CONNECTING,
    DaemonState.ADD_ROUTES: ConnectionState.CONNECTING,
    DaemonState.RESOLVE: ConnectionState.CONNECTING,
    DaemonState.TCP_CONNECT: ConnectionState.CONNECTING,
    DaemonState.RECONNECTING: ConnectionState.RECONNECTING,
    DaemonState.RECONNECTING_ERROR: ConnectionState.RECONNECTING,
    DaemonState.RECONNECTING_SIG: ConnectionState.REASSERTING,
    DaemonState.CONNECTED: ConnectionState.CONNECTED,
    DaemonState.EXITING: ConnectionState.EXITING,
}


# Inputs of the state machine

@dataclass
class ConnectRequest:
    authorization: Any = None


@dataclass
class DisconnectRequest:
    pass


@dataclass
class ToggleRequest:
    authorization: Any = None


@dataclass
class HookupRequest:
    candidates: List[DaemonHandle] = field(default_factory=list)
    ports: List[int] = field(default_factory=list)


@dataclass
class ChannelEventReceived:
    generation: int
    event: ChannelEvent


@dataclass
class ChannelLost:
    generation: int


@dataclass
class ProcessExited:
    generation: int
    exit_code: Optional[int]


@dataclass
class ForceKillTickDue:
    generation: int
    escalation: ForceKillEscalation


@dataclass
class DaemonOutput:
    generation: int
    line: str


class ConnectionStateMachine:
    """Drives one Connection through connect, hookup and disconnect.

    The public methods only post requests and return immediately; the
    delegate is called from the connection's event loop thread.
    """

    def __init__(self, connection: Connection, supervisor: ProcessSupervisor, settings: TunnelSettings,
                 delegate: Optional[ConnectionDelegate] = None,
                 credential_provider: Optional[CredentialProvider] = None,
                 channel_factory: Optional[ChannelFactory] = None):
        self.connection = connection
        self.supervisor = supervisor
        self.settings = settings
        self.delegate = delegate or NullDelegate()
        self.credential_provider = credential_provider
        self.channel_factory: ChannelFactory = channel_factory or self._default_channel_factory
        self.loop = ConnectionEventLoop(self._handle_event, name=f"Connection-{connection.display_name}")

        self._generation = 0
        self._channel: Optional[ControlChannel] = None
        self._daemon: Optional[DaemonHandle] = None
        self._escalation: Optional[ForceKillEscalation] = None
        self._stop_hookup = threading.Event()
        self._idle = threading.Event()
        self._idle.set()

    # Requests, safe to call from any thread

    def start(self) -> None:
        self.loop.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.loop.stop(timeout)

    def connect(self, authorization: Any = None) -> None:
        self.loop.post(ConnectRequest(authorization))

    def disconnect(self) -> None:
        self.loop.post(DisconnectRequest())

    def toggle(self, authorization: Any = None) -> None:
        """Connect when disconnected, disconnect otherwise"""
        self.loop.post(ToggleRequest(authorization))

    def hookup(self, candidates: Sequence[DaemonHandle] = (), ports: Sequence[int] = ()) -> None:
        """Try to attach to an already running daemon on the candidates' ports (or the given ports)"""
        self.loop.post(HookupRequest(list(candidates), list(ports)))

    def stop_trying_to_hookup(self) -> None:
        self._stop_hookup.set()

    def wait_until_disconnected(self, timeout: Optional[float] = None) -> bool:
        """Block until no daemon is owned or hooked up. Returns False on timeout."""
        return self._idle.wait(timeout)

    @property
    def channel(self) -> Optional[ControlChannel]:
        return self._channel

    @property
    def daemon(self) -> Optional[DaemonHandle]:
        return self._daemon

    @property
    def escalation(self) -> Optional[ForceKillEscalation]:
        return self._escalation

    # Event loop

    def _handle_event(self, event: Any) -> None:
        if isinstance(event, ChannelEventReceived):
            if self._is_current(event.generation, event):
                self._on_channel_event(event.event)
        elif isinstance(event, DaemonOutput):
            if self._is_current(event.generation, event):
                self._notify("on_log_line", event.line)
        elif isinstance(event, ForceKillTickDue):
            if self._is_current(event.generation, event) and event.escalation is self._escalation:
                self._on_force_kill_tick(event.escalation)
        elif isinstance(event, ProcessExited):
            if self._is_current(event.generation, event):
                self._on_process_exited(event.exit_code)
        elif isinstance(event, ChannelLost):
            if self._is_current(event.generation, event):
                self._on_channel_lost()
        elif isinstance(event, ConnectRequest):
            self._on_connect(event.authorization)
        elif isinstance(event, DisconnectRequest):
            self._on_disconnect()
        elif isinstance(event, ToggleRequest):
            if self.connection.is_disconnected():
                self._on_connect(event.authorization)
            else:
                self._on_disconnect()
        elif isinstance(event, HookupRequest):
            self._on_hookup(event)
        else:
            logger.warning(f"{self.connection.display_name}: unexpected event {event!r}")

    def _is_current(self, generation: int, event: Any) -> bool:
        if generation != self._generation:
            logger.debug(f"{self.connection.display_name}: dropping stale {type(event).__name__} "
                         f"(generation {generation}, current {self._generation})")
            return False
        return True

    def _notify(self, method: str, *args: Any) -> None:
        try:
            getattr(self.delegate, method)(self.connection, *args)
        except Exception:
            logger.exception(f"{self.connection.display_name}: delegate {method} failed")

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self.connection.set_state(new_state)
        if old_state is not new_state:
            logger.info(f"{self.connection.display_name}: {old_state.value} -> {new_state.value}")
            self._notify("on_state_changed", old_state, new_state)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _make_channel(self, port: int, generation: int) -> ControlChannel:
        return self.channel_factory(
            port,
            lambda event: self.loop.post(ChannelEventReceived(generation, event)),
            lambda: self.loop.post(ChannelLost(generation)),
        )

    def _default_channel_factory(self, port: int, on_event: EventHandler,
                                 on_disconnected: Optional[DisconnectHandler]) -> ControlChannel:
        return ControlChannel(self.settings.management_host, port, on_event, on_disconnected,
                              connect_timeout=self.settings.hookup_probe_timeout,
                              name=f"{self.connection.display_name}:{port}")

    def _watch(self, daemon: DaemonHandle, generation: int) -> None:
        self.supervisor.watch(daemon, lambda exit_code: self.loop.post(ProcessExited(generation, exit_code)))

    # Connect

    def _on_connect(self, authorization: Any) -> None:
        conn = self.connection
        if conn.disconnecting or conn.state in (ConnectionState.DISCONNECTING, ConnectionState.EXITING):
            logger.warning(f"{conn.display_name}: connect rejected, previous daemon is still stopping")
            self._notify("on_error", TunnelError(f"{conn.display_name} is still disconnecting"))
            return
        if not conn.is_disconnected():
            logger.debug(f"{conn.display_name}: connect ignored in state {conn.state.value}")
            return

        conn.requested_state = ConnectionState.CONNECTED
        conn.reinitialize()
        conn.authentication_failed = False
        tunnel_kind = conn.resolve_tunnel_kind()
        conn.tunnel_kind = tunnel_kind
        nameserver_options = modify_nameserver_options(self.settings)
        conn.start_attempt(ConnectionAttempt(tunnel_kind=tunnel_kind, modify_nameserver=bool(nameserver_options)))
        self._idle.clear()
        generation = self._next_generation()
        self._set_state(ConnectionState.CONNECTING)

        try:
            daemon = self.supervisor.spawn(
                LaunchRequest(conn.config_path, tunnel_kind, authorization),
                on_output=lambda line: self.loop.post(DaemonOutput(generation, line)),
            )
        except SpawnFailed as e:
            self._fail_attempt(e)
            return

        self._daemon = daemon
        conn.pid = daemon.pid
        self._watch(daemon, generation)

        try:
            channel = self._attach_with_retry(daemon, generation)
        except SpawnFailed as e:
            self._fail_attempt(e)
            return
        except AttachFailed as e:
            logger.error(f"{conn.display_name}: {e}")
            self._notify("on_error", e)
            self._begin_disconnect(requested=False)
            return

        self._channel = channel
        conn.port = daemon.port
        self._send_startup_commands()

    def _attach_with_retry(self, daemon: DaemonHandle, generation: int) -> ControlChannel:
        """Attach to a freshly spawned daemon, which needs a moment to open its port.

        Raises:
            SpawnFailed: the daemon exited before it could be attached
            AttachFailed: the port did not accept a connection within attach_timeout
        """
        deadline = time.monotonic() + self.settings.attach_timeout
        while True:
            channel = self._make_channel(daemon.port, generation)
            try:
                channel.attach()
                return channel
            except AttachFailed as e:
                if not self.supervisor.is_running(daemon):
                    raise SpawnFailed(f"OpenVPN exited during startup "
                                      f"(exit code {self.supervisor.exit_code(daemon)})") from e
                if time.monotonic() >= deadline:
                    raise AttachFailed(f"Management port {daemon.port} not reachable within "
                                       f"{self.settings.attach_timeout}s: {e}") from e
            time.sleep(self.settings.attach_retry_interval)

    def _send_startup_commands(self) -> None:
        commands = [STATE_ON, LOG_ON]
        if self.settings.bytecount_interval > 0:
            commands.append(format_bytecount(self.settings.bytecount_interval))
        # An elevation wrapper's pid is not the daemon's; ask the daemon itself
        commands.append(PID)
        self._send_or_stop(commands)

    def _send_or_stop(self, commands: List[str]) -> bool:
        """Send commands; a dead channel ends the attempt. Returns whether all were sent."""
        if self._channel is None:
            return False
        try:
            for command in commands:
                self._channel.send(command)
        except ChannelClosed as e:
            logger.error(f"{self.connection.display_name}: {e}")
            self._notify("on_error", e)
            self._drop_channel()
            self._begin_disconnect(requested=False)
            return False
        except ValueError as e:
            # Nothing after the bad command went out, and the daemon may be waiting for it
            logger.error(f"{self.connection.display_name}: {e}")
            self._notify("on_error", TunnelError(str(e)))
            self._begin_disconnect(requested=False)
            return False
        return True

    def _fail_attempt(self, error: TunnelError) -> None:
        logger.error(f"{self.connection.display_name}: connect failed: {error}")
        self._settle_disconnected()
        self._notify("on_error", error)

    # Disconnect

    def _on_disconnect(self) -> None:
        conn = self.connection
        conn.requested_state = ConnectionState.DISCONNECTED
        if conn.is_disconnected():
            logger.debug(f"{conn.display_name}: disconnect ignored, already disconnected")
            return
        if conn.disconnecting:
            logger.debug(f"{conn.display_name}: disconnect already in progress")
            return
        self._begin_disconnect(requested=True)

    def _begin_disconnect(self, requested: bool) -> None:
        """Ask the daemon to stop and arm the force-kill escalation"""
        conn = self.connection
        if conn.attempt is None:
            conn.start_attempt(ConnectionAttempt(tunnel_kind=conn.tunnel_kind))
        conn.attempt.disconnecting = True
        conn.attempt.disconnect_requested = conn.attempt.disconnect_requested or requested
        self._set_state(ConnectionState.DISCONNECTING)
        self._cancel_escalation()

        daemon = self._daemon
        if daemon is None:
            self._settle_disconnected()
            return

        stop_sent = False
        if self._channel is not None:
            try:
                self._channel.send(SIGNAL_SIGTERM)
                stop_sent = True
            except ChannelClosed as e:
                logger.warning(f"{conn.display_name}: could not send stop on control channel: {e}")
                self._drop_channel()

        if daemon.pid == 0:
            # A hooked-up daemon that never told us its pid can only be stopped through its channel
            if not stop_sent:
                logger.error(f"{conn.display_name}: daemon pid unknown and control channel lost")
                self._settle_disconnected()
            return

        if not stop_sent:
            self.supervisor.terminate_gracefully(daemon)

        generation = self._generation
        self._escalation = self.supervisor.arm_force_kill(
            daemon, lambda escalation: self.loop.post(ForceKillTickDue(generation, escalation)))

    def _on_force_kill_tick(self, escalation: ForceKillEscalation) -> None:
        step = escalation.tick()
        if step is not EscalationStep.UNKILLABLE:
            return
        conn = self.connection
        error = UnkillableProcess(conn.pid, escalation.kills_sent)
        logger.error(f"{conn.display_name}: {error}")
        conn.leaked_pids.append(conn.pid)
        self._notify("on_unkillable_process")
        self._settle_disconnected()

    def _cancel_escalation(self) -> None:
        self.supervisor.cancel_force_kill(self._escalation)
        self._escalation = None

    def _drop_channel(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        self.connection.port = 0

    def _settle_disconnected(self) -> None:
        """Release everything held for the daemon and report DISCONNECTED"""
        conn = self.connection
        self._cancel_escalation()
        self._drop_channel()
        self._daemon = None
        self._next_generation()

        old_state = conn.state
        conn.reinitialize()
        conn.last_state = old_state
        if old_state is not ConnectionState.DISCONNECTED:
            logger.info(f"{conn.display_name}: {old_state.value} -> {ConnectionState.DISCONNECTED.value}")
            self._notify("on_state_changed", old_state, ConnectionState.DISCONNECTED)
        self._idle.set()

    # Daemon and channel events

    def _on_process_exited(self, exit_code: Optional[int]) -> None:
        conn = self.connection
        expected = conn.attempt is not None and conn.attempt.disconnect_requested
        if expected:
            logger.info(f"{conn.display_name}: OpenVPN (pid {conn.pid}) exited (exit code: {exit_code})")
        else:
            logger.warning(f"{conn.display_name}: OpenVPN (pid {conn.pid}) terminated unexpectedly "
                           f"(exit code: {exit_code})")
        self._settle_disconnected()
        self._notify("on_process_exited", expected)

    def _on_channel_lost(self) -> None:
        conn = self.connection
        self._drop_channel()
        if self._daemon is not None and self._daemon.pid == 0:
            # No way to observe the process itself; losing its channel is all the exit we get
            self._on_process_exited(None)
            return
        if conn.disconnecting:
            return
        logger.warning(f"{conn.display_name}: control channel lost while {conn.state.value}")
        self._begin_disconnect(requested=False)

    def _on_channel_event(self, event: ChannelEvent) -> None:
        conn = self.connection
        if isinstance(event, StateChanged):
            self._apply_daemon_state(event)
        elif isinstance(event, ByteCount):
            conn.bytes_in = event.bytes_in
            conn.bytes_out = event.bytes_out
            self._notify("on_byte_count", event.bytes_in, event.bytes_out)
        elif isinstance(event, LogLine):
            self._notify("on_log_line", event.text)
        elif isinstance(event, CredentialRequest):
            self._answer_credential_request(event)
        elif isinstance(event, VerificationFailed):
            logger.warning(f"{conn.display_name}: '{event.kind}' verification failed")
            conn.authentication_failed = True
            self._notify("on_authentication_failed")
        elif isinstance(event, PidReported):
            self._on_pid_reported(event.pid)
        elif isinstance(event, CommandResponse):
            if event.success:
                logger.debug(f"{conn.display_name}: SUCCESS: {event.message}")
            else:
                logger.warning(f"{conn.display_name}: daemon replied ERROR: {event.message}")

    def _apply_daemon_state(self, event: StateChanged) -> None:
        conn = self.connection
        conn.daemon_state = event.name
        if event.state is None:
            logger.warning(f"{conn.display_name}: unknown daemon state '{event.name}'")
            self._notify("on_unknown_state", event.name)
            return
        if conn.disconnecting:
            logger.debug(f"{conn.display_name}: daemon reports {event.name} while disconnecting")
            return
        self._set_state(DAEMON_STATE_MAP[event.state])

    def _answer_credential_request(self, request: CredentialRequest) -> None:
        conn = self.connection
        if conn.disconnecting:
            return
        self._set_state(ConnectionState.WAITING_FOR_INPUT)

        credentials = None
        if self.credential_provider is None:
            logger.error(f"{conn.display_name}: daemon asks for '{request.kind.value}' but no credential provider is set")
        else:
            try:
                credentials = self.credential_provider.get_credentials(conn, request.kind)
            except Exception:
                logger.exception(f"{conn.display_name}: credential provider failed")

        if credentials is None:
            logger.info(f"{conn.display_name}: '{request.kind.value}' request cancelled")
            conn.requested_state = ConnectionState.DISCONNECTED
            self._begin_disconnect(requested=True)
            return

        if not is_single_line(credentials.username or "") or not is_single_line(credentials.password):
            error = AuthenticationFailed(f"'{request.kind.value}' credentials contain a line break "
                                         f"and cannot be sent")
            logger.error(f"{conn.display_name}: {error}")
            self._notify("on_error", error)
            conn.requested_state = ConnectionState.DISCONNECTED
            self._begin_disconnect(requested=True)
            return

        commands = []
        if request.needs_username:
            commands.append(format_username(request.kind, credentials.username or ""))
        commands.append(format_password(request.kind, credentials.password))
        self._send_or_stop(commands)

    def _on_pid_reported(self, pid: int) -> None:
        conn = self.connection
        daemon = self._daemon
        if daemon is None or pid == 0:
            return
        if daemon.process is not None:
            # Launched through an elevation wrapper: signal and watch the daemon, not the wrapper
            if pid != daemon.pid and pid != daemon.daemon_pid:
                logger.info(f"{conn.display_name}: daemon reports pid {pid} (launched as pid {daemon.pid})")
                daemon.daemon_pid = pid
                conn.pid = pid
            return
        if conn.pid != 0:
            return
        logger.info(f"{conn.display_name}: daemon reports pid {pid}")
        conn.pid = pid
        self._daemon.pid = pid
        self._watch(self._daemon, self._generation)

    # Hookup

    def _on_hookup(self, request: HookupRequest) -> None:
        conn = self.connection
        if not conn.is_disconnected():
            logger.debug(f"{conn.display_name}: hookup ignored in state {conn.state.value}")
            return
        ports = request.ports or [candidate.port for candidate in request.candidates]
        if not ports:
            return

        self._stop_hookup.clear()
        conn.reinitialize()
        tunnel_kind = conn.resolve_tunnel_kind()
        attempt = ConnectionAttempt(tunnel_kind=tunnel_kind, hookup_in_progress=True)
        conn.start_attempt(attempt)
        generation = self._next_generation()

        probe = HookupProbe(self.channel_factory, self.settings.hookup_max_attempts,
                            self.settings.hookup_probe_timeout, self.settings.attach_retry_interval)
        result = probe.probe(ports, cancelled=self._stop_hookup.is_set)
        attempt.hookup_in_progress = False
        if result is not None and self._stop_hookup.is_set():
            result.channel.close()
            result = None
        if result is None:
            conn.attempt = None
            if self._stop_hookup.is_set():
                logger.info(f"{conn.display_name}: hookup abandoned")
            else:
                logger.info(f"{conn.display_name}: no running daemon to hook up to")
                self._notify("on_error", AttachFailed(f"No daemon answered on ports {ports}"))
            return

        self._complete_hookup(result, request.candidates, attempt, generation)

    def _complete_hookup(self, result: HookupResult, candidates: Sequence[DaemonHandle],
                         attempt: ConnectionAttempt, generation: int) -> None:
        conn = self.connection
        candidate = next((c for c in candidates if c.port == result.port), None)
        pid = result.pid or (candidate.pid if candidate is not None else 0)
        daemon = candidate or DaemonHandle(pid=pid, port=result.port, hooked_up=True)
        daemon.pid = pid
        daemon.hooked_up = True

        attempt.hooked_up = True
        conn.tunnel_kind = attempt.tunnel_kind
        conn.requested_state = ConnectionState.CONNECTED
        conn.pid = pid
        conn.port = result.port
        self._daemon = daemon
        self._channel = result.channel
        self._idle.clear()

        result.hand_over(lambda event: self.loop.post(ChannelEventReceived(generation, event)),
                         lambda: self.loop.post(ChannelLost(generation)))
        if pid:
            self._watch(daemon, generation)
        self._apply_daemon_state(result.initial_state)

        commands = [LOG_ON]
        if self.settings.bytecount_interval > 0:
            commands.append(format_bytecount(self.settings.bytecount_interval))
        self._send_or_stop(commands)
