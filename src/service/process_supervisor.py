"""
Owns the lifetime of tunnel daemon processes: spawning, exit detection,
graceful and forced termination, and discovery of daemons left running by a
previous session.
"""

import logging
import os
import signal
import socket
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

import psutil

from api.errors import SpawnFailed
from api.tunnel_interface import TunnelKind
from config.app_settings import TunnelSettings
from config.tunnel_config import build_launch_command, resolve_config_file
from service.force_kill import ForceKillEscalation
from service.openvpn_finder import find_openvpn
from utils.subprocess_logger import LineConsumer, SubprocessLogger

logger = logging.getLogger(__name__)

daemon_logger = logging.getLogger("openvpn")

ExitHandler = Callable[[Optional[int]], None]


@dataclass
class LaunchRequest:
    """What the supervisor needs to start a daemon for one connection"""
    config_path: Path
    tunnel_kind: TunnelKind
    # Opaque token from whoever authorized the launch. This supervisor launches through
    # settings.elevate_command and does not use it.
    authorization: Any = None


@dataclass
class DaemonHandle:
    pid: int
    port: int
    process: Optional["subprocess.Popen[str]"] = None
    hooked_up: bool = False
    # Pid the daemon reports for itself when `process` is an elevation wrapper around it
    daemon_pid: int = 0
    output_reader: Optional[SubprocessLogger] = None
    _watching: bool = field(default=False, repr=False)

    @property
    def target_pid(self) -> int:
        """Pid to signal: the daemon itself when known, else the launched process"""
        return self.daemon_pid or self.pid


class ProcessSupervisor:
    """Spawns and terminates daemons. Exit is reported asynchronously, once per process."""

    def __init__(self, settings: TunnelSettings):
        self.settings = settings
        self._lock = threading.Lock()

    def choose_port(self) -> int:
        """First management port in the configured range nobody is listening on"""
        for port in self.settings.port_range():
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
                try:
                    probe.bind((self.settings.management_host, port))
                except OSError:
                    continue
            return port
        raise SpawnFailed(f"No free management port in {self.settings.port_first}-{self.settings.port_last}")

    def spawn(self, request: LaunchRequest, on_output: Optional[LineConsumer] = None) -> DaemonHandle:
        """Start a daemon for the request.

        Raises:
            SpawnFailed: executable missing, no free port, or process creation refused
        """
        executable = find_openvpn(self.settings.openvpn_path)
        if executable is None:
            raise SpawnFailed("OpenVPN executable not found")

        port = self.choose_port()
        cmd = build_launch_command(str(executable), request.config_path, port, self.settings)
        logger.info(f"Executing command: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailed(f"Failed to start OpenVPN: {e}") from e

        reader = SubprocessLogger(process.stdout, process.stderr, process_name="openvpn",
                                  logger=daemon_logger, forward_to=on_output)
        reader.start()
        logger.info(f"Started OpenVPN ({request.tunnel_kind.value}) with pid {process.pid}, management port {port}")
        return DaemonHandle(pid=process.pid, port=port, process=process, output_reader=reader)

    def watch(self, handle: DaemonHandle, on_exit: ExitHandler) -> None:
        """Call on_exit(exit_code) from a waiter thread once the process is gone.

        Calling watch() again for the same handle does nothing. The exit code is
        None when it cannot be known (a hooked-up process we are not parent of).
        """
        with self._lock:
            if handle._watching:
                return
            handle._watching = True
        threading.Thread(target=self._wait_for_exit, args=(handle, on_exit),
                         name=f"ProcessWatcher-{handle.pid}", daemon=True).start()

    def _wait_for_exit(self, handle: DaemonHandle, on_exit: ExitHandler) -> None:
        exit_code: Optional[int] = None
        try:
            if handle.process is not None:
                exit_code = handle.process.wait()
                if handle.daemon_pid and handle.daemon_pid != handle.pid:
                    # The wrapper is gone but the daemon it started may not be
                    psutil.Process(handle.daemon_pid).wait()
            else:
                exit_code = psutil.Process(handle.pid).wait()
        except psutil.NoSuchProcess:
            pass
        except (psutil.Error, OSError) as e:
            logger.error(f"Error waiting for process {handle.pid}: {e}")
            return

        if handle.output_reader is not None:
            handle.output_reader.join_with_timeout(1.0)
        logger.info(f"Process {handle.pid} exited (exit code: {exit_code})")
        on_exit(exit_code)

    def is_running(self, handle: DaemonHandle) -> bool:
        if handle.process is not None:
            if handle.process.poll() is None:
                return True
            if not handle.daemon_pid:
                return False
        try:
            proc = psutil.Process(handle.target_pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def exit_code(self, handle: DaemonHandle) -> Optional[int]:
        if handle.process is not None:
            return handle.process.poll()
        return None

    def terminate_gracefully(self, handle: DaemonHandle) -> bool:
        """Send SIGTERM without waiting. Used when the control channel cannot deliver the stop."""
        logger.info(f"Sending SIGTERM to process {handle.target_pid}")
        return self._send_signal(handle, signal.SIGTERM)

    def force_kill(self, handle: DaemonHandle) -> bool:
        logger.warning(f"Sending SIGKILL to process {handle.target_pid}")
        return self._send_signal(handle, signal.SIGKILL)

    def _send_signal(self, handle: DaemonHandle, sig: int) -> bool:
        pid = handle.target_pid
        try:
            psutil.Process(pid).send_signal(sig)
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            if not self.settings.elevate_command:
                logger.error(f"Not allowed to signal process {pid}")
                return False
        # The daemon runs with elevated privileges, so signal it the same way it was started
        cmd = list(self.settings.elevate_command) + ["kill", f"-{int(sig)}", str(pid)]
        logger.info(f"Executing: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            logger.error(f"Failed to signal process {pid}: {e}")
            return False
        if result.returncode != 0:
            logger.error(f"Signalling process {pid} failed: {result.stderr.strip()}")
        return result.returncode == 0

    def arm_force_kill(self, handle: DaemonHandle,
                       on_tick_due: Callable[[ForceKillEscalation], None],
                       timeout: Optional[int] = None, interval: Optional[int] = None,
                       max_kill_attempts: Optional[int] = None) -> ForceKillEscalation:
        """Start the escalation timer for a process that has been asked to stop"""
        escalation = ForceKillEscalation(
            pid=handle.target_pid,
            kill=lambda: self.is_running(handle) and self.force_kill(handle),
            timeout=self.settings.force_kill_timeout if timeout is None else timeout,
            interval=self.settings.force_kill_interval if interval is None else interval,
            max_kill_attempts=(self.settings.force_kill_max_attempts
                               if max_kill_attempts is None else max_kill_attempts),
        )
        escalation.start(on_tick_due)
        return escalation

    def cancel_force_kill(self, escalation: Optional[ForceKillEscalation]) -> None:
        if escalation is not None:
            escalation.cancel()

    def find_running_daemons(self, config_path: Path) -> List[DaemonHandle]:
        """Daemons started for this configuration by an earlier session.

        A daemon belongs to the configuration when its command line names the
        same --config file; its management port is read from --management.
        """
        wanted = os.path.realpath(resolve_config_file(config_path))
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                cmdline = proc.info["cmdline"] or []
                exe_name = os.path.basename(cmdline[0]).lower() if cmdline else ""
                if "openvpn" not in exe_name and "openvpn" not in (proc.info["name"] or "").lower():
                    continue
                config = _option_values(cmdline, "--config", 1)
                management = _option_values(cmdline, "--management", 2)
                if not config or not management or not management[1].isdigit():
                    continue
                if os.path.realpath(config[0]) != wanted:
                    continue
                found.append(DaemonHandle(pid=proc.info["pid"], port=int(management[1]), hooked_up=True))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if found:
            logger.info(f"Found running OpenVPN for {config_path}: "
                        f"{', '.join(f'pid {h.pid} port {h.port}' for h in found)}")
        return found


def _option_values(cmdline: List[str], option: str, count: int) -> Optional[List[str]]:
    try:
        index = cmdline.index(option)
    except ValueError:
        return None
    values = cmdline[index + 1:index + 1 + count]
    return values if len(values) == count else None
