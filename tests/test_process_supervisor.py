"""
Unit tests for ProcessSupervisor with psutil and subprocess mocked out.
"""

import unittest
import signal
import socket
import subprocess
import tempfile
import threading
from pathlib import Path
from unittest.mock import Mock, patch

import psutil

import sys
import os
# Add src to path so we can import using the same relative imports as the service
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from api.errors import SpawnFailed
from api.tunnel_interface import TunnelKind
from config.app_settings import TunnelSettings
from service.force_kill import EscalationStep
from service.process_supervisor import DaemonHandle, LaunchRequest, ProcessSupervisor


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


class TestPorts(unittest.TestCase):
    """Test cases for management port selection"""

    def test_skips_busy_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]
            supervisor = ProcessSupervisor(TunnelSettings(port_first=port, port_last=port + 1))
            self.assertEqual(supervisor.choose_port(), port + 1)

    def test_no_free_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]
            supervisor = ProcessSupervisor(TunnelSettings(port_first=port, port_last=port))
            with self.assertRaises(SpawnFailed):
                supervisor.choose_port()


class TestSpawn(unittest.TestCase):
    """Test cases for spawning the daemon"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = Path(self.tmp.name) / "office.ovpn"
        self.config.write_text("dev tun\n")
        port = free_port()
        self.supervisor = ProcessSupervisor(TunnelSettings(port_first=port, port_last=port))
        self.port = port
        self.request = LaunchRequest(self.config, TunnelKind.TUN)

    def tearDown(self):
        self.tmp.cleanup()

    @patch('service.process_supervisor.find_openvpn', return_value=None)
    def test_missing_executable(self, mock_find):
        with self.assertRaises(SpawnFailed):
            self.supervisor.spawn(self.request)

    @patch('service.process_supervisor.subprocess.Popen', side_effect=PermissionError("denied"))
    @patch('service.process_supervisor.find_openvpn', return_value=Path("/usr/sbin/openvpn"))
    def test_process_creation_refused(self, mock_find, mock_popen):
        with self.assertRaises(SpawnFailed):
            self.supervisor.spawn(self.request)

    @patch('service.process_supervisor.SubprocessLogger')
    @patch('service.process_supervisor.subprocess.Popen')
    @patch('service.process_supervisor.find_openvpn', return_value=Path("/usr/sbin/openvpn"))
    def test_spawn(self, mock_find, mock_popen, mock_reader_class):
        mock_popen.return_value.pid = 1234
        on_output = Mock()

        with self.assertLogs("service.process_supervisor", level="INFO") as logs:
            handle = self.supervisor.spawn(self.request, on_output=on_output)

        self.assertTrue(any("OpenVPN (tun) with pid 1234" in line for line in logs.output))
        self.assertEqual(handle.pid, 1234)
        self.assertEqual(handle.port, self.port)
        self.assertIs(handle.process, mock_popen.return_value)
        cmd = mock_popen.call_args.args[0]
        self.assertEqual(cmd[0], "/usr/sbin/openvpn")
        self.assertIn(str(self.port), cmd)
        self.assertEqual(mock_popen.call_args.kwargs["stdin"], subprocess.DEVNULL)
        self.assertEqual(mock_reader_class.call_args.kwargs["forward_to"], on_output)
        mock_reader_class.return_value.start.assert_called_once()


class TestExitAndSignals(unittest.TestCase):
    """Test cases for exit detection and termination"""

    def setUp(self):
        self.supervisor = ProcessSupervisor(TunnelSettings())

    def test_watch_reports_exit_once(self):
        process = Mock()
        process.wait.return_value = 3
        handle = DaemonHandle(pid=1234, port=5000, process=process)
        exits = []
        done = threading.Event()

        def on_exit(code):
            exits.append(code)
            done.set()

        self.supervisor.watch(handle, on_exit)
        self.supervisor.watch(handle, on_exit)
        self.assertTrue(done.wait(2))
        self.assertEqual(exits, [3])

    @patch('service.process_supervisor.psutil.Process')
    def test_watch_hooked_up_process(self, mock_process_class):
        mock_process_class.return_value.wait.side_effect = psutil.NoSuchProcess(4321)
        handle = DaemonHandle(pid=4321, port=5002, hooked_up=True)
        done = threading.Event()
        exits = []

        def on_exit(code):
            exits.append(code)
            done.set()

        self.supervisor.watch(handle, on_exit)
        self.assertTrue(done.wait(2))
        self.assertEqual(exits, [None])
        mock_process_class.assert_called_with(4321)

    def test_is_running_spawned(self):
        process = Mock()
        process.poll.return_value = None
        handle = DaemonHandle(pid=1234, port=5000, process=process)
        self.assertTrue(self.supervisor.is_running(handle))
        process.poll.return_value = 1
        self.assertFalse(self.supervisor.is_running(handle))
        self.assertEqual(self.supervisor.exit_code(handle), 1)

    @patch('service.process_supervisor.psutil.Process', side_effect=psutil.NoSuchProcess(4321))
    def test_is_running_gone(self, mock_process_class):
        self.assertFalse(self.supervisor.is_running(DaemonHandle(pid=4321, port=5002)))

    @patch('service.process_supervisor.psutil.Process')
    def test_terminate_and_kill_send_signals(self, mock_process_class):
        handle = DaemonHandle(pid=1234, port=5000)
        self.assertTrue(self.supervisor.terminate_gracefully(handle))
        mock_process_class.return_value.send_signal.assert_called_with(signal.SIGTERM)
        self.assertTrue(self.supervisor.force_kill(handle))
        mock_process_class.return_value.send_signal.assert_called_with(signal.SIGKILL)

    @patch('service.process_supervisor.subprocess.run')
    @patch('service.process_supervisor.psutil.Process')
    def test_access_denied_uses_elevation(self, mock_process_class, mock_run):
        mock_process_class.return_value.send_signal.side_effect = psutil.AccessDenied(1234)
        mock_run.return_value = Mock(returncode=0, stderr="")
        supervisor = ProcessSupervisor(TunnelSettings(elevate_command=["sudo", "-n"]))

        self.assertTrue(supervisor.force_kill(DaemonHandle(pid=1234, port=5000)))
        self.assertEqual(mock_run.call_args.args[0], ["sudo", "-n", "kill", f"-{int(signal.SIGKILL)}", "1234"])

    @patch('service.process_supervisor.psutil.Process')
    def test_access_denied_without_elevation(self, mock_process_class):
        mock_process_class.return_value.send_signal.side_effect = psutil.AccessDenied(1234)
        self.assertFalse(self.supervisor.force_kill(DaemonHandle(pid=1234, port=5000)))

    @patch('service.process_supervisor.psutil.Process')
    def test_wrapper_exit_waits_for_reported_daemon(self, mock_process_class):
        process = Mock()
        process.wait.return_value = 0
        handle = DaemonHandle(pid=1234, port=5000, process=process, daemon_pid=4321)
        done = threading.Event()
        exits = []

        def on_exit(code):
            exits.append(code)
            done.set()

        self.supervisor.watch(handle, on_exit)
        self.assertTrue(done.wait(2))
        mock_process_class.assert_called_with(4321)
        mock_process_class.return_value.wait.assert_called_once()
        self.assertEqual(exits, [0])

    @patch('service.process_supervisor.psutil.Process')
    def test_signals_go_to_reported_daemon(self, mock_process_class):
        process = Mock()
        process.poll.return_value = 0
        mock_process_class.return_value.status.return_value = psutil.STATUS_SLEEPING
        handle = DaemonHandle(pid=1234, port=5000, process=process, daemon_pid=4321)

        self.assertTrue(self.supervisor.is_running(handle))
        self.assertTrue(self.supervisor.force_kill(handle))
        mock_process_class.assert_called_with(4321)
        mock_process_class.return_value.send_signal.assert_called_with(signal.SIGKILL)

    @patch('service.process_supervisor.psutil.Process')
    def test_no_kill_after_process_was_reaped(self, mock_process_class):
        process = Mock()
        process.poll.return_value = -15
        supervisor = ProcessSupervisor(TunnelSettings(force_kill_timeout=1, force_kill_interval=1,
                                                      force_kill_max_attempts=1))
        with patch('service.force_kill.RepeatingTimer'):
            escalation = supervisor.arm_force_kill(DaemonHandle(pid=1234, port=5000, process=process), Mock())

        escalation.tick()
        mock_process_class.return_value.send_signal.assert_not_called()

    @patch('service.process_supervisor.psutil.Process')
    def test_arm_force_kill_uses_settings(self, mock_process_class):
        supervisor = ProcessSupervisor(TunnelSettings(force_kill_timeout=2, force_kill_interval=1,
                                                      force_kill_max_attempts=1))
        handle = DaemonHandle(pid=1234, port=5000)
        with patch('service.force_kill.RepeatingTimer'):
            escalation = supervisor.arm_force_kill(handle, Mock())

        self.assertEqual(escalation.tick(), EscalationStep.WAITING)
        self.assertEqual(escalation.tick(), EscalationStep.KILL_SENT)
        mock_process_class.return_value.send_signal.assert_called_once_with(signal.SIGKILL)
        self.assertEqual(escalation.tick(), EscalationStep.UNKILLABLE)

        supervisor.cancel_force_kill(escalation)
        supervisor.cancel_force_kill(None)
        self.assertTrue(escalation.resolved)


class TestFindRunningDaemons(unittest.TestCase):
    """Test cases for discovering daemons from an earlier session"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = Path(self.tmp.name) / "office.ovpn"
        self.config.write_text("dev tun\n")
        self.supervisor = ProcessSupervisor(TunnelSettings())

    def tearDown(self):
        self.tmp.cleanup()

    def proc(self, pid, name, cmdline):
        process = Mock()
        process.info = {"pid": pid, "name": name, "cmdline": cmdline}
        return process

    @patch('service.process_supervisor.psutil.process_iter')
    def test_matches_config_and_management_port(self, mock_iter):
        mock_iter.return_value = [
            self.proc(10, "openvpn", ["/usr/sbin/openvpn", "--config", str(self.config),
                                      "--management", "127.0.0.1", "1340"]),
            self.proc(11, "openvpn", ["/usr/sbin/openvpn", "--config", "/elsewhere/other.ovpn",
                                      "--management", "127.0.0.1", "1341"]),
            self.proc(12, "openvpn", ["/usr/sbin/openvpn", "--config", str(self.config)]),
            self.proc(13, "vim", ["vim", "--config", str(self.config), "--management", "127.0.0.1", "1342"]),
            self.proc(14, "sudo", ["sudo", "/usr/sbin/openvpn", "--config", str(self.config),
                                   "--management", "127.0.0.1", "bad"]),
        ]

        found = self.supervisor.find_running_daemons(self.config)

        self.assertEqual(found, [DaemonHandle(pid=10, port=1340, hooked_up=True)])

    @patch('service.process_supervisor.psutil.process_iter')
    def test_vanished_process_is_skipped(self, mock_iter):
        class Vanished:
            @property
            def info(self):
                raise psutil.NoSuchProcess(99)

        mock_iter.return_value = [Vanished()]
        self.assertEqual(self.supervisor.find_running_daemons(self.config), [])


if __name__ == '__main__':
    unittest.main()
