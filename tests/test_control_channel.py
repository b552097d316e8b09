"""
Unit tests for ControlChannel against a local TCP server.
"""

import unittest
import socket
import threading
from unittest.mock import Mock, patch

import sys
import os
# Add src to path so we can import using the same relative imports as the service
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from api.errors import AttachFailed, ChannelClosed
from protocol.control_channel import ControlChannel
from protocol.management_codec import DaemonState, StateChanged


class FakeManagementServer:
    """Accepts one client and records what it sends"""

    def __init__(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(1)
        self.port = self.server.getsockname()[1]
        self.client = None
        self.accepted = threading.Event()
        self.received = b""
        self.thread = threading.Thread(target=self._accept, daemon=True)
        self.thread.start()

    def _accept(self):
        self.client, _ = self.server.accept()
        self.accepted.set()

    def send(self, data: bytes) -> None:
        self.accepted.wait(2)
        self.client.sendall(data)

    def read_until(self, marker: bytes, timeout: float = 2.0) -> bytes:
        self.accepted.wait(timeout)
        self.client.settimeout(timeout)
        while marker not in self.received:
            chunk = self.client.recv(1024)
            if not chunk:
                break
            self.received += chunk
        return self.received

    def close_client(self) -> None:
        self.accepted.wait(2)
        self.client.close()

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
        self.server.close()


class TestControlChannel(unittest.TestCase):
    """Test cases for ControlChannel"""

    def setUp(self):
        self.server = FakeManagementServer()
        self.events = []
        self.event_received = threading.Event()
        self.disconnected = threading.Event()

        def on_event(event):
            self.events.append(event)
            self.event_received.set()

        self.channel = ControlChannel("127.0.0.1", self.server.port, on_event,
                                      on_disconnected=self.disconnected.set)

    def tearDown(self):
        self.channel.close()
        self.server.close()

    def test_events_from_chunked_input(self):
        """A state line arriving in two chunks is delivered as one event"""
        self.channel.attach()
        self.server.send(b">STATE:1700000000,CONNEC")
        self.server.send(b"TED,SUCCESS,10.8.0.6,198.51.100.7\n")

        self.assertTrue(self.event_received.wait(2))
        self.assertEqual(len(self.events), 1)
        self.assertIsInstance(self.events[0], StateChanged)
        self.assertIs(self.events[0].state, DaemonState.CONNECTED)

    def test_send_writes_terminated_line(self):
        self.channel.attach()
        self.channel.send("state on")
        self.assertEqual(self.server.read_until(b"\n"), b"state on\n")

    def test_close_twice_is_harmless(self):
        self.channel.attach()
        with patch.object(socket.socket, "close", autospec=True, side_effect=socket.socket.close) as close:
            self.channel.close()
            self.channel.close()
        self.assertEqual(close.call_count, 1)
        self.assertFalse(self.channel.is_attached)

    def test_close_before_attach(self):
        self.channel.close()
        self.channel.close()
        self.assertFalse(self.channel.is_attached)

    def test_send_after_close_raises(self):
        self.channel.attach()
        self.channel.close()
        with self.assertRaises(ChannelClosed):
            self.channel.send("state")

    def test_send_before_attach_raises(self):
        with self.assertRaises(ChannelClosed):
            self.channel.send("state")

    def test_attach_twice_raises(self):
        self.channel.attach()
        with self.assertRaises(AttachFailed):
            self.channel.attach()

    def test_close_by_us_does_not_report_disconnect(self):
        self.channel.attach()
        self.channel.close()
        self.assertFalse(self.disconnected.wait(0.2))

    def test_peer_close_reports_disconnect(self):
        self.channel.attach()
        self.server.close_client()
        self.assertTrue(self.disconnected.wait(2))

    def test_handler_exception_does_not_stop_reader(self):
        handler = Mock(side_effect=[RuntimeError("boom"), None])
        self.channel.set_event_handler(handler, self.disconnected.set)
        self.channel.attach()
        self.server.send(b"first line\nsecond line\n")
        self.server.close_client()

        self.assertTrue(self.disconnected.wait(2))
        self.assertEqual(handler.call_count, 2)


class TestControlChannelAttach(unittest.TestCase):
    """Attach failures"""

    def test_refused_attach_raises(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("127.0.0.1", 0))
            port = probe.getsockname()[1]
        # Nothing listens on the port any more
        channel = ControlChannel("127.0.0.1", port, Mock(), connect_timeout=1.0)
        with self.assertRaises(AttachFailed):
            channel.attach()
        self.assertFalse(channel.is_attached)


if __name__ == '__main__':
    unittest.main()
