"""
Control channel to a running daemon: a TCP connection to its management port.

A reader thread frames inbound bytes into lines and hands parsed events to the
owner's callback. The callback must not mutate connection state itself; it is
expected to post into the owner's event loop.
"""

import logging
import socket
import threading
from typing import Callable, Optional

from api.errors import AttachFailed, ChannelClosed
from protocol.management_codec import (
    ChannelEvent, LineFramer, encode_command, mask_command, parse_line,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChannelEvent], None]
DisconnectHandler = Callable[[], None]

RECV_SIZE = 4096


class ControlChannel:
    """One attachment to a daemon's management interface"""

    def __init__(self, host: str, port: int, on_event: EventHandler,
                 on_disconnected: Optional[DisconnectHandler] = None,
                 connect_timeout: float = 2.0, name: Optional[str] = None):
        self.host = host
        self.port = port
        self.name = name or f"{host}:{port}"
        self.connect_timeout = connect_timeout
        self._on_event = on_event
        self._on_disconnected = on_disconnected
        self._sock: Optional[socket.socket] = None
        self._framer = LineFramer()
        self._reader_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._closed = False

    @property
    def is_attached(self) -> bool:
        return self._sock is not None and not self._closed

    def set_event_handler(self, on_event: EventHandler,
                          on_disconnected: Optional[DisconnectHandler] = None) -> None:
        """Route future events elsewhere (used when a hookup probe hands over the channel)"""
        with self._lock:
            self._on_event = on_event
            self._on_disconnected = on_disconnected

    def attach(self) -> None:
        """Connect to the management port and start reading.

        Raises:
            AttachFailed: connection refused, reset, timed out, or channel already used
        """
        with self._lock:
            if self._closed or self._sock is not None:
                raise AttachFailed(f"Control channel {self.name} cannot be attached twice")
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            raise AttachFailed(f"Could not attach to {self.name}: {e}") from e

        sock.settimeout(None)
        with self._lock:
            self._sock = sock
        logger.debug(f"Attached control channel {self.name}")

        self._reader_thread = threading.Thread(
            target=self._read_loop, args=(sock,), name=f"ControlChannel-{self.port}", daemon=True
        )
        self._reader_thread.start()

    def send(self, command: str) -> None:
        """Write one command line.

        Raises:
            ChannelClosed: the channel was closed or never attached
        """
        data = encode_command(command)
        with self._send_lock:
            sock = self._sock
            if sock is None or self._closed:
                raise ChannelClosed(f"Cannot send '{mask_command(command)}' on closed channel {self.name}")
            try:
                sock.sendall(data)
            except OSError as e:
                raise ChannelClosed(f"Send on {self.name} failed: {e}") from e
        logger.debug(f"[{self.name}] > {mask_command(command)}")

    def close(self) -> None:
        """Detach. Safe to call any number of times; the socket is released before returning."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sock = self._sock
            self._sock = None

        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Peer may already be gone
                pass
            sock.close()
            logger.debug(f"Closed control channel {self.name}")

        reader = self._reader_thread
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)
        self._framer.reset()

    def _read_loop(self, sock: socket.socket) -> None:
        try:
            while True:
                chunk = sock.recv(RECV_SIZE)
                if not chunk:
                    break
                for line in self._framer.feed(chunk):
                    self._dispatch_line(line)
        except OSError as e:
            if not self._closed:
                logger.warning(f"Error reading from {self.name}: {e}")

        with self._lock:
            closed_by_us = self._closed
            on_disconnected = self._on_disconnected
        if not closed_by_us:
            logger.info(f"Control channel {self.name} closed by peer")
            if on_disconnected is not None:
                on_disconnected()

    def _dispatch_line(self, line: str) -> None:
        event = parse_line(line)
        if event is None:
            return
        with self._lock:
            handler = self._on_event
        try:
            handler(event)
        except Exception:
            logger.exception(f"Control channel {self.name} event handler failed for: {line}")
