"""
Hookup: attaching to a daemon that is already running, typically one started
by an earlier session of this application.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Sequence

from api.errors import AttachFailed, ChannelClosed
from protocol.control_channel import ControlChannel, DisconnectHandler, EventHandler
from protocol.management_codec import (
    ChannelEvent, CommandResponse, PidReported, StateChanged, PID, STATE, STATE_ON,
)

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[int, EventHandler, Optional[DisconnectHandler]], ControlChannel]


class _ProbeSink:
    """Collects a probed channel's events until they are handed over to their owner.

    Handover delivers the collected events to the new target and switches
    over under one lock, so no event is lost or reordered.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._events: Deque[ChannelEvent] = deque()
        self._kept: List[ChannelEvent] = []
        self._target: Optional[EventHandler] = None
        self._on_disconnected: Optional[DisconnectHandler] = None
        self._disconnected = False

    def on_event(self, event: ChannelEvent) -> None:
        with self._cond:
            if self._target is not None:
                self._target(event)
            else:
                self._events.append(event)
                self._cond.notify_all()

    def on_disconnected(self) -> None:
        with self._cond:
            if self._on_disconnected is not None:
                self._on_disconnected()
            else:
                self._disconnected = True
                self._cond.notify_all()

    def get(self, timeout: float) -> Optional[ChannelEvent]:
        """Next collected event, or None on timeout or when the peer went away"""
        with self._cond:
            self._cond.wait_for(lambda: self._events or self._disconnected, timeout=max(timeout, 0.0))
            if self._events:
                return self._events.popleft()
            return None

    def keep(self, event: ChannelEvent) -> None:
        """Set aside an event the probe does not consume, for delivery at handover"""
        with self._cond:
            self._kept.append(event)

    def hand_over(self, target: EventHandler, on_disconnected: DisconnectHandler) -> None:
        with self._cond:
            for event in self._kept:
                target(event)
            while self._events:
                target(self._events.popleft())
            self._kept.clear()
            self._target = target
            self._on_disconnected = on_disconnected
            if self._disconnected:
                on_disconnected()


@dataclass
class HookupResult:
    channel: ControlChannel
    port: int
    initial_state: StateChanged
    # 0 when the daemon did not tell us
    pid: int
    _sink: _ProbeSink

    def hand_over(self, target: EventHandler, on_disconnected: DisconnectHandler) -> None:
        """Route the channel's remaining and future events to their new owner"""
        self._sink.hand_over(target, on_disconnected)


class HookupProbe:
    """Tries candidate management ports until one answers like a daemon.

    A port is confirmed when it accepts a connection and reports a valid
    state line within probe_timeout. All ports are tried up to
    max_attempts times before giving up.
    """

    def __init__(self, channel_factory: ChannelFactory, max_attempts: int, probe_timeout: float,
                 retry_interval: float = 0.5):
        self.channel_factory = channel_factory
        self.max_attempts = max_attempts
        self.probe_timeout = probe_timeout
        self.retry_interval = retry_interval

    def probe(self, ports: Sequence[int], cancelled: Callable[[], bool] = lambda: False) -> Optional[HookupResult]:
        for attempt in range(1, self.max_attempts + 1):
            for port in ports:
                if cancelled():
                    logger.info("Hookup cancelled")
                    return None
                result = self._probe_port(port)
                if result is not None:
                    return result
            logger.debug(f"Hookup attempt {attempt}/{self.max_attempts} found no daemon on ports {list(ports)}")
            if attempt < self.max_attempts and self.retry_interval > 0:
                time.sleep(self.retry_interval)
        return None

    def _probe_port(self, port: int) -> Optional[HookupResult]:
        sink = _ProbeSink()
        channel = self.channel_factory(port, sink.on_event, sink.on_disconnected)
        try:
            channel.attach()
        except AttachFailed as e:
            logger.debug(f"No daemon on port {port}: {e}")
            return None

        try:
            for command in (STATE_ON, STATE, PID):
                channel.send(command)
        except ChannelClosed as e:
            logger.debug(f"Port {port} closed during probe: {e}")
            channel.close()
            return None

        initial_state: Optional[StateChanged] = None
        pid = 0
        deadline = time.monotonic() + self.probe_timeout
        while time.monotonic() < deadline:
            event = sink.get(deadline - time.monotonic())
            if event is None:
                break
            if isinstance(event, StateChanged) and initial_state is None:
                initial_state = event
            elif isinstance(event, PidReported):
                pid = event.pid
                if initial_state is not None:
                    break
            elif isinstance(event, CommandResponse) and not event.success and initial_state is not None:
                # Daemon does not support 'pid'
                break
            else:
                # Not ours to interpret; the owner sees it after handover
                sink.keep(event)
                if initial_state is not None and pid:
                    break

        if initial_state is None:
            logger.debug(f"Port {port} did not report a state within {self.probe_timeout}s")
            channel.close()
            return None

        logger.info(f"Hooked up to daemon on port {port} (state {initial_state.name}, pid {pid or 'unknown'})")
        return HookupResult(channel=channel, port=port, initial_state=initial_state, pid=pid, _sink=sink)
