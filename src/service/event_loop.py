"""
Serialized event stream for one connection.

Socket readers, process watchers and timers run on their own threads and only
post() events here. A single consumer applies them, in arrival order, so the
connection's state is only ever mutated from one thread.
"""

import logging
import queue
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]

_STOP = object()


class ConnectionEventLoop:
    """FIFO event queue with one consumer thread"""

    def __init__(self, handler: EventHandler, name: str = "ConnectionEventLoop"):
        self.handler = handler
        self.name = name
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def post(self, event: Any) -> None:
        """Queue an event. Safe to call from any thread."""
        self._queue.put(event)

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Process what is already queued, then stop the consumer thread"""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{self.name} did not stop within {timeout}s")
        with self._lock:
            self._thread = None

    def run_pending(self) -> int:
        """Apply queued events on the calling thread until the queue is empty.

        Only for use when the consumer thread is not running (tests, shutdown).
        Events posted by handlers while draining are applied too.

        Returns:
            Number of events applied
        """
        if self.is_running:
            raise RuntimeError(f"{self.name} is running; events are applied by its own thread")
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return count
            if event is _STOP:
                continue
            self._apply(event)
            count += 1

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                break
            self._apply(event)

    def _apply(self, event: Any) -> None:
        try:
            self.handler(event)
        except Exception:
            # One bad event must not wedge the connection
            logger.exception(f"{self.name}: error handling {type(event).__name__}")
