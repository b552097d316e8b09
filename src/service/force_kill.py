"""
Force-kill escalation for a daemon that ignores a graceful stop.

A RepeatingTimer thread only signals that a tick is due; the owner applies
the tick on its own event loop by calling ForceKillEscalation.tick().
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class EscalationStep(Enum):
    """Outcome of one escalation tick"""
    WAITING = "waiting"
    KILL_SENT = "kill_sent"
    UNKILLABLE = "unkillable"
    RESOLVED = "resolved"


class RepeatingTimer:
    """Calls a function every `interval` seconds on a daemon thread until cancelled"""

    def __init__(self, interval: float, function: Callable[[], None], name: str = "RepeatingTimer"):
        self.interval = interval
        self.function = function
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.function()
            except Exception:
                logger.exception(f"{self._thread.name} callback failed")


class ForceKillEscalation:
    """Bookkeeping and policy for forcibly killing one process.

    Every tick adds `interval` to the elapsed wait. Once the elapsed wait
    reaches `timeout`, each tick sends a forceful kill, up to
    `max_kill_attempts` kills. The tick after the last allowed kill reports
    the process as unkillable, once, and the escalation resolves.
    cancel() resolves it too; a resolved escalation never acts again.
    """

    def __init__(self, pid: int, kill: Callable[[], bool], timeout: int, interval: int,
                 max_kill_attempts: int):
        if interval <= 0:
            raise ValueError(f"Force-kill interval must be positive: {interval}")
        self.pid = pid
        self.timeout = timeout
        self.interval = interval
        self.max_kill_attempts = max_kill_attempts
        self.elapsed = 0
        self.kills_sent = 0
        self._kill = kill
        self._resolved = False
        self._lock = threading.Lock()
        self._timer: Optional[RepeatingTimer] = None

    @property
    def resolved(self) -> bool:
        return self._resolved

    def start(self, on_tick_due: Callable[['ForceKillEscalation'], None]) -> None:
        """Start the timer; on_tick_due(self) is called from the timer thread every interval"""
        with self._lock:
            if self._resolved or self._timer is not None:
                return
            self._timer = RepeatingTimer(self.interval, lambda: on_tick_due(self),
                                         name=f"ForceKill-{self.pid}")
            self._timer.start()
        logger.debug(f"Force-kill escalation armed for process {self.pid} "
                     f"(timeout {self.timeout}s, interval {self.interval}s, max {self.max_kill_attempts} kills)")

    def tick(self) -> EscalationStep:
        with self._lock:
            if self._resolved:
                return EscalationStep.RESOLVED

            self.elapsed += self.interval
            if self.elapsed < self.timeout:
                return EscalationStep.WAITING

            if self.kills_sent >= self.max_kill_attempts:
                self._resolve()
                logger.error(f"Process {self.pid} survived {self.kills_sent} kill attempts")
                return EscalationStep.UNKILLABLE

            self.kills_sent += 1
            logger.warning(f"Process {self.pid} still running after {self.elapsed}s, "
                           f"sending kill ({self.kills_sent}/{self.max_kill_attempts})")
            # Sent under the lock so a concurrent cancel() cannot slip in between check and kill
            self._kill()
            return EscalationStep.KILL_SENT

    def cancel(self) -> None:
        """Stop the escalation and zero its bookkeeping. Idempotent."""
        with self._lock:
            self._resolve()
            self.elapsed = 0
            self.kills_sent = 0

    def _resolve(self) -> None:
        self._resolved = True
        if self._timer is not None:
            self._timer.cancel()
