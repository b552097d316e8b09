"""
Reader of the outputs from a subprocess.
"""

import logging
import threading
from typing import IO, List, Optional
from typing import Protocol


logger = logging.getLogger(__name__)


class LineConsumer(Protocol):
    def __call__(self, line: str) -> None:
        ...


class SubprocessReader():
    def __init__(self, stdout: Optional[IO[str]] = None, stderr: Optional[IO[str]] = None,
                 stdout_handler: Optional[LineConsumer] = None, stderr_handler: Optional[LineConsumer] = None,
                 process_name: Optional[str] = None):
        self.process_name = process_name
        self.stdout = stdout
        self.stderr = stderr
        self.stdout_handler = stdout_handler
        self.stderr_handler = stderr_handler
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        name = "SubprocessReader"
        if self.process_name:
            name += "-" + self.process_name
        if self.stdout and self.stdout_handler:
            self._start_thread(self.stdout, self.stdout_handler, "stdout", f"{name}-stdout")
        if self.stderr and self.stderr_handler:
            self._start_thread(self.stderr, self.stderr_handler, "stderr", f"{name}-stderr")

    def _start_thread(self, stream: IO[str], handler: LineConsumer, stream_name: str, thread_name: str) -> None:
        thread = threading.Thread(target=self.read_io, args=(stream, handler, stream_name), name=thread_name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def read_io(self, stream: IO[str], handler: LineConsumer, stream_name: str) -> None:
        """Monitor a single stream"""
        try:
            for line in iter(stream.readline, ''):
                if self._stop_event.is_set():
                    break

                stripped = line.rstrip()
                if stripped:
                    handler(stripped)
        except (OSError, ValueError) as e:
            logger.error(f"Error reading from {stream_name}: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def join_with_timeout(self, timeout: float = 3.0) -> bool:
        """Join the reader threads; True if all of them finished."""
        for thread in self._threads:
            thread.join(timeout=timeout)
        return not any(thread.is_alive() for thread in self._threads)


def make_log_handler(logger_to_log_to: logging.Logger, level: int, stream_name: str) -> LineConsumer:
    """Return a LineConsumer that logs each incoming line to a logger"""
    def log_handler(line: str) -> None:
        logger_to_log_to.log(level, f"[{stream_name}] {line}")
    return log_handler


class DemultiplexerLineConsumer(LineConsumer):
    """Will demultiplex a single line into multiple consumers"""
    def __init__(self, *consumers: LineConsumer):
        self.consumers = consumers

    def __call__(self, line: str) -> None:
        for consumer in self.consumers:
            consumer(line)


class SubprocessLogger(SubprocessReader):
    """Logs a subprocess' stdout at INFO and stderr at WARNING, optionally forwarding every line"""

    def __init__(self, stdout: Optional[IO[str]] = None, stderr: Optional[IO[str]] = None,
                 process_name: Optional[str] = None, logger: Optional[logging.Logger] = None,
                 forward_to: Optional[LineConsumer] = None):
        if not logger:
            logger = logging.getLogger(process_name or __name__)

        stdout_handler: LineConsumer = make_log_handler(logger, logging.INFO, "stdout")
        stderr_handler: LineConsumer = make_log_handler(logger, logging.WARNING, "stderr")
        if forward_to:
            stdout_handler = DemultiplexerLineConsumer(stdout_handler, forward_to)
            stderr_handler = DemultiplexerLineConsumer(stderr_handler, forward_to)

        super().__init__(stdout, stderr,
                         stdout_handler,
                         stderr_handler,
                         process_name)
