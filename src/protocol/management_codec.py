"""
Codec for the daemon's line-oriented management protocol.

Inbound bytes are framed into lines by LineFramer and turned into typed events
by parse_line(). Outbound commands are built by the format_* helpers and
turned into wire bytes by encode_command(). Wire strings live only here.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from api.tunnel_interface import CredentialKind

logger = logging.getLogger(__name__)

ENCODING = "utf-8"


class DaemonState(Enum):
    """State names the daemon reports on its control channel"""
    CONNECTING = "CONNECTING"
    WAIT = "WAIT"
    AUTH = "AUTH"
    GET_CONFIG = "GET_CONFIG"
    ASSIGN_IP = "ASSIGN_IP"
    ADD_ROUTES = "ADD_ROUTES"
    RESOLVE = "RESOLVE"
    TCP_CONNECT = "TCP_CONNECT"
    RECONNECTING = "RECONNECTING"
    RECONNECTING_SIG = "RECONNECTING_SIG"
    RECONNECTING_ERROR = "RECONNECTING_ERROR"
    EXITING = "EXITING"
    CONNECTED = "CONNECTED"


@dataclass(frozen=True)
class StateChanged:
    timestamp: int
    name: str
    state: Optional[DaemonState]
    detail: str = ""
    local_ip: str = ""
    remote_ip: str = ""


@dataclass(frozen=True)
class ByteCount:
    bytes_in: int
    bytes_out: int


@dataclass(frozen=True)
class LogLine:
    text: str


@dataclass(frozen=True)
class CredentialRequest:
    kind: CredentialKind
    needs_username: bool


@dataclass(frozen=True)
class VerificationFailed:
    kind: str


@dataclass(frozen=True)
class CommandResponse:
    success: bool
    message: str


@dataclass(frozen=True)
class PidReported:
    pid: int


ChannelEvent = Union[StateChanged, ByteCount, LogLine, CredentialRequest,
                     VerificationFailed, CommandResponse, PidReported]


# Real-time notifications start with one of these prefixes; command replies are bare
STATE_PREFIX = ">STATE:"
BYTECOUNT_PREFIX = ">BYTECOUNT:"
LOG_PREFIX = ">LOG:"
PASSWORD_PREFIX = ">PASSWORD:"
INFO_PREFIX = ">INFO:"
HOLD_PREFIX = ">HOLD:"
END_MARKER = "END"

STATE_PATTERN = re.compile(r"^(?P<timestamp>\d+),(?P<name>[A-Z_]{2,})(?:,(?P<rest>.*))?$")
BYTECOUNT_PATTERN = re.compile(r"^(?P<bytes_in>\d+),(?P<bytes_out>\d+)$")
NEED_PATTERN = re.compile(r"Need '(?P<kind>[^']+)' (?P<what>username/password|password)")
VERIFICATION_FAILED_PATTERN = re.compile(r"Verification Failed: '(?P<kind>[^']+)'")
PID_PATTERN = re.compile(r"^pid=(?P<pid>\d+)$")


class LineFramer:
    """Splits a byte stream delivered in arbitrary chunks into complete lines.

    Bytes after the last line terminator are kept until a later chunk
    completes the line; a partial line is never emitted.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer.extend(chunk)
        lines = []
        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                break
            raw = bytes(self._buffer[:end])
            del self._buffer[:end + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            lines.append(raw.decode(ENCODING, errors="replace"))
        return lines

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by a newline"""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()


def _parse_state(body: str) -> Optional[StateChanged]:
    match = STATE_PATTERN.match(body)
    if not match:
        return None
    name = match.group("name")
    fields = (match.group("rest") or "").split(",")
    fields += [""] * (3 - len(fields))
    try:
        state: Optional[DaemonState] = DaemonState(name)
    except ValueError:
        state = None
    return StateChanged(
        timestamp=int(match.group("timestamp")),
        name=name,
        state=state,
        detail=fields[0],
        local_ip=fields[1],
        remote_ip=fields[2],
    )


def _parse_byte_count(body: str) -> Optional[ByteCount]:
    match = BYTECOUNT_PATTERN.match(body)
    if not match:
        return None
    return ByteCount(int(match.group("bytes_in")), int(match.group("bytes_out")))


def _parse_password(body: str) -> Optional[ChannelEvent]:
    failed = VERIFICATION_FAILED_PATTERN.search(body)
    if failed:
        return VerificationFailed(failed.group("kind"))
    need = NEED_PATTERN.search(body)
    if need:
        try:
            kind = CredentialKind(need.group("kind"))
        except ValueError:
            logger.warning(f"Unsupported credential request: {body}")
            return None
        return CredentialRequest(kind, needs_username=need.group("what") == "username/password")
    return None


def parse_line(line: str) -> Optional[ChannelEvent]:
    """Turn one complete line into an event.

    Returns None for lines that carry nothing (blank lines, the END marker of
    a multi-line reply). Lines that match no known form become LogLine.
    """
    line = line.rstrip("\r\n")
    if not line or line == END_MARKER:
        return None

    if line.startswith(STATE_PREFIX):
        return _parse_state(line[len(STATE_PREFIX):]) or LogLine(line)
    if line.startswith(BYTECOUNT_PREFIX):
        return _parse_byte_count(line[len(BYTECOUNT_PREFIX):]) or LogLine(line)
    if line.startswith(LOG_PREFIX):
        return LogLine(line[len(LOG_PREFIX):])
    if line.startswith(PASSWORD_PREFIX):
        return _parse_password(line[len(PASSWORD_PREFIX):]) or LogLine(line)
    if line.startswith(INFO_PREFIX) or line.startswith(HOLD_PREFIX):
        return LogLine(line)

    if line.startswith("SUCCESS:"):
        message = line[len("SUCCESS:"):].strip()
        pid_match = PID_PATTERN.match(message)
        if pid_match:
            return PidReported(int(pid_match.group("pid")))
        return CommandResponse(True, message)
    if line.startswith("ERROR:"):
        return CommandResponse(False, line[len("ERROR:"):].strip())

    # Bare forms, as sent in reply to 'state' and by older daemons
    event = _parse_state(line) or _parse_byte_count(line) or _parse_password(line)
    if event is not None:
        return event
    return LogLine(line)


# Outbound commands

STATE_ON = "state on"
STATE = "state"
LOG_ON = "log on"
PID = "pid"
SIGNAL_SIGTERM = "signal SIGTERM"


def quote(value: str) -> str:
    """Quote a value for the management protocol, escaping backslashes and quotes"""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_bytecount(interval: int) -> str:
    if interval < 0:
        raise ValueError(f"bytecount interval must not be negative: {interval}")
    return f"bytecount {interval}"


def format_username(kind: CredentialKind, username: str) -> str:
    return f"username {quote(kind.value)} {quote(username)}"


def format_password(kind: CredentialKind, password: str) -> str:
    return f"password {quote(kind.value)} {quote(password)}"


def is_single_line(value: str) -> bool:
    return "\n" not in value and "\r" not in value


def encode_command(command: str) -> bytes:
    """Turn one command into a terminated wire line"""
    if not is_single_line(command):
        raise ValueError("Management commands must be a single line")
    return (command + "\n").encode(ENCODING)


def mask_command(command: str) -> str:
    """Command text safe for logging: credential values are replaced"""
    if command.startswith("username ") or command.startswith("password "):
        verb, _, rest = command.partition(" ")
        kind_end = rest.find('" ')
        if kind_end >= 0:
            return f"{verb} {rest[:kind_end + 1]} ***"
        return f"{verb} ***"
    return command
