"""Command/reply correlation over an unframed byte stream.

Sends one command and resolves with exactly one ``CommandResult``:

- **reply**: the first ``\\n`` arrived; ``raw_reply`` is the trimmed buffer
  content (every byte received by then) and ``rtt_ms`` the round-trip time;
- **timeout**: no terminator within ``timeout_ms``; ``timed_out=True`` and
  ``rtt_ms=None``.  The connection stays open and reusable, a slow
  instrument is not a broken one;
- **error**: the write failed, or the socket errored or closed before the
  terminator; ``error_message`` says which (``"socket closed"`` vs. the
  socket error text).

Whichever terminal event happens first decides the result.  The correlator
does not serialize overlapping calls on the same connection, that is the
job of ``SingleFlightGate``.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
import time
from typing import Optional, Union

from typeguard import typechecked

from . import ENCODING, LINE_TERMINATOR, PER_CMD_TIMEOUT_MS
from .connection import InstrumentConnection
from .exceptions import ConfigurationError, InstrumentConnectionError, NotConnectedError
from .line_buffer import LineBuffer, decode_line
from .types import MeasurementValue, ResultDict

logger = logging.getLogger("scpi_bridge.correlator")

SOCKET_CLOSED = "socket closed"


@dataclasses.dataclass(frozen=True)
class CommandResult:
    """Immutable result of one correlation call.

    Attributes:
        command: The command text as given by the caller (unframed).
        raw_reply: Trimmed reply text, or the partial text buffered before a
            timeout or error.  Empty for fire-and-forget sends.
        rtt_ms: Milliseconds from call start to the complete reply line.
            ``None`` unless a complete reply arrived.
        byte_count: Reply bytes consumed by this call (partial bytes
            included on timeout or error).
        timed_out: ``True`` when no terminator arrived within the window.
        error_message: Set when the write failed or the socket errored or
            closed before the reply was complete.
    """
    command: str
    raw_reply: str
    rtt_ms: Optional[float]
    byte_count: int
    timed_out: bool
    error_message: Optional[str]

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error_message is None

    def to_dict(self) -> ResultDict:
        return {
            "reply": self.raw_reply,
            "rtt_ms": self.rtt_ms,
            "bytes": self.byte_count,
            "timeout": self.timed_out,
            "error": self.error_message,
        }


class _Outcome(enum.Enum):
    """Terminal events racing inside one correlation call."""
    LINE = "line"
    TIMEOUT = "timeout"
    CLOSED = "closed"
    ERROR = "error"


@dataclasses.dataclass(frozen=True)
class _WaitResult:
    """Internal result from ``_await_line``: exactly one winning outcome."""
    outcome: _Outcome
    data: bytes
    finished_at: float
    error_text: Optional[str] = None


def frame_command(command: str) -> str:
    """Append the line terminator to *command* unless it already ends with one."""
    terminator = LINE_TERMINATOR.decode(ENCODING)
    return command if command.endswith(terminator) else command + terminator


def parse_numeric_reply(raw: str) -> MeasurementValue:
    """Return *raw* as a float when it is a finite number, else *raw* unchanged.

    A non-numeric reply (``"ERR"``, an ``*IDN?`` string) is not an error: the
    raw text is handed back as-is.

    >>> parse_numeric_reply("3.301")
    3.301
    >>> parse_numeric_reply("ERR")
    'ERR'
    """
    text = raw.strip()
    if not text:
        return raw
    try:
        value = float(text)
    except ValueError:
        return raw
    return value if math.isfinite(value) else raw


def _await_line(
    connection: InstrumentConnection,
    buffer: LineBuffer,
    deadline: float,
) -> _WaitResult:
    """Block until a line terminator, the deadline, or a socket close/error.

    On a terminator the whole accumulated buffer is the reply; bytes that
    arrive after this call returns are drained by the next query.

    The single wait primitive of the correlator: it returns exactly one
    outcome, and nothing else listens on the connection once it returns.
    """
    while True:
        if buffer.has_line():
            return _WaitResult(_Outcome.LINE, buffer.pending(), time.monotonic())

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return _WaitResult(_Outcome.TIMEOUT, buffer.pending(), time.monotonic())

        if not connection.is_open():
            return _WaitResult(_Outcome.CLOSED, buffer.pending(), time.monotonic(), SOCKET_CLOSED)
        try:
            chunk = connection.receive(remaining)
        except InstrumentConnectionError:
            # closed by another thread between the check and the read
            return _WaitResult(_Outcome.CLOSED, buffer.pending(), time.monotonic(), SOCKET_CLOSED)
        except OSError as exc:
            return _WaitResult(_Outcome.ERROR, buffer.pending(), time.monotonic(), str(exc))

        if chunk is None:
            continue
        if chunk == b"":
            return _WaitResult(_Outcome.CLOSED, buffer.pending(), time.monotonic(), SOCKET_CLOSED)
        buffer.feed(chunk)


@typechecked
class CommandCorrelator:
    """Sends commands on an ``InstrumentConnection`` and correlates replies.

    Example::

        correlator = CommandCorrelator()
        result = correlator.correlate(conn, "MEAS:VOLT?", context="read PSU", timeout_ms=3000)
        if result.timed_out:
            print("instrument is slow, connection still usable")
        else:
            print(result.raw_reply, result.rtt_ms)
    """

    def __init__(self, encoding: str = ENCODING) -> None:
        self.encoding = encoding

    def correlate(
        self,
        connection: InstrumentConnection,
        command: str,
        context: str = "",
        timeout_ms: Union[int, float] = PER_CMD_TIMEOUT_MS,
        expect_reply: bool = True,
        append_newline: bool = True,
    ) -> CommandResult:
        """Send *command* and wait for exactly one reply line.

        Args:
            connection: An **open** connection handle.
            command: One line of command text (terminator optional).
            context: Description of the purpose, embedded into log messages.
            timeout_ms: Reply window in milliseconds, counted from call start.
            expect_reply: ``False`` sends and returns right after the write
                (for set commands that never answer, e.g. ``OUTP ON``).
            append_newline: ``False`` sends the text verbatim.

        Returns:
            A ``CommandResult``.  Timeouts and socket failures are reported
            in the result, never raised.

        Raises:
            NotConnectedError: If the connection is not open.
            ConfigurationError: If *command* is empty or *timeout_ms* is not
                positive.
        """
        if not connection.is_open():
            msg = (
                f"[{context}] Cannot send {command!r}: not connected to "
                f"{connection.target}"
            )
            logger.error("[CORRELATE] %s", msg)
            raise NotConnectedError(msg)
        if not command.strip():
            raise ConfigurationError(f"[{context}] Command must be a non-empty line of text")
        if timeout_ms <= 0:
            raise ConfigurationError(
                f"[{context}] Invalid timeout {timeout_ms} ms for {command!r}. "
                f"Timeout must be a positive number of milliseconds (e.g. 3000)."
            )

        payload = frame_command(command) if append_newline else command
        buffer = LineBuffer()

        if expect_reply:
            try:
                connection.drain()
            except InstrumentConnectionError:
                return self._error_result(command, buffer, SOCKET_CLOSED, context)
            except OSError as exc:
                return self._error_result(command, buffer, str(exc), context)
            if not connection.is_open():
                return self._error_result(command, buffer, SOCKET_CLOSED, context)

        start = time.monotonic()
        deadline = start + timeout_ms / 1000.0

        try:
            connection.send(payload.encode(self.encoding))
        except InstrumentConnectionError:
            return self._error_result(command, buffer, SOCKET_CLOSED, context)
        except OSError as exc:
            msg = f"write failed: {exc}"
            logger.error(
                "[CORRELATE] [%s] Write of %r to %s failed: %s",
                context, command, connection.target, exc,
            )
            return CommandResult(
                command=command,
                raw_reply="",
                rtt_ms=None,
                byte_count=0,
                timed_out=False,
                error_message=msg,
            )

        if not expect_reply:
            logger.info("[CORRELATE] [%s] Sent %r to %s (no reply expected)", context, command, connection.target)
            return CommandResult(
                command=command,
                raw_reply="",
                rtt_ms=None,
                byte_count=0,
                timed_out=False,
                error_message=None,
            )

        waited = _await_line(connection, buffer, deadline)
        raw = decode_line(waited.data, self.encoding)

        if waited.outcome is _Outcome.LINE:
            rtt_ms = (waited.finished_at - start) * 1000.0
            logger.info(
                "[CORRELATE] [%s] %r -> %r in %.2f ms (%d bytes)",
                context, command, raw, rtt_ms, len(waited.data),
            )
            return CommandResult(
                command=command,
                raw_reply=raw,
                rtt_ms=rtt_ms,
                byte_count=len(waited.data),
                timed_out=False,
                error_message=None,
            )

        if waited.outcome is _Outcome.TIMEOUT:
            logger.warning(
                "[CORRELATE] [%s] TIMEOUT — no reply to %r from %s within %d ms "
                "(%d partial bytes). Connection kept open.",
                context, command, connection.target, timeout_ms, len(waited.data),
            )
            return CommandResult(
                command=command,
                raw_reply=raw,
                rtt_ms=None,
                byte_count=len(waited.data),
                timed_out=True,
                error_message=None,
            )

        logger.error(
            "[CORRELATE] [%s] %s while waiting for reply to %r from %s: %s",
            context, "Socket closed" if waited.outcome is _Outcome.CLOSED else "Socket error",
            command, connection.target, waited.error_text,
        )
        return CommandResult(
            command=command,
            raw_reply=raw,
            rtt_ms=None,
            byte_count=len(waited.data),
            timed_out=False,
            error_message=waited.error_text,
        )

    def _error_result(
        self,
        command: str,
        buffer: LineBuffer,
        message: str,
        context: str,
    ) -> CommandResult:
        logger.error("[CORRELATE] [%s] Connection failed before sending %r: %s", context, command, message)
        return CommandResult(
            command=command,
            raw_reply=decode_line(buffer.pending(), self.encoding),
            rtt_ms=None,
            byte_count=len(buffer),
            timed_out=False,
            error_message=message,
        )
