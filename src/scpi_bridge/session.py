"""Bridge session: one connection handle paired with one single-flight gate.

A ``BridgeSession`` is created on connect and invalidated on close; callers
hold it explicitly instead of reaching for a module-level socket.  The
``InstrumentBridge`` owns at most one open session at a time.

Rejections happen before any I/O:

- ``NotConnectedError`` when the session's connection is closed;
- ``DeviceBusyError`` when another command or speed test holds the gate.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Optional, Union

from typeguard import typechecked

from . import (
    CONNECT_TIMEOUT_S,
    DEFAULT_INSTRUMENT_HOST,
    DEFAULT_INSTRUMENT_PORT,
    MEASURE_TIMEOUT_MS,
    PER_CMD_TIMEOUT_MS,
)
from .connection import ConnectionState, InstrumentConnection
from .correlator import CommandCorrelator, CommandResult, parse_numeric_reply
from .events import EventSink
from .exceptions import (
    AlreadyConnectedError,
    ConfigurationError,
    InstrumentConnectionError,
    InstrumentTimeoutError,
    NotConnectedError,
)
from .gate import SingleFlightGate
from .speedtest import (
    LATENCY,
    DiagnosticHarness,
    IterationRecord,
    SpeedTestConfig,
    SpeedTestRun,
    normalize_mode,
)
from .types import MeasurementValue, ResultDict, SpeedTestOptions

logger = logging.getLogger("scpi_bridge.session")

# Measurement shortcuts (BK Precision 9801 style)
MEASUREMENT_COMMANDS = {
    "volt": "MEAS:VOLT?",
    "curr": "MEAS:CURR?",
}


@dataclasses.dataclass(frozen=True)
class MeasurementReading:
    """A measurement query answered by the instrument.

    ``value`` is the parsed number, or the raw reply text when the reply is
    not numeric.
    """
    kind: str
    command: str
    raw: str
    value: MeasurementValue
    rtt_ms: Optional[float]
    byte_count: int

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, float)

    def to_dict(self) -> ResultDict:
        return {
            "type": self.kind,
            "raw": self.raw,
            "value": self.value,
            "rtt_ms": self.rtt_ms,
            "bytes": self.byte_count,
        }


@typechecked
class BridgeSession:
    """An open connection to one instrument plus its single-flight gate.

    Example::

        with BridgeSession.connect("192.168.0.10", 5025, context="PSU bench") as session:
            print(session.correlate("*IDN?").raw_reply)
            session.send("OUTP ON")
            print(session.measure("volt").value)
            run = session.run_latency_test(SpeedTestConfig(count=20))
    """

    def __init__(
        self,
        connection: InstrumentConnection,
        correlator: Optional[CommandCorrelator] = None,
        gate: Optional[SingleFlightGate] = None,
    ) -> None:
        self.connection = connection
        self.correlator = correlator if correlator is not None else CommandCorrelator()
        self.gate = gate if gate is not None else SingleFlightGate(name=connection.target)

    @classmethod
    def connect(
        cls,
        host: str = DEFAULT_INSTRUMENT_HOST,
        port: int = DEFAULT_INSTRUMENT_PORT,
        context: str = "",
        timeout_s: float = CONNECT_TIMEOUT_S,
        event_sink: Optional[EventSink] = None,
    ) -> BridgeSession:
        """Open a TCP connection and wrap it in a new session.

        Raises:
            InstrumentConnectionError: If the connection cannot be made.
        """
        connection = InstrumentConnection.open(
            host, port, context=context or f"Connecting to {host}:{port}",
            timeout_s=timeout_s, event_sink=event_sink,
        )
        return cls(connection)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def is_open(self) -> bool:
        return self.connection.is_open()

    @property
    def busy(self) -> bool:
        return self.gate.held

    def _assert_open(self, operation: str, context: str) -> None:
        if not self.connection.is_open():
            msg = (
                f"[{context}] Cannot {operation}: not connected to "
                f"{self.connection.target}. Connect first."
            )
            logger.error("[SESSION] %s", msg)
            raise NotConnectedError(msg)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def correlate(
        self,
        command: str,
        timeout_ms: Union[int, float] = PER_CMD_TIMEOUT_MS,
        context: str = "",
    ) -> CommandResult:
        """Send *command* and wait for its reply, holding the gate.

        Raises:
            NotConnectedError: If the session is closed.
            DeviceBusyError: If another operation holds the gate.
        """
        ctx = context or f"query {command!r}"
        self._assert_open("send command", ctx)
        with self.gate.hold(ctx):
            return self.correlator.correlate(self.connection, command, context=ctx, timeout_ms=timeout_ms)

    def send(
        self,
        command: str,
        append_newline: bool = True,
        context: str = "",
    ) -> CommandResult:
        """Fire-and-forget write for commands that produce no reply.

        Not gated: nothing is read back, so it cannot steal another
        operation's reply.

        Raises:
            NotConnectedError: If the session is closed.
        """
        ctx = context or f"send {command!r}"
        self._assert_open("send command", ctx)
        return self.correlator.correlate(
            self.connection, command, context=ctx,
            expect_reply=False, append_newline=append_newline,
        )

    def measure(self, kind: str, timeout_ms: Union[int, float] = MEASURE_TIMEOUT_MS) -> MeasurementReading:
        """Run a measurement query (``"volt"`` or ``"curr"``).

        Raises:
            ConfigurationError: For an unknown measurement kind.
            NotConnectedError: If the session is closed.
            DeviceBusyError: If another operation holds the gate.
            InstrumentTimeoutError: If the instrument did not answer in time;
                ``.result`` holds the ``CommandResult``.
            InstrumentConnectionError: If the socket failed during the query.
        """
        key = kind.strip().lower()
        if key not in MEASUREMENT_COMMANDS:
            valid = ", ".join(sorted(MEASUREMENT_COMMANDS))
            raise ConfigurationError(f"Unknown measurement {kind!r}. Must be one of: {valid}.")

        command = MEASUREMENT_COMMANDS[key]
        ctx = f"measure {key}"
        result = self.correlate(command, timeout_ms=timeout_ms, context=ctx)

        if result.timed_out:
            msg = (
                f"[{ctx}] Timeout waiting for instrument reply to {command!r} from "
                f"{self.connection.target} ({timeout_ms} ms)"
            )
            logger.warning("[MEASURE] %s", msg)
            raise InstrumentTimeoutError(msg, result=result)
        if result.error_message is not None:
            msg = f"[{ctx}] {command!r} failed on {self.connection.target}: {result.error_message}"
            logger.error("[MEASURE] %s", msg)
            raise InstrumentConnectionError(msg)

        reading = MeasurementReading(
            kind=key,
            command=command,
            raw=result.raw_reply,
            value=parse_numeric_reply(result.raw_reply),
            rtt_ms=result.rtt_ms,
            byte_count=result.byte_count,
        )
        if not reading.is_numeric:
            logger.info("[MEASURE] [%s] Non-numeric reply %r returned as-is", ctx, reading.raw)
        return reading

    # ------------------------------------------------------------------
    # Speed tests
    # ------------------------------------------------------------------

    def _harness(self, on_iteration: Optional[Callable[[IterationRecord], None]]) -> DiagnosticHarness:
        return DiagnosticHarness(self.correlator, self.connection, on_iteration=on_iteration)

    def run_latency_test(
        self,
        config: SpeedTestConfig,
        on_iteration: Optional[Callable[[IterationRecord], None]] = None,
    ) -> SpeedTestRun:
        """Latency mode, holding the gate for the whole run."""
        ctx = f"latency test {config.command!r}"
        self._assert_open("run speed test", ctx)
        with self.gate.hold(ctx):
            return self._harness(on_iteration).run_latency(config, context=ctx)

    def run_throughput_test(
        self,
        config: SpeedTestConfig,
        on_iteration: Optional[Callable[[IterationRecord], None]] = None,
    ) -> SpeedTestRun:
        """Throughput mode, holding the gate for the whole run."""
        ctx = f"throughput test {config.command!r}"
        self._assert_open("run speed test", ctx)
        with self.gate.hold(ctx):
            return self._harness(on_iteration).run_throughput(config, context=ctx)

    def run_speed_test(
        self,
        options: SpeedTestOptions,
        on_iteration: Optional[Callable[[IterationRecord], None]] = None,
    ) -> SpeedTestRun:
        """Dispatch on ``options["mode"]`` (``"rtt"``/``"latency"`` or ``"throughput"``).

        Raises:
            ConfigurationError: For an unknown mode.
        """
        mode = normalize_mode(options.get("mode") or "rtt")
        config = SpeedTestConfig.from_options(options)
        if mode == LATENCY:
            return self.run_latency_test(config, on_iteration=on_iteration)
        return self.run_throughput_test(config, on_iteration=on_iteration)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> BridgeSession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


class InstrumentBridge:
    """Owns at most one open ``BridgeSession``.

    Connecting while a session is open is refused; a session whose socket
    was closed by the peer (or by a fatal error) no longer counts.
    """

    def __init__(self, event_sink: Optional[EventSink] = None) -> None:
        self.event_sink = event_sink
        self._session: Optional[BridgeSession] = None

    @property
    def state(self) -> ConnectionState:
        if self._session is None:
            return ConnectionState(is_open=False, host=None, port=None)
        return self._session.state

    def is_connected(self) -> bool:
        return self._session is not None and self._session.is_open()

    @property
    def session(self) -> BridgeSession:
        """The open session.

        Raises:
            NotConnectedError: If there is none.
        """
        if not self.is_connected():
            raise NotConnectedError("TCP not connected. Connect to an instrument first.")
        assert self._session is not None
        return self._session

    def connect(
        self,
        host: str = DEFAULT_INSTRUMENT_HOST,
        port: int = DEFAULT_INSTRUMENT_PORT,
        context: str = "",
        timeout_s: float = CONNECT_TIMEOUT_S,
    ) -> BridgeSession:
        """Open the bridge's session.

        Raises:
            AlreadyConnectedError: If a session is already open.
            InstrumentConnectionError: If the connection cannot be made.
        """
        if self.is_connected():
            assert self._session is not None
            raise AlreadyConnectedError(
                f"[{context}] TCP already connected to {self._session.connection.target}. "
                f"Close it before connecting to {host}:{port}."
            )
        self._session = BridgeSession.connect(
            host, port, context=context, timeout_s=timeout_s, event_sink=self.event_sink,
        )
        return self._session

    def close(self) -> None:
        """Close the session if any.  Safe to call repeatedly."""
        session, self._session = self._session, None
        if session is not None:
            session.close()
