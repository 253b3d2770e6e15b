"""Diagnostic harness: latency and throughput speed tests.

Both modes are a scripted, repeated caller of ``CommandCorrelator``.  Every
iteration waits for its reply (or timeout) before the next one starts, so the
harness is safe for instruments that cannot handle pipelined queries.

Shared abort policy: after ``max_consecutive_timeouts`` timeouts in a row the
run stops early, an ``AbortNote`` is appended to the iteration sequence, and
everything collected so far is returned.  Any non-timeout result resets the
counter.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from typing import Callable, List, Optional, Tuple, Union

from typeguard import typechecked

from . import (
    PER_CMD_TIMEOUT_FLOOR_MS,
    PER_CMD_TIMEOUT_MS,
    SPEEDTEST_COUNT,
    SPEEDTEST_COUNT_FLOOR,
    SPEEDTEST_DEFAULT_COMMAND,
    SPEEDTEST_DURATION_FLOOR_S,
    SPEEDTEST_DURATION_S,
    SPEEDTEST_GRACE_MS,
    SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS,
    SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS_FLOOR,
    SPEEDTEST_MIN_DELAY_FLOOR_MS,
    SPEEDTEST_MIN_DELAY_MS,
)
from .connection import InstrumentConnection
from .correlator import CommandCorrelator, CommandResult
from .exceptions import ConfigurationError
from .types import Clock, ResultDict, Sleeper, SpeedTestOptions

logger = logging.getLogger("scpi_bridge.speedtest")

LATENCY = "latency"
THROUGHPUT = "throughput"

# "rtt" is the historical name of the latency mode
_MODE_ALIASES = {
    "rtt": LATENCY,
    "latency": LATENCY,
    "throughput": THROUGHPUT,
}

BYTES_PER_MEGABYTE = 1024 * 1024
THROUGHPUT_NOTE = "Each iteration waits for the instrument response (safe for SCPI instruments)."


def normalize_mode(mode: str) -> str:
    """Map a user-supplied mode name to ``"latency"`` or ``"throughput"``.

    Raises:
        ConfigurationError: For an unknown mode.
    """
    key = str(mode).strip().lower()
    if key not in _MODE_ALIASES:
        raise ConfigurationError(
            f"Invalid speed-test mode {mode!r}. Use \"rtt\" (or \"latency\") or \"throughput\"."
        )
    return _MODE_ALIASES[key]


def _option(options: SpeedTestOptions, keys: Tuple[str, ...], default: float) -> float:
    """First finite numeric value found under *keys*, else *default*."""
    for key in keys:
        if key not in options:
            continue
        value = options[key]
        if isinstance(value, bool) or value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return default


@dataclasses.dataclass(frozen=True)
class SpeedTestConfig:
    """Options shared by both speed-test modes.

    Values below their floor are raised to the floor:
    ``per_cmd_timeout_ms`` >= 100, ``min_delay_ms`` >= 0,
    ``max_consecutive_timeouts`` >= 1, ``count`` >= 1, ``duration_sec`` >= 1,
    ``grace_ms`` >= 0.
    """
    command: str = SPEEDTEST_DEFAULT_COMMAND
    count: int = SPEEDTEST_COUNT
    duration_sec: float = SPEEDTEST_DURATION_S
    min_delay_ms: int = SPEEDTEST_MIN_DELAY_MS
    per_cmd_timeout_ms: int = PER_CMD_TIMEOUT_MS
    max_consecutive_timeouts: int = SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS
    grace_ms: int = SPEEDTEST_GRACE_MS

    def __post_init__(self) -> None:
        if not self.command or not self.command.strip():
            raise ConfigurationError("Speed-test command must be a non-empty line of text")
        clamp = object.__setattr__
        clamp(self, "count", max(SPEEDTEST_COUNT_FLOOR, int(self.count)))
        clamp(self, "duration_sec", max(float(SPEEDTEST_DURATION_FLOOR_S), float(self.duration_sec)))
        clamp(self, "min_delay_ms", max(SPEEDTEST_MIN_DELAY_FLOOR_MS, int(self.min_delay_ms)))
        clamp(self, "per_cmd_timeout_ms", max(PER_CMD_TIMEOUT_FLOOR_MS, int(self.per_cmd_timeout_ms)))
        clamp(
            self, "max_consecutive_timeouts",
            max(SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS_FLOOR, int(self.max_consecutive_timeouts)),
        )
        clamp(self, "grace_ms", max(0, int(self.grace_ms)))

    @classmethod
    def from_options(cls, options: SpeedTestOptions) -> SpeedTestConfig:
        """Build a config from a loose mapping (CLI args, a JSON request body).

        Accepts snake_case keys and the camelCase keys of the HTTP bridge
        (``perCmdTimeoutMs``, ``minDelayMs``, ``maxConsecutiveTimeouts``,
        ``duration``).  Missing or non-numeric values fall back to defaults.
        """
        command = options.get("command") or SPEEDTEST_DEFAULT_COMMAND
        return cls(
            command=str(command),
            count=int(_option(options, ("count",), SPEEDTEST_COUNT)),
            duration_sec=_option(options, ("duration_sec", "durationSec", "duration"), SPEEDTEST_DURATION_S),
            min_delay_ms=int(_option(options, ("min_delay_ms", "minDelayMs"), SPEEDTEST_MIN_DELAY_MS)),
            per_cmd_timeout_ms=int(_option(options, ("per_cmd_timeout_ms", "perCmdTimeoutMs"), PER_CMD_TIMEOUT_MS)),
            max_consecutive_timeouts=int(_option(
                options, ("max_consecutive_timeouts", "maxConsecutiveTimeouts"),
                SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS,
            )),
            grace_ms=int(_option(options, ("grace_ms", "graceMs"), SPEEDTEST_GRACE_MS)),
        )


@dataclasses.dataclass(frozen=True)
class IterationRecord:
    """One harness iteration, derived from its ``CommandResult``."""
    index: int
    raw: str
    rtt_ms: Optional[float]
    byte_count: int
    timed_out: bool
    error: Optional[str]

    @classmethod
    def from_result(cls, index: int, result: CommandResult) -> IterationRecord:
        return cls(
            index=index,
            raw=result.raw_reply,
            rtt_ms=result.rtt_ms,
            byte_count=result.byte_count,
            timed_out=result.timed_out,
            error=result.error_message,
        )

    def to_dict(self) -> ResultDict:
        return {
            "i": self.index,
            "raw": self.raw,
            "rtt_ms": self.rtt_ms,
            "bytes": self.byte_count,
            "timeout": self.timed_out,
            "error": self.error,
        }


@dataclasses.dataclass(frozen=True)
class AbortNote:
    """Marker appended to the iteration sequence when a run stops early."""
    note: str

    def to_dict(self) -> ResultDict:
        return {"note": self.note}


IterationEntry = Union[IterationRecord, AbortNote]


@dataclasses.dataclass(frozen=True)
class LatencyStats:
    avg_ms: Optional[float]
    min_ms: Optional[float]
    max_ms: Optional[float]
    ops_per_sec: Optional[float]
    total_bytes: int

    @classmethod
    def from_records(cls, records: List[IterationRecord]) -> LatencyStats:
        """Timing over successful iterations only; bytes over all of them."""
        rtts = [
            r.rtt_ms for r in records
            if not r.timed_out and r.rtt_ms is not None and math.isfinite(r.rtt_ms)
        ]
        avg = sum(rtts) / len(rtts) if rtts else None
        return cls(
            avg_ms=avg,
            min_ms=min(rtts) if rtts else None,
            max_ms=max(rtts) if rtts else None,
            ops_per_sec=1000.0 / avg if avg else None,
            total_bytes=sum(r.byte_count for r in records),
        )

    def to_dict(self) -> ResultDict:
        return {
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "ops_per_sec": self.ops_per_sec,
            "total_bytes": self.total_bytes,
        }


@dataclasses.dataclass(frozen=True)
class ThroughputStats:
    queries_sent: int
    total_bytes: int
    megabytes: float
    mb_per_sec: float
    ops_per_sec: float
    measured_duration_sec: float

    @classmethod
    def from_records(cls, records: List[IterationRecord], measured_duration_sec: float) -> ThroughputStats:
        total_bytes = sum(r.byte_count for r in records)
        megabytes = total_bytes / BYTES_PER_MEGABYTE
        return cls(
            queries_sent=len(records),
            total_bytes=total_bytes,
            megabytes=megabytes,
            mb_per_sec=megabytes / measured_duration_sec,
            ops_per_sec=len(records) / measured_duration_sec,
            measured_duration_sec=measured_duration_sec,
        )

    def to_dict(self) -> ResultDict:
        return {
            "queriesSent": self.queries_sent,
            "total_bytes": self.total_bytes,
            "megabytes": self.megabytes,
            "mb_per_s": self.mb_per_sec,
            "ops_per_sec": self.ops_per_sec,
            "durationMeasuredSec": self.measured_duration_sec,
        }


@dataclasses.dataclass(frozen=True)
class SpeedTestRun:
    """Outcome of one harness invocation.  Never persisted."""
    mode: str
    config: SpeedTestConfig
    iterations: Tuple[IterationEntry, ...]
    stats: Union[LatencyStats, ThroughputStats]
    abort_note: Optional[str] = None

    @property
    def records(self) -> List[IterationRecord]:
        return [entry for entry in self.iterations if isinstance(entry, IterationRecord)]

    @property
    def aborted(self) -> bool:
        return self.abort_note is not None

    def to_dict(self) -> ResultDict:
        cfg = self.config
        if self.mode == LATENCY:
            return {
                "mode": "rtt",
                "command": cfg.command,
                "countRequested": cfg.count,
                "minDelayMs": cfg.min_delay_ms,
                "stats": self.stats.to_dict(),
                "results": [entry.to_dict() for entry in self.iterations],
            }
        body = {
            "mode": THROUGHPUT,
            "command": cfg.command,
            "durationRequestedSec": cfg.duration_sec,
            "minDelayMs": cfg.min_delay_ms,
            "perCmdTimeoutMs": cfg.per_cmd_timeout_ms,
            "maxConsecutiveTimeouts": cfg.max_consecutive_timeouts,
            "note": self.abort_note or THROUGHPUT_NOTE,
        }
        body.update(self.stats.to_dict())
        return body


@typechecked
class DiagnosticHarness:
    """Runs latency and throughput speed tests against one connection.

    The harness does not take the single-flight gate itself; callers
    (``BridgeSession``) hold it for the whole run.

    Example::

        harness = DiagnosticHarness(CommandCorrelator(), conn)
        run = harness.run_latency(SpeedTestConfig(count=20), context="bench check")
        print(run.stats.avg_ms, run.stats.ops_per_sec)
    """

    def __init__(
        self,
        correlator: CommandCorrelator,
        connection: InstrumentConnection,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
        on_iteration: Optional[Callable[[IterationRecord], None]] = None,
    ) -> None:
        """Initialize the harness.

        Args:
            correlator: Correlator used for every iteration.
            connection: An **open** connection handle.
            clock: Monotonic time source in seconds.
            sleep: Sleep function in seconds.
            on_iteration: Optional progress callback invoked with each
                finished ``IterationRecord``.  Errors raised by the callback
                are logged and swallowed.
        """
        self.correlator = correlator
        self.connection = connection
        self.clock = clock
        self.sleep = sleep
        self.on_iteration = on_iteration

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pause(self, min_delay_ms: int) -> None:
        # zero delay still yields to other threads
        self.sleep(min_delay_ms / 1000.0 if min_delay_ms > 0 else 0)

    def _iterate(self, index: int, config: SpeedTestConfig, context: str) -> IterationRecord:
        result = self.correlator.correlate(
            self.connection,
            config.command,
            context=f"{context}/#{index}",
            timeout_ms=config.per_cmd_timeout_ms,
        )
        record = IterationRecord.from_result(index, result)
        if self.on_iteration is not None:
            try:
                self.on_iteration(record)
            except Exception as cb_exc:
                logger.warning(
                    "[SPEEDTEST] on_iteration callback raised %s: %s "
                    "(callback errors are swallowed to protect the run)",
                    type(cb_exc).__name__, cb_exc,
                )
        return record

    def _abort_reason(self, consecutive_timeouts: int, config: SpeedTestConfig) -> Optional[str]:
        if consecutive_timeouts >= config.max_consecutive_timeouts:
            return f"Aborted after {consecutive_timeouts} consecutive timeouts."
        if not self.connection.is_open():
            return f"Aborted: connection to {self.connection.target} closed."
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_latency(self, config: SpeedTestConfig, context: str = "latency test") -> SpeedTestRun:
        """Correlate ``config.command`` ``config.count`` times and time each reply.

        Returns:
            A ``SpeedTestRun`` with ``LatencyStats``: ``avg_ms`` / ``min_ms``
            / ``max_ms`` over successful iterations only, ``ops_per_sec =
            1000 / avg_ms``, ``total_bytes`` over all iterations.
        """
        logger.info(
            "[SPEEDTEST] [%s] Latency: %r x%d on %s (delay=%d ms, timeout=%d ms, "
            "abort after %d timeouts)",
            context, config.command, config.count, self.connection.target,
            config.min_delay_ms, config.per_cmd_timeout_ms, config.max_consecutive_timeouts,
        )
        entries: List[IterationEntry] = []
        records: List[IterationRecord] = []
        consecutive_timeouts = 0
        abort_note = None

        for index in range(1, config.count + 1):
            record = self._iterate(index, config, context)
            entries.append(record)
            records.append(record)

            consecutive_timeouts = consecutive_timeouts + 1 if record.timed_out else 0
            abort_note = self._abort_reason(consecutive_timeouts, config)
            if abort_note is not None:
                logger.warning("[SPEEDTEST] [%s] %s", context, abort_note)
                entries.append(AbortNote(abort_note))
                break

            self._pause(config.min_delay_ms)

        stats = LatencyStats.from_records(records)
        logger.info(
            "[SPEEDTEST] [%s] Latency done: %d iterations, avg=%s ms, min=%s ms, "
            "max=%s ms, %d bytes",
            context, len(records), stats.avg_ms, stats.min_ms, stats.max_ms, stats.total_bytes,
        )
        return SpeedTestRun(
            mode=LATENCY,
            config=config,
            iterations=tuple(entries),
            stats=stats,
            abort_note=abort_note,
        )

    def run_throughput(self, config: SpeedTestConfig, context: str = "throughput test") -> SpeedTestRun:
        """Correlate ``config.command`` back-to-back for ``config.duration_sec``.

        After the loop a ``config.grace_ms`` pause lets trailing bytes settle
        before the clock stops; rates are computed from the measured elapsed
        time, not the requested duration.
        """
        logger.info(
            "[SPEEDTEST] [%s] Throughput: %r for %.1fs on %s (delay=%d ms, "
            "timeout=%d ms, abort after %d timeouts)",
            context, config.command, config.duration_sec, self.connection.target,
            config.min_delay_ms, config.per_cmd_timeout_ms, config.max_consecutive_timeouts,
        )
        entries: List[IterationEntry] = []
        records: List[IterationRecord] = []
        consecutive_timeouts = 0
        abort_note = None
        start = self.clock()
        end_at = start + config.duration_sec

        while self.clock() < end_at:
            record = self._iterate(len(records) + 1, config, context)
            entries.append(record)
            records.append(record)

            consecutive_timeouts = consecutive_timeouts + 1 if record.timed_out else 0
            abort_note = self._abort_reason(consecutive_timeouts, config)
            if abort_note is not None:
                logger.warning("[SPEEDTEST] [%s] %s", context, abort_note)
                entries.append(AbortNote(abort_note))
                break

            self._pause(config.min_delay_ms)

        self.sleep(config.grace_ms / 1000.0)
        measured = max(0.001, self.clock() - start)

        stats = ThroughputStats.from_records(records, measured)
        logger.info(
            "[SPEEDTEST] [%s] Throughput done: %d queries, %d bytes in %.3fs "
            "(%.2f ops/s, %.6f MB/s)",
            context, stats.queries_sent, stats.total_bytes, measured,
            stats.ops_per_sec, stats.mb_per_sec,
        )
        return SpeedTestRun(
            mode=THROUGHPUT,
            config=config,
            iterations=tuple(entries),
            stats=stats,
            abort_note=abort_note,
        )
