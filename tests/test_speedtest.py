"""
Diagnostic harness test suite.

The harness runs against a scripted correlator and a fake clock, so
latency/throughput arithmetic and the abort policy are checked exactly and
without waiting on real timeouts.

Run with full visibility:
    pytest tests/test_speedtest.py -v -s
"""

from __future__ import annotations

import socket
import threading
from typing import List, Optional

import pytest

from scpi_bridge.connection import InstrumentConnection
from scpi_bridge.correlator import CommandCorrelator, CommandResult
from scpi_bridge.exceptions import ConfigurationError
from scpi_bridge.speedtest import (
    LATENCY,
    THROUGHPUT,
    AbortNote,
    DiagnosticHarness,
    IterationRecord,
    LatencyStats,
    SpeedTestConfig,
    ThroughputStats,
    normalize_mode,
)


def _report(label, detail=""):
    # type: (str, str) -> None
    print("  [{}] {}".format(label, detail) if detail else "  [{}]".format(label))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []  # type: List[float]

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def ok(rtt_ms, raw="1.0"):
    # type: (float, str) -> CommandResult
    return CommandResult("MEAS:VOLT?", raw, rtt_ms, len(raw) + 1, False, None)


def timeout(partial=b""):
    # type: (bytes) -> CommandResult
    return CommandResult("MEAS:VOLT?", partial.decode(), None, len(partial), True, None)


class ScriptedCorrelator(CommandCorrelator):
    """Returns pre-scripted results and advances the fake clock.

    Successful results advance the clock by their RTT, timeouts by the
    configured per-command timeout.  When the script runs out the last
    entry repeats.
    """

    def __init__(self, clock, script, close_on_error=None):
        # type: (FakeClock, List[CommandResult], Optional[InstrumentConnection]) -> None
        super().__init__()
        self.clock = clock
        self.script = list(script)
        self.calls = 0
        self.close_on_error = close_on_error

    def correlate(self, connection, command, context="", timeout_ms=3000,
                  expect_reply=True, append_newline=True):
        index = min(self.calls, len(self.script) - 1)
        result = self.script[index]
        self.calls += 1
        if result.timed_out:
            self.clock.now += timeout_ms / 1000.0
        elif result.rtt_ms is not None:
            self.clock.now += result.rtt_ms / 1000.0
        if result.error_message and self.close_on_error is not None:
            self.close_on_error.close()
        return result


@pytest.fixture()
def connection():
    bridge_sock, peer = socket.socketpair()
    conn = InstrumentConnection(bridge_sock, "socketpair", 0)
    yield conn
    conn.close()
    peer.close()


@pytest.fixture()
def clock():
    return FakeClock()


def make_harness(clock, connection, script, **kwargs):
    correlator = ScriptedCorrelator(clock, script, **kwargs)
    harness = DiagnosticHarness(correlator, connection, clock=clock, sleep=clock.sleep)
    return harness, correlator


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Configuration
# ═══════════════════════════════════════════════════════════════════════════

class TestSpeedTestConfig:

    def test_defaults(self):
        cfg = SpeedTestConfig()
        assert cfg.command == "MEAS:VOLT?"
        assert cfg.count == 10
        assert cfg.duration_sec == 5
        assert cfg.min_delay_ms == 10
        assert cfg.per_cmd_timeout_ms == 3000
        assert cfg.max_consecutive_timeouts == 5

    def test_floors_applied(self):
        cfg = SpeedTestConfig(
            count=0, duration_sec=0.2, min_delay_ms=-5,
            per_cmd_timeout_ms=10, max_consecutive_timeouts=0, grace_ms=-1,
        )
        assert cfg.count == 1
        assert cfg.duration_sec == 1
        assert cfg.min_delay_ms == 0
        assert cfg.per_cmd_timeout_ms == 100
        assert cfg.max_consecutive_timeouts == 1
        assert cfg.grace_ms == 0

    def test_empty_command_rejected(self):
        with pytest.raises(ConfigurationError):
            SpeedTestConfig(command="  ")

    def test_from_options_accepts_camel_case(self):
        cfg = SpeedTestConfig.from_options({
            "command": "*IDN?",
            "count": 20,
            "duration": 3,
            "minDelayMs": 0,
            "perCmdTimeoutMs": 500,
            "maxConsecutiveTimeouts": 2,
        })
        assert cfg.command == "*IDN?"
        assert cfg.count == 20
        assert cfg.duration_sec == 3
        assert cfg.min_delay_ms == 0
        assert cfg.per_cmd_timeout_ms == 500
        assert cfg.max_consecutive_timeouts == 2

    def test_from_options_falls_back_on_junk(self):
        cfg = SpeedTestConfig.from_options({
            "minDelayMs": "soon",
            "perCmdTimeoutMs": None,
            "count": True,
            "duration_sec": float("nan"),
        })
        assert cfg.min_delay_ms == 10
        assert cfg.per_cmd_timeout_ms == 3000
        assert cfg.count == 10
        assert cfg.duration_sec == 5

    def test_from_options_clamps(self):
        cfg = SpeedTestConfig.from_options({"perCmdTimeoutMs": 5, "count": -3})
        assert cfg.per_cmd_timeout_ms == 100
        assert cfg.count == 1


class TestNormalizeMode:

    @pytest.mark.parametrize("given,expected", [
        ("rtt", LATENCY), ("RTT", LATENCY), ("latency", LATENCY), ("Throughput", THROUGHPUT),
    ])
    def test_known_modes(self, given, expected):
        assert normalize_mode(given) == expected

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError):
            normalize_mode("burst")


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Latency mode
# ═══════════════════════════════════════════════════════════════════════════

class TestLatencyMode:

    def test_timeouts_excluded_from_timing_stats(self, clock, connection):
        script = [ok(10.0), timeout(b"1."), ok(20.0), timeout(), ok(30.0)]
        harness, _ = make_harness(clock, connection, script)
        run = harness.run_latency(SpeedTestConfig(count=5, per_cmd_timeout_ms=100))

        stats = run.stats
        _report("STATS", repr(stats))
        assert run.mode == LATENCY
        assert len(run.records) == 5
        assert stats.avg_ms == pytest.approx(20.0)
        assert stats.min_ms == pytest.approx(10.0)
        assert stats.max_ms == pytest.approx(30.0)
        assert stats.ops_per_sec == pytest.approx(50.0)
        # bytes: 3 replies of "1.0\n" plus the 2 partial bytes of a timeout
        assert stats.total_bytes == 3 * 4 + 2
        assert not run.aborted

    def test_all_timeouts_give_empty_timing_stats(self, clock, connection):
        harness, _ = make_harness(clock, connection, [timeout()])
        run = harness.run_latency(SpeedTestConfig(count=2, per_cmd_timeout_ms=100))
        assert run.stats.avg_ms is None
        assert run.stats.min_ms is None
        assert run.stats.max_ms is None
        assert run.stats.ops_per_sec is None

    def test_consecutive_timeouts_abort(self, clock, connection):
        harness, correlator = make_harness(clock, connection, [ok(5.0), timeout()])
        cfg = SpeedTestConfig(count=10, per_cmd_timeout_ms=100, max_consecutive_timeouts=3)
        run = harness.run_latency(cfg)

        _report("ITERATIONS", repr(run.iterations))
        assert correlator.calls == 4
        assert len(run.records) == 4
        assert isinstance(run.iterations[-1], AbortNote)
        assert run.abort_note == "Aborted after 3 consecutive timeouts."
        assert run.iterations[-1].note == run.abort_note

    def test_success_resets_timeout_counter(self, clock, connection):
        script = [timeout(), timeout(), ok(5.0), timeout(), timeout(), ok(5.0)]
        harness, correlator = make_harness(clock, connection, script)
        cfg = SpeedTestConfig(count=6, per_cmd_timeout_ms=100, max_consecutive_timeouts=3)
        run = harness.run_latency(cfg)
        assert correlator.calls == 6
        assert not run.aborted

    def test_delay_between_iterations(self, clock, connection):
        harness, _ = make_harness(clock, connection, [ok(1.0)])
        harness.run_latency(SpeedTestConfig(count=3, min_delay_ms=25))
        assert clock.sleeps == [pytest.approx(0.025)] * 3

    def test_zero_delay_still_yields(self, clock, connection):
        harness, _ = make_harness(clock, connection, [ok(1.0)])
        harness.run_latency(SpeedTestConfig(count=2, min_delay_ms=0))
        assert clock.sleeps == [0, 0]

    def test_closed_connection_stops_run(self, clock, connection):
        failed = CommandResult("MEAS:VOLT?", "", None, 0, False, "socket closed")
        harness, correlator = make_harness(
            clock, connection, [ok(2.0), failed], close_on_error=connection,
        )
        run = harness.run_latency(SpeedTestConfig(count=10))
        assert correlator.calls == 2
        assert run.aborted
        assert "closed" in run.abort_note
        assert run.records[-1].error == "socket closed"

    def test_progress_callback(self, clock, connection):
        seen = []
        harness, _ = make_harness(clock, connection, [ok(1.0)])
        harness.on_iteration = seen.append
        harness.run_latency(SpeedTestConfig(count=3))
        assert [r.index for r in seen] == [1, 2, 3]

    def test_progress_callback_errors_swallowed(self, clock, connection):
        def boom(record):
            raise RuntimeError("display went away")

        harness, _ = make_harness(clock, connection, [ok(1.0)])
        harness.on_iteration = boom
        run = harness.run_latency(SpeedTestConfig(count=2))
        assert len(run.records) == 2

    def test_to_dict(self, clock, connection):
        harness, _ = make_harness(clock, connection, [ok(4.0)])
        body = harness.run_latency(SpeedTestConfig(count=2)).to_dict()
        assert body["mode"] == "rtt"
        assert body["countRequested"] == 2
        assert body["stats"]["avg_ms"] == pytest.approx(4.0)
        assert body["results"][0] == {
            "i": 1, "raw": "1.0", "rtt_ms": 4.0, "bytes": 4, "timeout": False, "error": None,
        }


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Throughput mode
# ═══════════════════════════════════════════════════════════════════════════

class TestThroughputMode:

    def test_rates_use_measured_duration(self, clock, connection):
        harness, correlator = make_harness(clock, connection, [ok(250.0, raw="x" * 1023)])
        cfg = SpeedTestConfig(duration_sec=1, min_delay_ms=0, grace_ms=120)
        run = harness.run_throughput(cfg)

        stats = run.stats
        _report("STATS", repr(stats))
        assert run.mode == THROUGHPUT
        assert stats.queries_sent == 4
        assert stats.total_bytes == 4 * 1024
        assert stats.measured_duration_sec == pytest.approx(1.12)
        assert stats.mb_per_sec == pytest.approx(
            (stats.total_bytes / 1048576) / stats.measured_duration_sec
        )
        assert stats.ops_per_sec == pytest.approx(4 / 1.12)
        assert stats.megabytes == pytest.approx(4096 / 1048576)

    def test_grace_pause_applied_once(self, clock, connection):
        harness, _ = make_harness(clock, connection, [ok(500.0)])
        harness.run_throughput(SpeedTestConfig(duration_sec=1, min_delay_ms=0, grace_ms=200))
        assert clock.sleeps[-1] == pytest.approx(0.2)
        assert clock.sleeps[:-1] == [0, 0]

    def test_consecutive_timeouts_abort_before_duration(self, clock, connection):
        harness, correlator = make_harness(clock, connection, [timeout()])
        cfg = SpeedTestConfig(
            duration_sec=60, per_cmd_timeout_ms=1000, max_consecutive_timeouts=3,
        )
        run = harness.run_throughput(cfg)

        assert correlator.calls == 3
        assert run.stats.queries_sent == 3
        assert run.stats.measured_duration_sec < 60
        assert isinstance(run.iterations[-1], AbortNote)
        assert run.to_dict()["note"] == run.abort_note

    def test_timeouts_still_counted_as_queries(self, clock, connection):
        harness, _ = make_harness(clock, connection, [ok(300.0), timeout(b"12")])
        cfg = SpeedTestConfig(duration_sec=1, per_cmd_timeout_ms=300, min_delay_ms=0, grace_ms=0)
        run = harness.run_throughput(cfg)
        assert run.stats.queries_sent == 4
        assert run.stats.total_bytes == 4 + 3 * 2

    def test_to_dict_note_when_not_aborted(self, clock, connection):
        harness, _ = make_harness(clock, connection, [ok(600.0)])
        body = harness.run_throughput(SpeedTestConfig(duration_sec=1, grace_ms=0)).to_dict()
        assert body["mode"] == "throughput"
        assert body["queriesSent"] == 2
        assert "waits for the instrument response" in body["note"]


class TestStatsHelpers:

    def test_latency_stats_ignore_non_finite(self):
        records = [
            IterationRecord(1, "1", 10.0, 2, False, None),
            IterationRecord(2, "1", float("inf"), 2, False, None),
        ]
        stats = LatencyStats.from_records(records)
        assert stats.avg_ms == pytest.approx(10.0)
        assert stats.total_bytes == 4

    def test_throughput_stats_formula(self):
        records = [IterationRecord(i, "", 1.0, 524288, False, None) for i in range(1, 3)]
        stats = ThroughputStats.from_records(records, measured_duration_sec=2.0)
        assert stats.megabytes == pytest.approx(1.0)
        assert stats.mb_per_sec == pytest.approx(0.5)
        assert stats.ops_per_sec == pytest.approx(1.0)


class CloseAfterWritesSink:
    """Closes the connection right after the Nth command is written."""

    def __init__(self, writes):
        self.writes = writes
        self.seen = 0
        self.connection = None

    def emit(self, event, payload):
        if event != "tcp_tx":
            return
        self.seen += 1
        if self.seen == self.writes and self.connection is not None:
            self.connection.close()


class TestConnectionLostMidRun:
    """A real correlator whose connection goes away keeps the partial run."""

    def test_partial_results_returned(self):
        bridge_sock, peer = socket.socketpair()
        sink = CloseAfterWritesSink(writes=3)
        conn = InstrumentConnection(bridge_sock, "socketpair", 0, event_sink=sink)
        sink.connection = conn

        def instrument():
            while True:
                try:
                    data = peer.recv(4096)
                except OSError:
                    return
                if not data:
                    return
                try:
                    peer.sendall(b"1.0\n" * data.count(b"\n"))
                except OSError:
                    return

        t = threading.Thread(target=instrument, daemon=True)
        t.start()
        try:
            harness = DiagnosticHarness(CommandCorrelator(), conn)
            run = harness.run_latency(SpeedTestConfig(count=10, min_delay_ms=0, per_cmd_timeout_ms=1000))

            _report("ITERATIONS", repr(run.iterations))
            assert len(run.records) == 3
            assert [r.raw for r in run.records[:2]] == ["1.0", "1.0"]
            assert run.records[2].error == "socket closed"
            assert run.aborted
            assert isinstance(run.iterations[-1], AbortNote)
            assert run.stats.total_bytes == 8
        finally:
            conn.close()
            peer.close()
            t.join(timeout=2)
