"""Command-line interface for the SCPI bridge."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from tqdm import tqdm

from . import (
    DEFAULT_INSTRUMENT_HOST,
    DEFAULT_INSTRUMENT_PORT,
    DEFAULT_SERIAL_PORT,
    PER_CMD_TIMEOUT_MS,
    SERIAL_BAUD_RATE,
    SERIAL_DELIMITER,
    SERIAL_PUMP_DURATION_MS,
    SPEEDTEST_COUNT,
    SPEEDTEST_DEFAULT_COMMAND,
    SPEEDTEST_DURATION_S,
    SPEEDTEST_GRACE_MS,
    SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS,
    SPEEDTEST_MIN_DELAY_MS,
)
from .events import CallbackEventSink, LoggingEventSink
from .exceptions import InstrumentTimeoutError, ScpiBridgeError
from .serial_bridge import SerialPassthrough, SerialPortManager
from .session import MEASUREMENT_COMMANDS, BridgeSession
from .speedtest import LATENCY, IterationRecord, normalize_mode


def open_session(args) -> BridgeSession:
    """Connect to the instrument named on the command line."""
    sink = CallbackEventSink(_print_event) if args.events else LoggingEventSink()
    return BridgeSession.connect(
        args.host, args.port,
        context=f"CLI {args.command} on {args.host}:{args.port}",
        event_sink=sink,
    )


def _print_event(event: str, payload: object) -> None:
    print(f"[{event}] {payload!r}", file=sys.stderr)


def command_query(args) -> int:
    """Send a command and print its reply."""
    try:
        with open_session(args) as session:
            result = session.correlate(args.scpi_command, timeout_ms=args.timeout)

            if args.json:
                print(json.dumps(result.to_dict(), indent=2))
            elif result.timed_out:
                print(f"Timeout after {args.timeout} ms (partial: {result.raw_reply!r})", file=sys.stderr)
            elif result.error_message:
                print(f"Error: {result.error_message}", file=sys.stderr)
            else:
                print(result.raw_reply)
                print(f"[{result.rtt_ms:.2f} ms, {result.byte_count} bytes]", file=sys.stderr)

            return 0 if result.succeeded else 1

    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_send(args) -> int:
    """Send a command that produces no reply."""
    try:
        with open_session(args) as session:
            result = session.send(args.scpi_command, append_newline=not args.no_newline)
            if result.error_message:
                print(f"Error: {result.error_message}", file=sys.stderr)
                return 1
            print(f"Sent {args.scpi_command!r}")
            return 0

    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_measure(args) -> int:
    """Run a measurement query and print the value."""
    try:
        with open_session(args) as session:
            reading = session.measure(args.kind)
            if args.json:
                print(json.dumps(reading.to_dict(), indent=2))
            else:
                print(reading.value)
            return 0

    except InstrumentTimeoutError as e:
        print(f"Timeout waiting for instrument reply: {e}", file=sys.stderr)
        return 1
    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def _format_ms(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f} ms"


def command_speedtest(args) -> int:
    """Run a latency or throughput speed test."""
    try:
        mode = normalize_mode(args.mode)
    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    options = {
        "mode": mode,
        "command": args.scpi_command,
        "count": args.count,
        "duration_sec": args.duration,
        "min_delay_ms": args.min_delay,
        "per_cmd_timeout_ms": args.timeout,
        "max_consecutive_timeouts": args.max_timeouts,
        "grace_ms": args.grace,
    }

    progress_bar = tqdm(
        total=args.count if mode == LATENCY else None,
        unit="cmd",
        desc=f"{mode} {args.scpi_command}",
        disable=args.json,
    )

    def on_iteration(record: IterationRecord) -> None:
        progress_bar.update(1)
        progress_bar.set_postfix_str("timeout" if record.timed_out else _format_ms(record.rtt_ms))

    try:
        with open_session(args) as session:
            run = session.run_speed_test(options, on_iteration=on_iteration)
    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1
    finally:
        progress_bar.close()

    if args.json:
        print(json.dumps(run.to_dict(), indent=2))
        return 0

    stats = run.stats
    if mode == LATENCY:
        print(f"Iterations : {len(run.records)}/{run.config.count}")
        print(f"Average    : {_format_ms(stats.avg_ms)}")
        print(f"Min / Max  : {_format_ms(stats.min_ms)} / {_format_ms(stats.max_ms)}")
        ops = "n/a" if stats.ops_per_sec is None else f"{stats.ops_per_sec:.1f}"
        print(f"Ops/s      : {ops}")
        print(f"Bytes      : {stats.total_bytes}")
    else:
        print(f"Queries    : {stats.queries_sent}")
        print(f"Duration   : {stats.measured_duration_sec:.3f} s (requested {run.config.duration_sec:g} s)")
        print(f"Ops/s      : {stats.ops_per_sec:.1f}")
        print(f"Bytes      : {stats.total_bytes} ({stats.mb_per_sec:.6f} MB/s)")
    if run.abort_note:
        print(run.abort_note)
    return 0


def command_serial_list(args) -> int:
    """List available serial ports."""
    ports = SerialPortManager.list_available_ports()
    if not ports:
        print("No serial ports found.")
    else:
        print("Available serial ports:")
        for p in ports:
            print(f"  {p.device} — {p.description or 'n/a'}")
    return 0


def command_serial_send(args) -> int:
    """Write a line to a serial port and print lines received afterwards."""
    delimiter = args.delimiter.encode("utf-8").decode("unicode_escape")
    try:
        with SerialPortManager(
            port=args.serial_port,
            baud_rate=args.baud_rate,
            parity=args.parity,
            rtscts=args.rtscts,
        ) as mgr:
            passthrough = SerialPassthrough(mgr, delimiter=delimiter)
            passthrough.send(args.data, append_delimiter=not args.no_delimiter)
            if args.listen > 0:
                for line in passthrough.pump(duration_ms=args.listen):
                    print(line)
            return 0

    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_serial_monitor(args) -> int:
    """Print lines arriving on a serial port for a duration."""
    delimiter = args.delimiter.encode("utf-8").decode("unicode_escape")
    try:
        with SerialPortManager(
            port=args.serial_port,
            baud_rate=args.baud_rate,
            parity=args.parity,
            rtscts=args.rtscts,
        ) as mgr:
            passthrough = SerialPassthrough(mgr, delimiter=delimiter)
            for line in passthrough.pump(duration_ms=args.duration):
                print(line)
            return 0

    except ScpiBridgeError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def _add_serial_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--serial-port", type=str, default=DEFAULT_SERIAL_PORT,
        help=f"Serial port path (e.g. /dev/ttyUSB0 or COM3, default: {DEFAULT_SERIAL_PORT})",
    )
    parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )
    parser.add_argument(
        "--parity", type=str, default="none",
        help="Parity: none, even, odd, mark, space (default: none)",
    )
    parser.add_argument(
        "--rtscts", action="store_true", default=False,
        help="Enable RTS/CTS hardware flow control",
    )
    parser.add_argument(
        "--delimiter", type=str, default=SERIAL_DELIMITER.encode("unicode_escape").decode("ascii"),
        help="Line delimiter, backslash escapes allowed (default: \\r\\n)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SCPI Bridge - talk to and benchmark line-oriented bench instruments"
    )

    parser.add_argument(
        "--host", type=str, default=DEFAULT_INSTRUMENT_HOST,
        help=f"Instrument address (default: {DEFAULT_INSTRUMENT_HOST})",
    )
    parser.add_argument(
        "--port", type=int, default=DEFAULT_INSTRUMENT_PORT,
        help=f"Instrument TCP port (default: {DEFAULT_INSTRUMENT_PORT})",
    )
    parser.add_argument(
        "--events", action="store_true", default=False,
        help="Print the tx/rx event stream to stderr",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=False,
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Query
    query_parser = subparsers.add_parser("query", help="Send a command and wait for one reply line")
    query_parser.add_argument("scpi_command", metavar="COMMAND", help="Command to send, e.g. *IDN?")
    query_parser.add_argument(
        "--timeout", type=int, default=PER_CMD_TIMEOUT_MS,
        help=f"Reply timeout in milliseconds (default: {PER_CMD_TIMEOUT_MS})",
    )
    query_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    query_parser.set_defaults(func=command_query)

    # Send (no reply)
    send_parser = subparsers.add_parser("send", help="Send a command that produces no reply")
    send_parser.add_argument("scpi_command", metavar="COMMAND", help="Command to send, e.g. OUTP ON")
    send_parser.add_argument(
        "--no-newline", action="store_true", default=False,
        help="Send the text verbatim, without a trailing newline",
    )
    send_parser.set_defaults(func=command_send)

    # Measure
    measure_parser = subparsers.add_parser("measure", help="Read a measurement")
    measure_parser.add_argument("kind", choices=sorted(MEASUREMENT_COMMANDS), help="Quantity to measure")
    measure_parser.add_argument("--json", action="store_true", help="Print the reading as JSON")
    measure_parser.set_defaults(func=command_measure)

    # Speed test
    speed_parser = subparsers.add_parser("speedtest", help="Measure latency or throughput")
    speed_parser.add_argument(
        "--mode", type=str, default="rtt",
        help="rtt (latency) or throughput (default: rtt)",
    )
    speed_parser.add_argument(
        "--command", dest="scpi_command", metavar="COMMAND", default=SPEEDTEST_DEFAULT_COMMAND,
        help=f"Command to repeat (default: {SPEEDTEST_DEFAULT_COMMAND})",
    )
    speed_parser.add_argument(
        "--count", type=int, default=SPEEDTEST_COUNT,
        help=f"Iterations in rtt mode (default: {SPEEDTEST_COUNT})",
    )
    speed_parser.add_argument(
        "--duration", type=float, default=SPEEDTEST_DURATION_S,
        help=f"Seconds in throughput mode (default: {SPEEDTEST_DURATION_S})",
    )
    speed_parser.add_argument(
        "--min-delay", type=int, default=SPEEDTEST_MIN_DELAY_MS,
        help=f"Pause between iterations in milliseconds (default: {SPEEDTEST_MIN_DELAY_MS})",
    )
    speed_parser.add_argument(
        "--timeout", type=int, default=PER_CMD_TIMEOUT_MS,
        help=f"Per-command timeout in milliseconds (default: {PER_CMD_TIMEOUT_MS})",
    )
    speed_parser.add_argument(
        "--max-timeouts", type=int, default=SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS,
        help=f"Abort after this many consecutive timeouts (default: {SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS})",
    )
    speed_parser.add_argument(
        "--grace", type=int, default=SPEEDTEST_GRACE_MS,
        help=f"Throughput settle time before the clock stops, ms (default: {SPEEDTEST_GRACE_MS})",
    )
    speed_parser.add_argument("--json", action="store_true", help="Print the full run as JSON")
    speed_parser.set_defaults(func=command_speedtest)

    # Serial list
    serial_list_parser = subparsers.add_parser("serial-list", help="List available serial ports")
    serial_list_parser.set_defaults(func=command_serial_list)

    # Serial send
    serial_send_parser = subparsers.add_parser(
        "serial-send", help="Write a line to a serial port and print the lines that come back",
    )
    serial_send_parser.add_argument("data", metavar="DATA", help="Text to send")
    serial_send_parser.add_argument(
        "--no-delimiter", action="store_true", default=False,
        help="Do not append the line delimiter",
    )
    serial_send_parser.add_argument(
        "--listen", type=int, default=SERIAL_PUMP_DURATION_MS,
        help=f"Listen for replies this many milliseconds, 0 to skip (default: {SERIAL_PUMP_DURATION_MS})",
    )
    _add_serial_options(serial_send_parser)
    serial_send_parser.set_defaults(func=command_serial_send)

    # Serial monitor
    serial_monitor_parser = subparsers.add_parser(
        "serial-monitor", help="Print lines arriving on a serial port",
    )
    serial_monitor_parser.add_argument(
        "--duration", type=int, default=10000,
        help="Monitor duration in milliseconds (default: 10000)",
    )
    _add_serial_options(serial_monitor_parser)
    serial_monitor_parser.set_defaults(func=command_serial_monitor)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
