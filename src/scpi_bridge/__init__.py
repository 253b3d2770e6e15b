"""
SCPI Bridge - command/reply correlation for line-oriented bench instruments

This package keeps one persistent TCP connection to an instrument that speaks
a SCPI-like ASCII protocol and provides:

- **Command correlation**: one command in, exactly one structured result out
  (reply, timeout, or socket error), without tearing the connection down on
  timeouts
- **Single-flight gate** so only one command or test run talks to the
  instrument at a time
- **Speed tests**: fixed-count latency sampling and time-boxed throughput
  sampling with a consecutive-timeout abort policy
- **Measurement helpers** for ``MEAS:VOLT?`` / ``MEAS:CURR?`` style queries
- **Serial pass-through** for instruments on a UART / USB-serial line

Every byte written and every chunk received can be reported to an event sink
(``tcp_tx`` / ``tcp_rx`` / ...), see ``scpi_bridge.events``.
"""

import logging
import os

logging.getLogger("scpi_bridge").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Default instrument address.
# Override via environment variables:
#   SCPI_BRIDGE_HOST / SCPI_BRIDGE_PORT
DEFAULT_INSTRUMENT_HOST = os.environ.get("SCPI_BRIDGE_HOST", "192.168.0.1")
DEFAULT_INSTRUMENT_PORT = int(os.environ.get("SCPI_BRIDGE_PORT", "5025"))  # raw SCPI socket

# TCP settings
CONNECT_TIMEOUT_S = 10
RECV_CHUNK_SIZE = 4096
LINE_TERMINATOR = b"\n"
ENCODING = "utf-8"

# Per-command correlation settings
PER_CMD_TIMEOUT_MS = 3000
PER_CMD_TIMEOUT_FLOOR_MS = 100
MEASURE_TIMEOUT_MS = 3000

# Speed-test defaults (value, floor)
SPEEDTEST_DEFAULT_COMMAND = "MEAS:VOLT?"
SPEEDTEST_MIN_DELAY_MS = 10
SPEEDTEST_MIN_DELAY_FLOOR_MS = 0
SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS = 5
SPEEDTEST_MAX_CONSECUTIVE_TIMEOUTS_FLOOR = 1
SPEEDTEST_COUNT = 10
SPEEDTEST_COUNT_FLOOR = 1
SPEEDTEST_DURATION_S = 5
SPEEDTEST_DURATION_FLOOR_S = 1
SPEEDTEST_GRACE_MS = 120  # settle time before the throughput clock stops

# Serial pass-through settings
# Override the default port via SCPI_BRIDGE_SERIAL_PORT.
DEFAULT_SERIAL_PORT = os.environ.get("SCPI_BRIDGE_SERIAL_PORT", "/dev/ttyUSB0")
SERIAL_BAUD_RATE = 9600
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit
SERIAL_DELIMITER = "\r\n"
SERIAL_WRITE_TIMEOUT = 10  # seconds, blocking with failsafe
SERIAL_POLL_INTERVAL_S = 0.01
SERIAL_PUMP_DURATION_MS = 2000
