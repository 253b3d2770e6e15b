"""Serial pass-through for instruments on a UART / USB-serial line.

Byte-for-byte forwarding with a line parser and no correlation logic: lines
written by the caller go out with a delimiter appended, and every complete
line received is reported to the event sink as ``serial_rx``.

Cross-platform: works on Windows (COMx) and Linux (/dev/ttyUSB*,
/dev/ttyS*, /dev/ttyACM*).

Default line settings: 9600 8N1, no flow control, ``\\r\\n`` delimiter.
"""

from __future__ import annotations

import dataclasses
import logging
import platform
import time
from typing import List, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    ENCODING,
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_DELIMITER,
    SERIAL_PARITY,
    SERIAL_POLL_INTERVAL_S,
    SERIAL_PUMP_DURATION_MS,
    SERIAL_STOPBITS,
    SERIAL_WRITE_TIMEOUT,
)
from .events import EventSink, safe_emit
from .exceptions import SerialBridgeError
from .line_buffer import LineBuffer

logger = logging.getLogger("scpi_bridge.serial_bridge")

_IS_WINDOWS = platform.system() == "Windows"

# Map string parity values to pyserial constants
_PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
    "M": serial.PARITY_MARK,
    "S": serial.PARITY_SPACE,
}

# Long names used by the web front end ("none", "even", ...)
_PARITY_ALIASES = {
    "NONE": "N",
    "EVEN": "E",
    "ODD": "O",
    "MARK": "M",
    "SPACE": "S",
}

_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

_BYTESIZE_MAP = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


@dataclasses.dataclass(frozen=True)
class SerialPortInfo:
    """One serial port visible to the operating system."""
    device: str
    description: Optional[str]
    manufacturer: Optional[str]
    serial_number: Optional[str]
    vendor_id: Optional[int]
    product_id: Optional[int]


class SerialPortManager:
    """Owns the serial line to one instrument, opened explicitly or via ``with``.

    Follows the same context-manager pattern as ``InstrumentConnection``.

    Example::

        with SerialPortManager("/dev/ttyUSB0", baud_rate=115200) as mgr:
            bridge = SerialPassthrough(mgr)
            bridge.send("*IDN?")
            print(bridge.pump(duration_ms=500))
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        rtscts: bool = False,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        """Initialize serial port manager.

        Args:
            port: Serial port path, e.g. ``/dev/ttyUSB0`` (Linux) or ``COM3`` (Windows).
            baud_rate: Baud rate (default: 9600).
            bytesize: Number of data bits (5, 6, 7, or 8; default: 8).
            parity: ``"N"``/``"E"``/``"O"``/``"M"``/``"S"`` or the long names
                ``"none"``/``"even"``/...  Default: ``"N"``.
            stopbits: Number of stop bits (1 or 2; default: 1).
            rtscts: Enable hardware (RTS/CTS) flow control.
            write_timeout: Write timeout in seconds.  ``None`` blocks forever.
            event_sink: Receives ``serial_open`` / ``serial_close`` / ``serial_err``.

        Raises:
            SerialBridgeError: If any parameter value is invalid.
        """
        self.port = port
        self.baud_rate = baud_rate
        self.rtscts = rtscts
        self.write_timeout = write_timeout
        self.event_sink = event_sink
        self._serial: Optional[serial.Serial] = None

        if bytesize not in _BYTESIZE_MAP:
            valid = ", ".join(str(k) for k in sorted(_BYTESIZE_MAP))
            raise SerialBridgeError(
                f"Invalid bytesize {bytesize!r} for port {port}. Must be one of: {valid}."
            )
        self.bytesize = _BYTESIZE_MAP[bytesize]

        parity_key = parity.upper()
        parity_key = _PARITY_ALIASES.get(parity_key, parity_key)
        if parity_key not in _PARITY_MAP:
            valid = ", ".join(f'"{k}"' for k in sorted(_PARITY_MAP))
            raise SerialBridgeError(
                f"Invalid parity {parity!r} for port {port}. Must be one of: {valid} "
                f"(or none/even/odd/mark/space)."
            )
        self.parity = _PARITY_MAP[parity_key]

        if stopbits not in _STOPBITS_MAP:
            valid = ", ".join(str(k) for k in sorted(_STOPBITS_MAP))
            raise SerialBridgeError(
                f"Invalid stopbits {stopbits!r} for port {port}. Must be one of: {valid}."
            )
        self.stopbits = _STOPBITS_MAP[stopbits]

        if baud_rate <= 0:
            raise SerialBridgeError(
                f"Invalid baud rate {baud_rate!r} for port {port}: must be positive "
                f"(bench instruments commonly use 9600 or 115200)."
            )

        logger.info(
            "[SERIAL-INIT] Configured %s — %d %d%s%s (rtscts=%s)",
            port, baud_rate, bytesize, parity_key, stopbits, rtscts,
        )

    def open(self, context: str) -> None:
        """Open the serial port.

        Raises:
            SerialBridgeError: If the port cannot be opened.  The message
                includes the OS-level reason and a platform-specific hint.
        """
        if self._serial is not None and self._serial.is_open:
            logger.debug("[SERIAL-OPEN] [%s] %s already open", context, self.port)
            return

        logger.info("[SERIAL-OPEN] [%s] Opening %s at %d baud ...", context, self.port, self.baud_rate)

        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=0,
                write_timeout=self.write_timeout,
                rtscts=self.rtscts,
            )
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{context}] Failed to open serial port {self.port} at "
                f"{self.baud_rate} baud: {exc}. {self._platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] %s", msg)
            safe_emit(self.event_sink, "serial_err", str(exc))
            raise SerialBridgeError(msg) from exc

        logger.info("[SERIAL-OPEN] [%s] %s open at %d baud", context, self.port, self.baud_rate)
        safe_emit(self.event_sink, "serial_open", {
            "path": self.port,
            "baudRate": self.baud_rate,
            "rtscts": self.rtscts,
        })

    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def close(self) -> None:
        """Close the port.  Safe to call when already closed."""
        was_open = self.is_open()

        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as exc:
                logger.warning("[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc)
            finally:
                self._serial = None

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s", self.port)
            safe_emit(self.event_sink, "serial_close", {"path": self.port})
        else:
            logger.debug("[SERIAL-CLOSE] close() called on already-closed port %s", self.port)

    def get_serial(self) -> serial.Serial:
        """The open ``serial.Serial`` handle.

        Raises:
            SerialBridgeError: If the port is not open.
        """
        if self._serial is None or not self._serial.is_open:
            raise SerialBridgeError(
                f"Serial port {self.port} is closed. Open it before reading or writing."
            )
        return self._serial

    def __enter__(self) -> SerialPortManager:
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass

    @staticmethod
    def list_available_ports() -> List[SerialPortInfo]:
        """Return the serial ports visible to the operating system."""
        ports = []
        for p in serial.tools.list_ports.comports():
            logger.debug("[SERIAL-LIST] Found port: %s (%s)", p.device, p.description)
            ports.append(SerialPortInfo(
                device=p.device,
                description=p.description or None,
                manufacturer=p.manufacturer,
                serial_number=p.serial_number,
                vendor_id=p.vid,
                product_id=p.pid,
            ))
        return ports

    def _platform_hint(self) -> str:
        available = ", ".join(p.device for p in serial.tools.list_ports.comports()) or "(none)"
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager and that "
                "no other application has the port open. "
                f"Available ports: {available}."
            )
        return (
            "On Linux: verify the device path exists and that your user is in the "
            "'dialout' group. "
            f"Available ports: {available}."
        )


@typechecked
class SerialPassthrough:
    """Writes delimiter-terminated lines and forwards received lines.

    Example::

        with SerialPortManager("/dev/ttyUSB0") as mgr:
            passthrough = SerialPassthrough(mgr, event_sink=LoggingEventSink())
            passthrough.send("SYST:REM")
            for line in passthrough.pump(duration_ms=1000):
                print(line)
    """

    def __init__(
        self,
        port_manager: SerialPortManager,
        delimiter: str = SERIAL_DELIMITER,
        encoding: str = ENCODING,
        event_sink: Optional[EventSink] = None,
        poll_interval_s: float = SERIAL_POLL_INTERVAL_S,
    ) -> None:
        if not delimiter:
            raise SerialBridgeError("Serial line delimiter must be a non-empty string")
        self.port_manager = port_manager
        self.delimiter = delimiter
        self.encoding = encoding
        self.event_sink = event_sink if event_sink is not None else port_manager.event_sink
        self.poll_interval_s = poll_interval_s
        self._lines = LineBuffer(delimiter.encode(encoding))

    def _assert_open(self, operation: str, context: str) -> serial.Serial:
        port_name = self.port_manager.port
        if not self.port_manager.is_open():
            msg = (
                f"[{context}] Cannot {operation} on serial port {port_name}: the port is not "
                f"open. Open the SerialPortManager first."
            )
            logger.error("[SERIAL-BRIDGE] %s", msg)
            raise SerialBridgeError(msg)
        return self.port_manager.get_serial()

    def send(self, data: str, append_delimiter: bool = True, context: str = "") -> int:
        """Write *data* (plus the delimiter) and flush the transmit buffer.

        Returns:
            Number of bytes written.

        Raises:
            SerialBridgeError: If the port is not open or the write fails.
        """
        ctx = context or f"serial send {data!r}"
        ser = self._assert_open("write", ctx)
        port_name = self.port_manager.port
        payload = (data + self.delimiter if append_delimiter else data).encode(self.encoding)

        try:
            written = ser.write(payload)
            if written != len(payload):
                raise SerialBridgeError(
                    f"[{ctx}] Short write on {port_name}: wrote {written}/{len(payload)} bytes."
                )
            ser.flush()
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{ctx}] Failed to write to serial port {port_name}: {exc}. "
                f"Check that the USB-serial adapter is still attached."
            )
            logger.error("[SERIAL-TX] ERROR — %s", msg)
            safe_emit(self.event_sink, "serial_err", str(exc))
            raise SerialBridgeError(msg) from exc

        logger.debug("[SERIAL-TX] [%s] Wrote %d bytes to %s", ctx, written, port_name)
        safe_emit(self.event_sink, "serial_tx", data)
        return written

    def pump(self, duration_ms: int = SERIAL_PUMP_DURATION_MS, context: str = "") -> List[str]:
        """Read for *duration_ms* and forward every complete line.

        Partial lines stay buffered for the next call.

        Returns:
            The complete lines received, delimiter stripped.

        Raises:
            SerialBridgeError: If the port is not open or a read fails.
        """
        ctx = context or "serial pump"
        if duration_ms <= 0:
            raise SerialBridgeError(
                f"[{ctx}] Invalid pump duration {duration_ms} ms. Duration must be positive."
            )
        ser = self._assert_open("read", ctx)
        port_name = self.port_manager.port
        deadline = time.monotonic() + duration_ms / 1000.0
        lines: List[str] = []

        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                waiting = ser.in_waiting
                chunk = ser.read(waiting) if waiting > 0 else b""
                if not chunk:
                    time.sleep(min(self.poll_interval_s, remaining))
                    continue
                self._lines.feed(chunk)
                for raw_line in self._lines.pop_lines():
                    line = raw_line[:-len(self._lines.terminator)].decode(self.encoding, errors="replace")
                    lines.append(line)
                    safe_emit(self.event_sink, "serial_rx", line)
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{ctx}] Serial read error on {port_name}: {exc}. "
                f"The adapter may have been unplugged mid-read."
            )
            logger.error("[SERIAL-RX] ERROR — %s", msg)
            safe_emit(self.event_sink, "serial_err", str(exc))
            raise SerialBridgeError(msg) from exc

        logger.info(
            "[SERIAL-RX] [%s] %d lines from %s in %d ms (%d bytes pending)",
            ctx, len(lines), port_name, duration_ms, len(self._lines),
        )
        return lines
