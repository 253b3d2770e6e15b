"""TCP connection handle for a line-oriented instrument."""

from __future__ import annotations

import dataclasses
import logging
import socket
import time
from typing import Optional

from . import CONNECT_TIMEOUT_S, ENCODING, RECV_CHUNK_SIZE
from .events import EventSink, safe_emit
from .exceptions import InstrumentConnectionError

logger = logging.getLogger("scpi_bridge.connection")


@dataclasses.dataclass(frozen=True)
class ConnectionState:
    """Snapshot of the bridge's connection."""
    is_open: bool
    host: Optional[str]
    port: Optional[int]


class InstrumentConnection:
    """One live, exclusively owned stream connection to an instrument.

    Exposes the byte-level primitives the correlator builds on:

    - ``send(data)`` writes every byte or raises ``OSError``;
    - ``receive(timeout_s)`` returns a chunk, ``None`` when nothing arrived in
      time, or ``b""`` once the peer has closed the connection;
    - ``drain()`` discards whatever is already waiting without blocking.

    A peer close or a socket-level receive error closes the handle; a failed
    write does not (the caller decides whether to close).

    Example::

        with InstrumentConnection.open("192.168.0.10", 5025, context="bench PSU") as conn:
            conn.send(b"*IDN?\\n")
            print(conn.receive(timeout_s=1.0))
    """

    def __init__(
        self,
        sock: socket.socket,
        host: str,
        port: int,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.event_sink = event_sink
        self._sock: Optional[socket.socket] = sock

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        context: str,
        timeout_s: float = CONNECT_TIMEOUT_S,
        event_sink: Optional[EventSink] = None,
    ) -> InstrumentConnection:
        """Open a TCP connection to *host*:*port*.

        Args:
            host: IP address or hostname of the instrument.
            port: TCP port (SCPI raw socket is usually 5025).
            context: Description of the purpose of this connection,
                embedded into error messages.
            timeout_s: Connect timeout in seconds.
            event_sink: Receives ``tcp_open`` / ``tcp_tx`` / ``tcp_rx`` /
                ``tcp_err`` / ``tcp_close`` events.

        Raises:
            InstrumentConnectionError: If the connection cannot be made.
        """
        logger.info(
            "[TCP-CONNECT] [%s] Connecting to %s:%d (timeout=%.1fs) ...",
            context, host, port, timeout_s,
        )
        start_time = time.monotonic()

        try:
            sock = socket.create_connection((host, port), timeout=timeout_s)
        except socket.timeout as exc:
            elapsed = time.monotonic() - start_time
            msg = (
                f"[{context}] Connection to {host}:{port} timed out after "
                f"{elapsed:.1f}s (limit {timeout_s}s). Check that the instrument "
                f"is powered on and its LAN interface is enabled."
            )
            logger.error("[TCP-CONNECT] TIMEOUT — %s", msg)
            raise InstrumentConnectionError(msg) from exc
        except OSError as exc:
            msg = (
                f"[{context}] Could not connect to {host}:{port}: {exc}. "
                f"Verify the address and that no other client holds the "
                f"instrument's socket (most instruments accept only one)."
            )
            logger.error("[TCP-CONNECT] FAILED — %s", msg)
            raise InstrumentConnectionError(msg) from exc

        # One small query per write; do not let Nagle batch them.
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        logger.info(
            "[TCP-CONNECT] [%s] Connected to %s:%d in %.3fs",
            context, host, port, time.monotonic() - start_time,
        )
        conn = cls(sock, host, port, event_sink=event_sink)
        safe_emit(event_sink, "tcp_open", {"host": host, "port": port})
        return conn

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def is_open(self) -> bool:
        return self._sock is not None

    @property
    def state(self) -> ConnectionState:
        if self.is_open():
            return ConnectionState(is_open=True, host=self.host, port=self.port)
        return ConnectionState(is_open=False, host=None, port=None)

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise InstrumentConnectionError(
                f"Connection to {self.target} is closed. Reconnect first."
            )
        return self._sock

    # ---- I/O primitives ----

    def send(self, data: bytes) -> int:
        """Write all of *data*.

        Does **not** catch ``OSError``; a failed write leaves the handle
        open and the exception propagates to the caller.
        """
        sock = self._require_socket()
        sock.settimeout(CONNECT_TIMEOUT_S)
        sock.sendall(data)
        logger.debug("[TCP-TX] %d bytes to %s: %r", len(data), self.target, data)
        safe_emit(self.event_sink, "tcp_tx", data.decode(ENCODING, errors="replace"))
        return len(data)

    def receive(self, timeout_s: float) -> Optional[bytes]:
        """Wait up to *timeout_s* for the next chunk.

        Returns:
            The received bytes, ``None`` if nothing arrived in time, or
            ``b""`` if the peer closed the connection (the handle is closed).

        Raises:
            OSError: On a socket-level error (the handle is closed first).
        """
        sock = self._require_socket()
        sock.settimeout(max(timeout_s, 0.001))
        try:
            chunk = sock.recv(RECV_CHUNK_SIZE)
        except socket.timeout:
            return None
        except OSError as exc:
            self._fail(exc)
            raise

        if not chunk:
            logger.warning("[TCP-RX] Peer %s closed the connection", self.target)
            self.close()
            return b""

        logger.debug("[TCP-RX] %d bytes from %s: %r", len(chunk), self.target, chunk)
        safe_emit(self.event_sink, "tcp_rx", chunk.decode(ENCODING, errors="replace"))
        return chunk

    def drain(self, max_drain_s: float = 0.5) -> int:
        """Read and discard every byte already waiting, without blocking.

        A deadline of *max_drain_s* seconds prevents an endless loop when the
        instrument keeps streaming.

        Returns:
            Number of bytes discarded.

        Raises:
            OSError: On a socket-level error (the handle is closed first).
        """
        sock = self._require_socket()
        total_discarded = 0
        deadline = time.monotonic() + max_drain_s
        sock.settimeout(0.0)
        try:
            while time.monotonic() < deadline:
                try:
                    chunk = sock.recv(RECV_CHUNK_SIZE)
                except (BlockingIOError, socket.timeout):
                    break
                if not chunk:
                    logger.warning(
                        "[TCP-DRAIN] Peer %s closed the connection while draining",
                        self.target,
                    )
                    self.close()
                    break
                total_discarded += len(chunk)
                safe_emit(self.event_sink, "tcp_rx", chunk.decode(ENCODING, errors="replace"))
        except OSError as exc:
            self._fail(exc)
            raise

        if total_discarded > 0:
            logger.info(
                "[TCP-DRAIN] Discarded %d stale bytes from %s",
                total_discarded, self.target,
            )
        return total_discarded

    def _fail(self, exc: BaseException) -> None:
        logger.error("[TCP-ERR] Socket error on %s: %s", self.target, exc)
        safe_emit(self.event_sink, "tcp_err", str(exc))
        self.close()

    # ---- Lifecycle ----

    def close(self) -> None:
        """Close the connection if open."""
        sock = self._sock
        if sock is None:
            logger.debug("[TCP-CLOSE] close() called on already-closed connection to %s", self.target)
            return

        self._sock = None
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already gone
            pass
        try:
            sock.close()
        except OSError as exc:
            logger.warning("[TCP-CLOSE] Error closing connection to %s: %s", self.target, exc)

        logger.info("[TCP-CLOSE] Closed connection to %s", self.target)
        safe_emit(self.event_sink, "tcp_close", {"host": self.host, "port": self.port})

    def __enter__(self) -> InstrumentConnection:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Context manager exit - ensure connection is closed."""
        self.close()

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass
