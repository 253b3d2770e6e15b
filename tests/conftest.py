"""Pytest configuration — path setup, logging, and shared instrument fixtures."""

import logging
import os
import socket
import sys
import threading
from typing import Callable, List, Optional, Tuple

import pytest

# ---------------------------------------------------------------------------
# Path setup: ensure the package is importable regardless of installation
# ---------------------------------------------------------------------------
_SRC_DIR = os.path.join(os.path.dirname(__file__), os.pardir, "src")
_SRC_DIR = os.path.normpath(_SRC_DIR)
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)

# ---------------------------------------------------------------------------
# Logging: route all library log output to the console so pytest -s shows it
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)


# ---------------------------------------------------------------------------
# Recording event sink
# ---------------------------------------------------------------------------

class RecordingSink:
    """Collects every emitted event for later assertions."""

    def __init__(self) -> None:
        self.events = []  # type: List[Tuple[str, object]]
        self._lock = threading.Lock()

    def emit(self, event, payload):
        # type: (str, object) -> None
        with self._lock:
            self.events.append((event, payload))

    def names(self):
        # type: () -> List[str]
        with self._lock:
            return [name for name, _ in self.events]

    def payloads(self, name):
        # type: (str) -> List[object]
        with self._lock:
            return [payload for event, payload in self.events if event == name]


# ---------------------------------------------------------------------------
# Threaded stub instrument on 127.0.0.1
# ---------------------------------------------------------------------------

Responder = Callable[[str], Optional[bytes]]


def echo_value(value):
    # type: (str) -> Responder
    """Responder that answers every line with ``value + "\\n"``."""
    reply = (value + "\n").encode("utf-8")
    return lambda line: reply


def never_reply(line):
    # type: (str) -> Optional[bytes]
    return None


class StubInstrument:
    """Single-client TCP server that reads lines and answers via a responder.

    The responder receives each command line (terminator stripped) and
    returns the bytes to send back, or ``None`` to stay silent.  Set
    ``delay_s`` to answer late.
    """

    def __init__(self, responder, delay_s=0.0):
        # type: (Responder, float) -> None
        self.responder = responder
        self.delay_s = delay_s
        self.received = []  # type: List[str]
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(1)
        self.host, self.port = self._server.getsockname()
        self._client = None  # type: Optional[socket.socket]
        self._stop = threading.Event()
        self._accepted = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        # type: () -> None
        try:
            client, _ = self._server.accept()
        except OSError:
            return
        self._client = client
        self._accepted.set()
        buf = b""
        while not self._stop.is_set():
            try:
                data = client.recv(4096)
            except OSError:
                return
            if not data:
                return
            buf += data
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                text = line.decode("utf-8").strip()
                self.received.append(text)
                reply = self.responder(text)
                if reply is None:
                    continue
                if self.delay_s:
                    self._stop.wait(self.delay_s)
                try:
                    client.sendall(reply)
                except OSError:
                    return

    def drop_client(self):
        # type: () -> None
        """Close the accepted client socket (peer-side disconnect)."""
        self._accepted.wait(timeout=2)
        self._close_client()

    def _close_client(self):
        # type: () -> None
        if self._client is not None:
            try:
                self._client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._client.close()

    def close(self):
        # type: () -> None
        self._stop.set()
        self._close_client()
        try:
            self._server.close()
        except OSError:
            pass
        self._thread.join(timeout=2)


@pytest.fixture()
def recording_sink():
    return RecordingSink()


@pytest.fixture()
def stub_factory():
    """Create stub instruments that are closed after the test."""
    created = []  # type: List[StubInstrument]

    def _make(responder, delay_s=0.0):
        # type: (Responder, float) -> StubInstrument
        stub = StubInstrument(responder, delay_s=delay_s)
        created.append(stub)
        return stub

    yield _make
    for stub in created:
        stub.close()
