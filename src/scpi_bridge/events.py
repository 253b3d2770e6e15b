"""Observability sink for the tx/rx event stream.

Connection handles and the serial pass-through report every outbound write
and every inbound chunk or line to an ``EventSink``.  The bridge only calls
``emit``; what happens with the events (logging, pushing to a websocket,
collecting for a test) is up to the sink.

Event names::

    tcp_open, tcp_tx, tcp_rx, tcp_err, tcp_close
    serial_open, serial_tx, serial_rx, serial_err, serial_close
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger("scpi_bridge.events")


class EventSink(Protocol):
    """Anything with an ``emit(event, payload)`` method."""

    def emit(self, event: str, payload: object) -> None:
        ...


class LoggingEventSink:
    """Default sink: writes each event to the ``scpi_bridge.events`` logger."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    def emit(self, event: str, payload: object) -> None:
        logger.log(self.level, "[EVENT] %s %r", event, payload)


class CallbackEventSink:
    """Forwards events to a plain callable, e.g. ``lambda e, p: print(e, p)``."""

    def __init__(self, callback: Callable[[str, object], None]) -> None:
        self.callback = callback

    def emit(self, event: str, payload: object) -> None:
        self.callback(event, payload)


class FanOutEventSink:
    """Emits every event to several sinks in order."""

    def __init__(self, sinks: List[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: str, payload: object) -> None:
        for sink in self.sinks:
            sink.emit(event, payload)


def safe_emit(sink: Optional[EventSink], event: str, payload: object) -> None:
    """Emit *event* to *sink*, logging and swallowing any sink error.

    Sink errors are swallowed so that a broken observer can never disturb
    the I/O path it is observing.
    """
    if sink is None:
        return
    try:
        sink.emit(event, payload)
    except Exception as exc:
        logger.warning(
            "[EVENT] sink %s raised %s on %r: %s "
            "(sink errors are swallowed to protect the I/O path)",
            type(sink).__name__, type(exc).__name__, event, exc,
        )
