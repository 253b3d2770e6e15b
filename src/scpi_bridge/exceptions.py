"""Custom exceptions for instrument bridge operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .correlator import CommandResult


class ScpiBridgeError(Exception):
    """Common base exception for all scpi_bridge errors."""
    pass


class InstrumentConnectionError(ScpiBridgeError):
    """Exception for TCP connection errors (connect failure, socket I/O)."""
    pass


class NotConnectedError(InstrumentConnectionError):
    """Raised when an operation needs an open connection and there is none.

    Always raised before any I/O is attempted.
    """
    pass


class AlreadyConnectedError(InstrumentConnectionError):
    """Raised when connecting while the bridge already holds an open session."""
    pass


class DeviceBusyError(ScpiBridgeError):
    """Raised when the single-flight gate is already held.

    Distinct from a generic failure: the caller may simply retry later.
    """
    pass


class InstrumentTimeoutError(ScpiBridgeError):
    """Exception for an instrument that did not reply within the window.

    ``correlate`` never raises this (a timeout is a result, not an error);
    it is raised by callers that need a reply to continue, such as
    ``BridgeSession.measure``.  The ``.result`` attribute contains the
    ``CommandResult`` with whatever partial bytes were buffered.
    """

    def __init__(
        self,
        message: str,
        *,
        result: CommandResult | None = None,
    ) -> None:
        super().__init__(message)
        self.result = result


class ConfigurationError(ScpiBridgeError):
    """Exception for invalid options (unknown speed-test mode, bad kind, ...)."""
    pass


class SerialBridgeError(ScpiBridgeError):
    """Base exception for serial pass-through errors.

    Raised when the serial port cannot be opened, configured, written to,
    or read from.
    """
    pass
