"""Single-flight gate serializing access to one instrument connection."""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Iterator

from .exceptions import DeviceBusyError

logger = logging.getLogger("scpi_bridge.gate")


class SingleFlightGate:
    """At most one correlation or speed-test run on a connection at a time.

    ``try_acquire`` never blocks and never queues: when the gate is already
    held it returns ``False`` and the caller reports "busy" or retries.

    Example::

        gate = SingleFlightGate()
        with gate.hold(context="measure voltage"):
            result = correlator.correlate(conn, "MEAS:VOLT?")
    """

    def __init__(self, name: str = "instrument") -> None:
        self.name = name
        self._lock = threading.Lock()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        acquired = self._lock.acquire(blocking=False)
        if acquired:
            logger.debug("[GATE] Acquired %s gate", self.name)
        else:
            logger.debug("[GATE] %s gate already held", self.name)
        return acquired

    def release(self) -> None:
        """Release the gate.

        Raises:
            RuntimeError: If the gate is not held.
        """
        self._lock.release()
        logger.debug("[GATE] Released %s gate", self.name)

    @contextlib.contextmanager
    def hold(self, context: str) -> Iterator[None]:
        """Hold the gate for the duration of a ``with`` block.

        Released on every exit path, exceptions included.

        Raises:
            DeviceBusyError: If the gate is already held.
        """
        if not self.try_acquire():
            msg = (
                f"[{context}] Device busy: another command or speed test is in "
                f"progress on {self.name}. Retry when it has finished."
            )
            logger.warning("[GATE] %s", msg)
            raise DeviceBusyError(msg)
        try:
            yield
        finally:
            self.release()
