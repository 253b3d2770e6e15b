"""Buffered line reader, independent of any I/O notification mechanism.

Feed raw bytes in as they arrive, ask whether a complete line is available,
pop completed lines.  Used by the command correlator (``\\n`` terminated
instrument replies) and by the serial pass-through (configurable delimiter).
"""

from __future__ import annotations

from typing import List, Optional

from . import ENCODING, LINE_TERMINATOR


class LineBuffer:
    """Accumulates bytes and splits them on a terminator.

    Example::

        buf = LineBuffer()
        buf.feed(b"3.30")
        buf.has_line()      # False
        buf.feed(b"1\\nOK")
        buf.pop_line()      # b"3.301\\n"
        buf.pending()       # b"OK"
    """

    def __init__(self, terminator: bytes = LINE_TERMINATOR) -> None:
        if not terminator:
            raise ValueError("Line terminator must be a non-empty byte string")
        self.terminator = terminator
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def has_line(self) -> bool:
        return self._buffer.find(self.terminator) >= 0

    def pop_line(self) -> Optional[bytes]:
        """Remove and return the first complete line, terminator included.

        Returns ``None`` when no terminator has been seen yet.  Bytes after
        the terminator stay in the buffer.
        """
        index = self._buffer.find(self.terminator)
        if index < 0:
            return None
        end = index + len(self.terminator)
        line = bytes(self._buffer[:end])
        del self._buffer[:end]
        return line

    def pop_lines(self) -> List[bytes]:
        lines = []
        while True:
            line = self.pop_line()
            if line is None:
                return lines
            lines.append(line)

    def pending(self) -> bytes:
        """Bytes received after the last complete line."""
        return bytes(self._buffer)

    def clear(self) -> int:
        """Discard everything buffered and return how many bytes were dropped."""
        dropped = len(self._buffer)
        self._buffer.clear()
        return dropped


def decode_line(data: bytes, encoding: str = ENCODING) -> str:
    """Decode a line (or partial line) and strip surrounding whitespace."""
    return data.decode(encoding, errors="replace").strip()
