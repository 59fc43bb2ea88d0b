"""Output collection for supervised subprocesses.

smart-exec runtime module v0.1.0

This module provides:
- OutputBuffer: append-only byte accumulator with get-and-optionally-clear access
- StreamCondition: readiness condition reported by the event loop
- OutputCollector: drains a non-blocking pipe into an OutputBuffer

Key design points:
- Every readiness callback drains the pipe in a loop until nothing more is
  immediately available; a multiplexer may report readiness only once per
  state transition, so a partial drain stalls the stream
- The supervisor calls flush() one extra time after the child is reaped,
  because the last bytes may only become readable when the write end closes
- A read error is recorded on the ErrorSink and closes the collector; it never
  raises into the event loop
"""

from __future__ import annotations

import errno
import logging
import os
from enum import Flag, auto

from ..errors import ErrorCategory, ErrorLevel, ErrorRecord, ErrorSink

__all__ = [
    "OutputBuffer",
    "OutputCollector",
    "StreamCondition",
]

logger = logging.getLogger(__name__)

# Bytes requested per os.read() call
DEFAULT_CHUNK_SIZE = 64 * 1024


class StreamCondition(Flag):
    """Readiness condition of a child's output pipe."""

    READABLE = auto()
    HANGUP = auto()
    ERROR = auto()
    INVALID = auto()


# Conditions after which no more events are expected
_TERMINAL_CONDITIONS = StreamCondition.HANGUP | StreamCondition.ERROR | StreamCondition.INVALID


class OutputBuffer:
    """Append-only accumulator for one output stream.

    Growth is unbounded. Readers may take a snapshot at any time and
    optionally clear what they took.
    """

    def __init__(self) -> None:
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        self._data += chunk

    def get(self, clear: bool = False) -> bytes:
        """Return the collected bytes.

        Args:
            clear: Drop the returned bytes from the buffer

        Returns:
            Collected bytes
        """
        data = bytes(self._data)
        if clear:
            self._data.clear()
        return data

    def text(self, clear: bool = False, encoding: str = "utf-8") -> str:
        """Return the collected bytes decoded as text (undecodable bytes replaced)."""
        return self.get(clear).decode(encoding, errors="replace")

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)


class OutputCollector:
    """Drain a non-blocking child pipe into an OutputBuffer.

    The collector is invoked by the event loop whenever its file descriptor
    is readable. Only one collector may read a given descriptor.

    Example:
        collector = OutputCollector("stdout", fd, OutputBuffer(), errors)
        loop.add_reader(fd, lambda: collector.on_ready(StreamCondition.READABLE))

    Attributes:
        name: Stream name used in logs and error messages ("stdout"/"stderr")
        fd: Non-blocking read end of the pipe
        buffer: Destination buffer
        errors: Sink receiving stream read errors
        chunk_size: Bytes requested per read
    """

    def __init__(
        self,
        name: str,
        fd: int,
        buffer: OutputBuffer,
        errors: ErrorSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.name = name
        self.fd = fd
        self.buffer = buffer
        self.errors = errors
        self.chunk_size = chunk_size
        self._bytes_read = 0
        self._closed = False

    @property
    def bytes_read(self) -> int:
        """Total bytes read by this collector."""
        return self._bytes_read

    @property
    def closed(self) -> bool:
        """True once EOF, a read error or a terminal condition was seen."""
        return self._closed

    def on_ready(self, condition: StreamCondition = StreamCondition.READABLE) -> bool:
        """Read everything that is immediately available.

        Args:
            condition: Readiness condition reported for the descriptor

        Returns:
            True if more events are expected, False if the stream is finished
        """
        if self._closed:
            return False

        count = self._drain()

        if count:
            logger.debug(f"Read {count} bytes from {self.name} (total {self._bytes_read})")

        if condition & _TERMINAL_CONDITIONS:
            self._closed = True

        return not self._closed

    def flush(self) -> int:
        """Final drain after the child has exited.

        Returns:
            Number of bytes read by this flush
        """
        before = self._bytes_read
        self.on_ready(StreamCondition.HANGUP)
        return self._bytes_read - before

    def _drain(self) -> int:
        """Read until the pipe would block, reaches EOF or fails."""
        count = 0
        while True:
            try:
                chunk = os.read(self.fd, self.chunk_size)
            except BlockingIOError:
                # Nothing more right now
                break
            except InterruptedError:
                continue
            except OSError as e:
                self._closed = True
                self.errors.push(ErrorRecord(
                    category=ErrorCategory.STREAM,
                    level=ErrorLevel.ERROR,
                    message=f"Error reading {self.name}: {e.strerror or e}",
                    code=e.errno if e.errno is not None else errno.EIO,
                ))
                break

            if not chunk:
                self._closed = True
                break

            self.buffer.append(chunk)
            count += len(chunk)

        self._bytes_read += count
        return count
