"""In-memory byte pipe connecting a producer thread and a consumer thread.

This module provides:
- connect: Create a connected (PipeReader, PipeWriter) pair
- PipeReader, PipeWriter: The two ends of a pipe
- copy_stream: Copy a readable stream into a writable one
- drain: Consume a readable stream to end-of-stream

The pipe holds no buffer of its own: a write hands its bytes to the reader
and blocks until the reader has taken all of them, so memory use between two
stages is bounded by the size of a single write.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from typing import BinaryIO

DEFAULT_BUFFER_SIZE = 64 * 1024


class _PipeState:
    """State shared by both ends of a pipe."""

    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.write_lock = threading.Lock()
        self.pending: memoryview | None = None
        self.writer_closed = False
        self.writer_error: BaseException | None = None
        self.reader_closed = False
        self.reader_error: BaseException | None = None
        self.bytes_transferred = 0


class PipeReader:
    """Read end of a pipe.

    read(n) blocks until the writer offers data, then returns up to n bytes.
    Returns b"" once the writer closed and everything was consumed, or raises
    the writer's error if it was closed with close_with_error().
    """

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    @property
    def closed(self) -> bool:
        """Check if this end was closed."""
        return self._state.reader_closed

    def readable(self) -> bool:
        return True

    def writable(self) -> bool:
        return False

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        """Return the number of bytes read so far."""
        return self._state.bytes_transferred

    def read(self, size: int | None = -1) -> bytes:
        """Read up to size bytes, or everything until end-of-stream if size < 0."""
        if size is None or size < 0:
            return self.readall()
        if size == 0:
            return b""

        state = self._state
        with state.cond:
            while True:
                if state.reader_closed:
                    raise state.reader_error or ValueError("read from closed pipe")
                if state.pending is not None:
                    break
                if state.writer_closed:
                    if state.writer_error is not None:
                        raise state.writer_error
                    return b""
                state.cond.wait()

            chunk = bytes(state.pending[:size])
            if len(chunk) < len(state.pending):
                state.pending = state.pending[len(chunk) :]
            else:
                state.pending = None
                state.cond.notify_all()
            state.bytes_transferred += len(chunk)
            return chunk

    def readall(self) -> bytes:
        """Read until end-of-stream."""
        parts = []
        while True:
            chunk = self.read(DEFAULT_BUFFER_SIZE)
            if not chunk:
                return b"".join(parts)
            parts.append(chunk)

    def readinto(self, buffer: Any) -> int:
        """Read into a pre-allocated writable buffer."""
        view = memoryview(buffer).cast("B")
        chunk = self.read(len(view))
        view[: len(chunk)] = chunk
        return len(chunk)

    def close(self) -> None:
        """Close the read end. Pending and future writes fail."""
        state = self._state
        with state.cond:
            state.reader_closed = True
            state.cond.notify_all()

    def close_with_error(self, error: BaseException) -> None:
        """Close the read end so that pending and future writes raise error."""
        state = self._state
        with state.cond:
            if not state.reader_closed:
                state.reader_error = error
            state.reader_closed = True
            state.cond.notify_all()

    def __enter__(self) -> PipeReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class PipeWriter:
    """Write end of a pipe.

    write(data) blocks until the reader has consumed all of data. Writing
    after the read end was closed raises BrokenPipeError (or the error the
    reader was closed with).
    """

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    @property
    def closed(self) -> bool:
        """Check if this end was closed."""
        return self._state.writer_closed

    def readable(self) -> bool:
        return False

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Hand data to the reader and wait until it was fully consumed."""
        view = memoryview(data).cast("B")
        if not len(view):
            return 0

        state = self._state
        with state.write_lock, state.cond:
            if state.writer_closed:
                raise state.writer_error or ValueError("write to closed pipe")
            if state.reader_closed:
                raise state.reader_error or BrokenPipeError("read end of pipe is closed")

            state.pending = view
            state.cond.notify_all()
            while (
                state.pending is not None
                and not state.reader_closed
                and not state.writer_closed
            ):
                state.cond.wait()

            if state.pending is not None:
                state.pending = None
                if state.reader_closed:
                    raise state.reader_error or BrokenPipeError("read end of pipe is closed")
                raise state.writer_error or ValueError("write to closed pipe")
            return len(view)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        """Close the write end. Reads return b"" once drained."""
        state = self._state
        with state.cond:
            state.writer_closed = True
            state.cond.notify_all()

    def close_with_error(self, error: BaseException) -> None:
        """Close the write end so that reads raise error once drained."""
        state = self._state
        with state.cond:
            if not state.writer_closed:
                state.writer_error = error
            state.writer_closed = True
            state.cond.notify_all()

    def __enter__(self) -> PipeWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def connect() -> tuple[PipeReader, PipeWriter]:
    """Create a connected pipe.

    Returns:
        (reader, writer) pair sharing one pipe.
    """
    state = _PipeState()
    return PipeReader(state), PipeWriter(state)


def copy_stream(
    source: BinaryIO | PipeReader,
    sink: BinaryIO | PipeWriter,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> int:
    """Copy source into sink until source reaches end-of-stream.

    Returns:
        Number of bytes copied.
    """
    total = 0
    while True:
        chunk = source.read(buffer_size)
        if not chunk:
            return total
        sink.write(chunk)
        total += len(chunk)


def drain(source: BinaryIO | PipeReader, buffer_size: int = DEFAULT_BUFFER_SIZE) -> int:
    """Read and discard source until end-of-stream.

    Returns:
        Number of bytes discarded.
    """
    total = 0
    while True:
        chunk = source.read(buffer_size)
        if not chunk:
            return total
        total += len(chunk)
