"""Sequential sink for pipe-backed downloads.

This module provides:
- SequentialSink: write_at() adapter that only accepts contiguous offsets
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from cloudtree.core.types import OutOfOrderWriteError

if TYPE_CHECKING:
    from typing import BinaryIO

    from cloudtree.stream.pipe import PipeWriter


class SequentialSink:
    """Random-access write contract degraded to sequential appends.

    A remote get may describe each block with an offset. When the
    destination is a pipe there is nowhere to seek to, so every write must
    start exactly where the previous one ended; anything else raises
    OutOfOrderWriteError instead of silently corrupting the stream.

    Usage:
        sink = SequentialSink(pipe_writer)
        sink.write_at(b"abc", 0)
        sink.write_at(b"def", 3)
    """

    def __init__(self, writer: BinaryIO | PipeWriter) -> None:
        """Initialize the sink.

        Args:
            writer: Destination stream, written strictly in order.
        """
        self._writer = writer
        self._position = 0
        self._lock = threading.Lock()

    @property
    def position(self) -> int:
        """Offset the next write must start at."""
        return self._position

    def write_at(self, data: bytes, offset: int) -> int:
        """Write data that belongs at offset.

        Raises:
            OutOfOrderWriteError: If offset is not the current position.
        """
        with self._lock:
            if offset != self._position:
                raise OutOfOrderWriteError(self._position, offset)
            self._writer.write(data)
            self._position += len(data)
            return len(data)

    def write(self, data: bytes) -> int:
        """Append data at the current position."""
        with self._lock:
            self._writer.write(data)
            self._position += len(data)
            return len(data)
