"""Shared types for cloudtree.

This module provides:
- TransferError and its subclasses: Exception classes for every failure kind
- ArchiveEntry: One node of a directory tree travelling through the pipeline
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO

# Canonical separator inside archive entry names
ARCHIVE_SEPARATOR = "/"


class TransferError(Exception):
    """Base exception for transfer errors."""


class UnsupportedCodecError(TransferError, ValueError):
    """The destination key does not end in a known codec tag."""


class UnexpectedPathError(TransferError):
    """A walked node collapsed to an empty archive name."""


class ArchivePathError(TransferError):
    """An archive entry name cannot be mapped to a local path."""


class ArchiveError(TransferError):
    """The archive stream is malformed."""


class CodecError(TransferError):
    """The compressed stream is corrupt or truncated."""


class RemoteTransferError(TransferError):
    """The remote store rejected or failed an operation."""


class ObjectNotFoundError(RemoteTransferError):
    """Raised when an object is not found in the remote store."""


class TransferCancelledError(TransferError):
    """Raised when a transfer is cancelled."""


class OutOfOrderWriteError(TransferError):
    """A sequential sink received a write at an unexpected offset.

    Attributes:
        expected: Offset the sink was waiting for.
        actual: Offset of the rejected write.
    """

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Out-of-order write: expected offset {expected}, got {actual}")


@dataclass
class ArchiveEntry:
    """A file or directory travelling through the pipeline.

    Attributes:
        name: Slash-separated path with a single leading separator.
        is_dir: Whether the entry is a directory.
        mode: Permission bits.
        size: Content length in bytes (0 for directories).
        mtime: Modification time as a POSIX timestamp.
        content: Single-pass content stream, None for directories.
    """

    name: str
    is_dir: bool
    mode: int
    size: int = 0
    mtime: float = 0.0
    content: BinaryIO | None = None

    def __post_init__(self) -> None:
        """Validate the entry name."""
        if not self.name or not self.name.startswith(ARCHIVE_SEPARATOR):
            raise ArchivePathError(f"incorrect path: {self.name!r}")

    def read(self, size: int = -1) -> bytes:
        """Read from the content stream (directories read as empty)."""
        if self.content is None:
            return b""
        return self.content.read(size)

    def close(self) -> None:
        """Release the content stream."""
        if self.content is not None:
            self.content.close()
