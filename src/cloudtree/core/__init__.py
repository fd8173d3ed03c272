"""Core module - Shared types, configuration and cancellation."""

from cloudtree.core.cancel import CancelScope
from cloudtree.core.config import StoreConfig
from cloudtree.core.types import (
    ARCHIVE_SEPARATOR,
    ArchiveEntry,
    ArchiveError,
    ArchivePathError,
    CodecError,
    ObjectNotFoundError,
    OutOfOrderWriteError,
    RemoteTransferError,
    TransferCancelledError,
    TransferError,
    UnexpectedPathError,
    UnsupportedCodecError,
)

__all__ = [
    # Cancellation
    "CancelScope",
    # Config
    "StoreConfig",
    # Types
    "ARCHIVE_SEPARATOR",
    "ArchiveEntry",
    # Errors
    "ArchiveError",
    "ArchivePathError",
    "CodecError",
    "ObjectNotFoundError",
    "OutOfOrderWriteError",
    "RemoteTransferError",
    "TransferCancelledError",
    "TransferError",
    "UnexpectedPathError",
    "UnsupportedCodecError",
]
