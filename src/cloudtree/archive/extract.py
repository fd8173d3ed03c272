"""Extraction of archive entries under a local target root.

This module provides:
- Extractor: Materialize entries from an archive reader
- ExtractStats: Counters describing a finished extraction
- split_archive_name: Split an entry name into path segments
- exists: Filesystem existence check
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cloudtree.archive.tar import EndOfArchive
from cloudtree.core.types import ARCHIVE_SEPARATOR, ArchiveEntry, ArchivePathError
from cloudtree.stream.pipe import DEFAULT_BUFFER_SIZE, copy_stream

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class EntrySource(Protocol):
    """Anything producing entries until EndOfArchive."""

    def next_entry(self) -> ArchiveEntry: ...


@dataclass
class ExtractStats:
    """Result of an extraction.

    Attributes:
        directories: Directories created (pre-existing ones are not counted).
        files: Files written.
        bytes_written: Total file content written.
    """

    directories: int = 0
    files: int = 0
    bytes_written: int = 0


def exists(path: str | os.PathLike[str]) -> bool:
    """Check if a path exists.

    Only a "not found" error counts as absence; any other stat failure
    (e.g. permission denied) counts as present.
    """
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def split_archive_name(name: str) -> list[str]:
    """Split an entry name into its non-empty path segments.

    Consecutive separators never produce empty segments.

    Raises:
        ArchivePathError: If the name has no segments or contains '.' or '..'.
    """
    segments = [segment for segment in name.split(ARCHIVE_SEPARATOR) if segment]
    if not segments:
        raise ArchivePathError(f"incorrect path: {name!r}")
    if any(segment in (".", "..") for segment in segments):
        raise ArchivePathError(f"unsafe path: {name!r}")
    return segments


class Extractor:
    """Recreate archive entries under a target root.

    The first segment of every entry name (the directory that was archived)
    is replaced by the target root. Directories are created if missing;
    existing ones are left alone. Their recorded permission bits are applied
    once the archive has been fully extracted, deepest first, so that
    read-only directories can still receive their files.

    Extraction is not transactional: when an entry fails, the files already
    written stay in place.

    Usage:
        extractor = Extractor(Path("out"))
        stats = extractor.extract(TarArchiveReader(stream))
    """

    def __init__(
        self,
        target_root: str | os.PathLike[str],
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_entry: Callable[[ArchiveEntry, Path], None] | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            target_root: Directory that replaces the archived root.
            buffer_size: Chunk size for copying file content.
            on_entry: Optional callback invoked after each extracted entry.
        """
        self._target_root = Path(target_root)
        self._buffer_size = buffer_size
        self._on_entry = on_entry
        self._directory_modes: list[tuple[Path, int]] = []
        self.stats = ExtractStats()

    @property
    def target_root(self) -> Path:
        """Return the target root directory."""
        return self._target_root

    def local_path(self, name: str) -> Path:
        """Map an entry name to its local path."""
        segments = split_archive_name(name)
        return self._target_root.joinpath(*segments[1:])

    def extract(self, source: EntrySource) -> ExtractStats:
        """Extract every entry until the end of the archive.

        Returns:
            Extraction counters.

        Raises:
            ArchivePathError: If an entry name is unusable.
            OSError: If a directory or file cannot be created or written.
        """
        while True:
            try:
                entry = source.next_entry()
            except EndOfArchive:
                break
            self.extract_entry(entry)

        self.apply_directory_modes()
        logger.info(
            f"Extracted {self.stats.files} files, {self.stats.directories} directories "
            f"({self.stats.bytes_written} bytes) into {self._target_root}"
        )
        return self.stats

    def extract_entry(self, entry: ArchiveEntry) -> Path:
        """Materialize one entry, always releasing its content stream.

        Returns:
            The local path of the entry.
        """
        try:
            local_path = self.local_path(entry.name)
            if entry.is_dir:
                self._make_directory(local_path, entry.mode)
            else:
                self._write_file(local_path, entry)
        finally:
            entry.close()

        if self._on_entry:
            self._on_entry(entry, local_path)
        return local_path

    def apply_directory_modes(self) -> None:
        """Apply recorded permission bits to the directories created so far."""
        for path, mode in sorted(
            self._directory_modes, key=lambda item: len(item[0].parts), reverse=True
        ):
            os.chmod(path, mode)
        self._directory_modes.clear()

    def _make_directory(self, path: Path, mode: int) -> None:
        if exists(path):
            logger.debug(f"Directory already exists: {path}")
            return

        logger.info(f"Creating directory: {path}")
        os.mkdir(path, mode | stat.S_IRWXU)
        self._directory_modes.append((path, stat.S_IMODE(mode)))
        self.stats.directories += 1

    def _write_file(self, path: Path, entry: ArchiveEntry) -> None:
        logger.debug(f"{entry.name} -> {path}")
        with open(path, "wb") as out_file:
            written = copy_stream(entry, out_file, self._buffer_size)
        os.chmod(path, stat.S_IMODE(entry.mode))
        self.stats.files += 1
        self.stats.bytes_written += written
