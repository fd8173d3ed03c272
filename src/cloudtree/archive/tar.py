"""Tar archive codec for streams that cannot seek.

This module provides:
- TarArchiveWriter: Serialize ArchiveEntry objects into a tar stream
- TarArchiveReader: Parse a tar stream back into ArchiveEntry objects
- EndOfArchive: Signal raised by TarArchiveReader.next_entry() after the last entry
"""

from __future__ import annotations

import logging
import tarfile
from typing import TYPE_CHECKING

from cloudtree.core.types import ARCHIVE_SEPARATOR, ArchiveEntry, ArchiveError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import BinaryIO

logger = logging.getLogger(__name__)


class EndOfArchive(Exception):
    """Raised when reading past the last entry of an archive.

    This is a completion signal, not a failure.
    """


class _MemberStream:
    """Content stream of a tar member that reports truncation as ArchiveError."""

    def __init__(self, name: str, fileobj: BinaryIO) -> None:
        self._name = name
        self._fileobj = fileobj

    def read(self, size: int = -1) -> bytes:
        try:
            return self._fileobj.read(size)
        except tarfile.TarError as e:
            raise ArchiveError(f"{self._name}: {e}") from e

    def close(self) -> None:
        self._fileobj.close()


class _TarInfo(tarfile.TarInfo):
    """TarInfo that records the header error ending a read on its TarFile."""

    @classmethod
    def fromtarfile(cls, tarfile_obj: tarfile.TarFile) -> tarfile.TarInfo:
        tarfile_obj.header_error = None
        try:
            return super().fromtarfile(tarfile_obj)
        except tarfile.HeaderError as e:
            tarfile_obj.header_error = e
            raise


class _StreamTarFile(tarfile.TarFile):
    """TarFile remembering why it stopped returning members.

    tarfile reports a missing or cut-off header past the first block as a
    normal end of archive; only an all-zero block (EOFHeaderError) really is.
    """

    tarinfo = _TarInfo
    header_error: tarfile.HeaderError | None = None


class TarArchiveWriter:
    """Write entries as a tar stream.

    Content is copied straight from each entry's stream into the sink in
    record-sized blocks; nothing is buffered beyond one record.

    Usage:
        with TarArchiveWriter(sink) as archive:
            for entry in walk_directory(root):
                archive.write(entry)
    """

    def __init__(self, sink: BinaryIO) -> None:
        """Initialize the writer.

        Args:
            sink: Destination stream. It is not closed by close().
        """
        self._tar = tarfile.open(fileobj=sink, mode="w|", format=tarfile.PAX_FORMAT)
        self.entries_written = 0

    def write(self, entry: ArchiveEntry) -> None:
        """Serialize one entry, streaming its content."""
        info = tarfile.TarInfo(entry.name)
        info.mode = entry.mode
        info.mtime = int(entry.mtime)
        if entry.is_dir:
            info.type = tarfile.DIRTYPE
            self._tar.addfile(info)
        else:
            info.type = tarfile.REGTYPE
            info.size = entry.size
            self._tar.addfile(info, entry.content)
        self.entries_written += 1
        logger.debug(f"Archived {entry.name}")

    def close(self) -> None:
        """Write the end-of-archive trailer."""
        self._tar.close()

    def __enter__(self) -> TarArchiveWriter:
        return self

    def __exit__(self, exc_type: object, *exc_info: object) -> None:
        # A trailer after a failure would make a truncated archive look complete
        if exc_type is None:
            self.close()


class TarArchiveReader:
    """Read entries from a tar stream, one at a time.

    Each entry must be consumed or closed before the next one is requested;
    the stream is sequential and cannot be rewound.

    Usage:
        reader = TarArchiveReader(source)
        while True:
            try:
                entry = reader.next_entry()
            except EndOfArchive:
                break
            ...
    """

    def __init__(self, source: BinaryIO) -> None:
        """Initialize the reader.

        Blocks until the first header has been read from source.

        Raises:
            ArchiveError: If source does not start with a tar header.
        """
        try:
            self._tar = _StreamTarFile.open(fileobj=source, mode="r|")
        except tarfile.TarError as e:
            raise ArchiveError(f"not a tar stream: {e}") from e

    def next_entry(self) -> ArchiveEntry:
        """Return the next directory or regular-file entry.

        Raises:
            EndOfArchive: After the last entry.
            ArchiveError: If the stream is malformed or ends without an
                end-of-archive marker.
        """
        while True:
            try:
                member = self._tar.next()
            except tarfile.TarError as e:
                raise ArchiveError(f"corrupt archive: {e}") from e
            if member is None:
                if not isinstance(self._tar.header_error, tarfile.EOFHeaderError):
                    raise ArchiveError(
                        f"archive ends without an end-of-archive marker: {self._tar.header_error}"
                    )
                raise EndOfArchive

            name = member.name
            if not name.startswith(ARCHIVE_SEPARATOR):
                name = ARCHIVE_SEPARATOR + name

            if member.isdir():
                return ArchiveEntry(
                    name=name, is_dir=True, mode=member.mode, mtime=member.mtime
                )
            if member.isreg():
                fileobj = self._tar.extractfile(member)
                return ArchiveEntry(
                    name=name,
                    is_dir=False,
                    mode=member.mode,
                    size=member.size,
                    mtime=member.mtime,
                    content=_MemberStream(name, fileobj),
                )
            logger.warning(f"Skipping unsupported archive member: {member.name}")

    def __iter__(self) -> Iterator[ArchiveEntry]:
        while True:
            try:
                yield self.next_entry()
            except EndOfArchive:
                return

    def close(self) -> None:
        self._tar.close()
