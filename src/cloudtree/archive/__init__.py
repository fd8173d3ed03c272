"""Archive codec, directory walker and extractor."""

from cloudtree.archive.extract import (
    Extractor,
    ExtractStats,
    exists,
    split_archive_name,
)
from cloudtree.archive.tar import EndOfArchive, TarArchiveReader, TarArchiveWriter
from cloudtree.archive.walker import archive_name, walk_directory

__all__ = [
    # Tar codec
    "EndOfArchive",
    "TarArchiveReader",
    "TarArchiveWriter",
    # Walker
    "archive_name",
    "walk_directory",
    # Extractor
    "ExtractStats",
    "Extractor",
    "exists",
    "split_archive_name",
]
