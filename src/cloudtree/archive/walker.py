"""Directory walker producing archive entries.

This module provides:
- walk_directory: Lazily yield one ArchiveEntry per node of a directory tree
- archive_name: Rewrite a local path into an archive entry name
"""

from __future__ import annotations

import logging
import os
import stat
from typing import TYPE_CHECKING

from cloudtree.core.types import ARCHIVE_SEPARATOR, ArchiveEntry, UnexpectedPathError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


def archive_name(path: str, strip_prefix: str) -> str:
    """Rewrite a local path into an archive entry name.

    Args:
        path: Local path of the node.
        strip_prefix: Leading part of path to remove.

    Returns:
        Slash-separated name with exactly one leading separator.

    Raises:
        UnexpectedPathError: If nothing is left once the prefix is stripped.
    """
    name = path[len(strip_prefix) :] if path.startswith(strip_prefix) else path
    if not name:
        raise UnexpectedPathError(f"unexpected path: {path}")
    name = name.replace(os.sep, ARCHIVE_SEPARATOR)
    return ARCHIVE_SEPARATOR + name.lstrip(ARCHIVE_SEPARATOR)


def walk_directory(
    root: str | os.PathLike[str], strip_prefix: str | None = None
) -> Iterator[ArchiveEntry]:
    """Walk a directory tree in pre-order, siblings sorted by name.

    Regular files are yielded with an open handle that is closed as soon as
    the caller asks for the next entry. Symbolic links and special files are
    skipped. Any filesystem error stops the walk.

    Args:
        root: Directory to walk. It is yielded as the first entry.
        strip_prefix: Prefix removed from every path. Defaults to the parent of
            root, so every name starts with root's own name.

    Yields:
        ArchiveEntry objects.

    Raises:
        UnexpectedPathError: If a node's name collapses to the empty string,
            e.g. when strip_prefix is root itself.
        OSError: If a node cannot be listed, stat'ed or opened.
    """
    if strip_prefix is None:
        # Relative roots such as "." are named after the directory they resolve to
        root = os.path.abspath(os.fspath(root))
        strip_prefix = os.path.dirname(root)
    else:
        root = os.path.normpath(os.fspath(root))
    yield from _walk(root, os.lstat(root), strip_prefix)


def _walk(path: str, info: os.stat_result, strip_prefix: str) -> Iterator[ArchiveEntry]:
    name = archive_name(path, strip_prefix)

    if stat.S_ISDIR(info.st_mode):
        yield ArchiveEntry(
            name=name, is_dir=True, mode=stat.S_IMODE(info.st_mode), mtime=info.st_mtime
        )
        with os.scandir(path) as it:
            children = sorted(it, key=lambda child: child.name)
        for child in children:
            yield from _walk(child.path, child.stat(follow_symlinks=False), strip_prefix)

    elif stat.S_ISREG(info.st_mode):
        with open(path, "rb") as handle:
            yield ArchiveEntry(
                name=name,
                is_dir=False,
                mode=stat.S_IMODE(info.st_mode),
                size=info.st_size,
                mtime=info.st_mtime,
                content=handle,
            )

    else:
        logger.warning(f"Skipping special file: {path}")
