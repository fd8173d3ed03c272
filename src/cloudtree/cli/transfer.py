"""Transfer commands for the cloudtree CLI.

Commands:
- upload-dir: Archive, compress and upload a directory
- download-dir: Download, decompress and extract a directory
- upload: Upload a single file as-is
- download: Download a single object as-is
- credentials: Show the credentials the store authenticates with
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from cloudtree.core.types import TransferCancelledError, TransferError

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloudtree.core.config import StoreConfig
    from cloudtree.transfer.session import TransferResult, TransferSession

# Exit status for an interrupted transfer (128 + SIGINT)
EXIT_CANCELLED = 130


def _open_session(ctx: click.Context) -> TransferSession:
    from cloudtree.transfer.session import TransferSession

    config: StoreConfig = ctx.obj["config"]
    try:
        return TransferSession.from_config(config)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _run(session: TransferSession, action: Callable[[], TransferResult]) -> TransferResult:
    """Run a transfer, turning failures and Ctrl-C into exit statuses."""
    try:
        return action()
    except KeyboardInterrupt:
        session.cancel()
        click.echo("Cancelled.", err=True)
        sys.exit(EXIT_CANCELLED)
    except TransferCancelledError as e:
        click.echo(f"Cancelled: {e}", err=True)
        sys.exit(EXIT_CANCELLED)
    except (TransferError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _format_size(size: int) -> str:
    value = float(size)
    if value < 1024:
        return f"{size} B"
    for unit in ("KB", "MB"):
        value /= 1024
        if value < 1024:
            return f"{value:.1f} {unit}"
    value /= 1024
    return f"{value:.1f} GB"


@click.command("upload-dir")
@click.argument(
    "local_directory", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.argument("key")
@click.option(
    "--strip-prefix",
    default=None,
    help="Prefix removed from local paths (default: the directory's parent).",
)
@click.pass_context
def upload_dir(
    ctx: click.Context, local_directory: Path, key: str, strip_prefix: str | None
) -> None:
    """Archive LOCAL_DIRECTORY and upload it as KEY.

    The key must end in .xz or .zstd, which selects the compression.
    """
    session = _open_session(ctx)
    result = _run(session, lambda: session.upload_directory(local_directory, key, strip_prefix))
    click.echo(
        f"Uploaded {result.entries} entries ({_format_size(result.bytes_transferred)}) "
        f"to {session.bucket}/{key} in {result.elapsed_time:.2f}s"
    )


@click.command("download-dir")
@click.argument("key")
@click.argument("local_root", type=click.Path(file_okay=False, path_type=Path))
@click.pass_context
def download_dir(ctx: click.Context, key: str, local_root: Path) -> None:
    """Download KEY and extract it into LOCAL_ROOT.

    The archived directory itself is replaced by LOCAL_ROOT, which is
    created if missing. Existing directories are reused and existing
    files are overwritten.
    """
    session = _open_session(ctx)
    result = _run(session, lambda: session.download_directory(key, local_root))
    click.echo(
        f"Extracted {result.entries} entries ({_format_size(result.bytes_transferred)}) "
        f"into {local_root} in {result.elapsed_time:.2f}s"
    )


@click.command()
@click.argument("local_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("key")
@click.pass_context
def upload(ctx: click.Context, local_file: Path, key: str) -> None:
    """Upload LOCAL_FILE as KEY without archiving or compression."""
    session = _open_session(ctx)
    result = _run(session, lambda: session.upload_file(local_file, key))
    click.echo(f"Uploaded {_format_size(result.bytes_transferred)} to {session.bucket}/{key}")


@click.command()
@click.argument("key")
@click.argument("local_file", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def download(ctx: click.Context, key: str, local_file: Path) -> None:
    """Download KEY into LOCAL_FILE without decompression."""
    session = _open_session(ctx)
    result = _run(session, lambda: session.download_file(key, local_file))
    click.echo(f"Downloaded {_format_size(result.bytes_transferred)} to {local_file}")


@click.command()
@click.pass_context
def credentials(ctx: click.Context) -> None:
    """Show the credentials the store authenticates with."""
    session = _open_session(ctx)
    click.echo(f"Store: {session.endpoint.location}")
    try:
        resolved = session.get_credentials()
    except KeyboardInterrupt:
        session.cancel()
        sys.exit(EXIT_CANCELLED)
    except TransferError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if resolved is None:
        click.echo("Credentials: none required")
        return
    click.echo(f"Access key: {resolved.masked_access_key}")
    if resolved.method:
        click.echo(f"Source: {resolved.method}")
