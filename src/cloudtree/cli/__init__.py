"""Command-line interface for cloudtree.

This module provides the main CLI entry point and assembles all commands.

Commands:
- upload-dir: Archive, compress and upload a directory
- download-dir: Download, decompress and extract a directory
- upload: Upload a single file
- download: Download a single object
- credentials: Show the resolved credentials
- configure: Persist store settings
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from cloudtree.cli.config import (
    CONFIG_KEYS,
    build_store_config,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from cloudtree.cli.transfer import credentials, download, download_dir, upload, upload_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.WARNING, log_path: Path | None = None) -> None:
    """Configure logging to output to stdout and, optionally, a file.

    Args:
        level: Level for the cloudtree logger.
        log_path: Path to the log file, if any.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for cloudtree
    root_logger = logging.getLogger("cloudtree")
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


@click.group()
@click.version_option(package_name="cloudtree")
@click.option("--bucket", default=None, help="Bucket name (env: AWS_S3_BUCKET).")
@click.option("--endpoint-url", default=None, help="S3 endpoint URL (env: AWS_S3_ENDPOINT).")
@click.option("--region", default=None, help="S3 region (env: AWS_S3_REGION).")
@click.option(
    "--storage-path",
    default=None,
    help="Use a local directory as the store (env: CLOUDTREE_STORAGE_PATH).",
)
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v, -vv).")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write logs to this file.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    bucket: str | None,
    endpoint_url: str | None,
    region: str | None,
    storage_path: str | None,
    verbose: int,
    log_file: Path | None,
) -> None:
    """cloudtree - Stream directory trees to and from object storage."""
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    setup_logging(level, log_file)

    ctx.ensure_object(dict)
    ctx.obj["options"] = {
        "bucket": bucket,
        "endpoint_url": endpoint_url,
        "region": region,
        "storage_path": storage_path,
    }
    ctx.obj["config"] = build_store_config(**ctx.obj["options"])


@click.command()
@click.pass_context
def configure(ctx: click.Context) -> None:
    """Save the given store options to the config file.

    Example: cloudtree --bucket backups --region eu-west-1 configure
    """
    options: dict[str, str | None] = ctx.obj["options"]
    config = load_config()
    changed = {name: value for name, value in options.items() if value}
    if not changed:
        click.echo(f"Config file: {get_config_file()}")
        for name in CONFIG_KEYS:
            click.echo(f"  {name}: {config.get(name, '(not set)')}")
        return

    config.update(changed)
    save_config(config)
    for name, value in changed.items():
        click.echo(f"Set {name} = {value}")
    click.echo(f"Saved to {get_config_file()}")


# Transfer commands
cli.add_command(upload_dir)
cli.add_command(download_dir)
cli.add_command(upload)
cli.add_command(download)
cli.add_command(credentials)

# Config commands
cli.add_command(configure)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    "setup_logging",
    # Config utilities
    "build_store_config",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
