"""Configuration utilities for the cloudtree CLI.

This module provides shared configuration functions used across CLI commands.
Settings are resolved from, in increasing priority: the config file, the
environment, and command-line options.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from cloudtree.core.config import StoreConfig

# Settings persisted by `cloudtree configure`, with their environment variables
CONFIG_KEYS = {
    "bucket": "AWS_S3_BUCKET",
    "endpoint_url": "AWS_S3_ENDPOINT",
    "region": "AWS_S3_REGION",
    "storage_path": "CLOUDTREE_STORAGE_PATH",
}


def get_config_dir() -> Path:
    """Get the configuration directory for cloudtree.

    Returns:
        Path to ~/.cloudtree or equivalent.
    """
    return Path.home() / ".cloudtree"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def build_store_config(**options: str | None) -> StoreConfig:
    """Resolve the store configuration for a command.

    Args:
        **options: Command-line values keyed like CONFIG_KEYS; None means
            the option was not given.

    Returns:
        StoreConfig with credentials taken from the environment, if set.
    """
    file_values = load_config()
    values: dict[str, str] = {}
    for name, variable in CONFIG_KEYS.items():
        value = options.get(name) or os.environ.get(variable) or file_values.get(name)
        if value:
            values[name] = value

    return StoreConfig(
        access_key=os.environ.get("AWS_ACCESS_KEY_ID"),
        secret_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
        **values,
    )
