"""Shared fixtures for cloudtree tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from cloudtree.storage import LocalFSEndpoint
from cloudtree.transfer.session import TransferSession


@pytest.fixture
def sample_tree(tmp_path: Path) -> Path:
    """Create root/a.txt ("hi") and an empty root/sub/ directory."""
    root = tmp_path / "src" / "root"
    root.mkdir(parents=True)
    (root / "a.txt").write_bytes(b"hi")
    (root / "sub").mkdir()
    return root


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    """Base directory of the local object store."""
    return tmp_path / "store"


@pytest.fixture
def session(store_path: Path) -> TransferSession:
    """Create a TransferSession backed by the local filesystem."""
    return TransferSession(LocalFSEndpoint(store_path), "test-bucket")
