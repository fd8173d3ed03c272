"""Tests for TransferSession: directory round trips, failures and cancellation."""

from __future__ import annotations

import io
import os
import stat
import threading
import time
from pathlib import Path
from typing import BinaryIO

import pytest

from cloudtree.archive.tar import TarArchiveWriter
from cloudtree.core.cancel import CancelScope
from cloudtree.core.config import StoreConfig
from cloudtree.core.types import (
    ArchiveEntry,
    ArchiveError,
    CodecError,
    ObjectNotFoundError,
    TransferCancelledError,
    UnsupportedCodecError,
)
from cloudtree.storage import Credentials, LocalFSEndpoint
from cloudtree.stream.codecs import ZstdCodec
from cloudtree.stream.sink import SequentialSink
from cloudtree.transfer.session import TransferSession
from cloudtree.transfer.stages import Stage, StageResult


class StallingEndpoint(LocalFSEndpoint):
    """Local endpoint whose put/get stall until the transfer is cancelled."""

    def __init__(self, base_path: Path) -> None:
        super().__init__(base_path)
        self.started = threading.Event()

    def put(self, bucket: str, key: str, source: BinaryIO, scope: CancelScope) -> None:
        self.started.set()
        scope.wait(timeout=5)
        source.read(16)

    def get(self, bucket: str, key: str, sink: SequentialSink, scope: CancelScope) -> None:
        self.started.set()
        scope.wait(timeout=5)
        sink.write_at(b"late", 0)

    def resolve_credentials(self, scope: CancelScope) -> Credentials | None:
        self.started.set()
        scope.wait(timeout=5)
        return Credentials(access_key="AKIASLOW", secret_key="secret")


def _cancel_when_started(session: TransferSession, endpoint: StallingEndpoint) -> threading.Thread:
    def cancel() -> None:
        endpoint.started.wait(timeout=5)
        session.cancel()

    thread = threading.Thread(target=cancel, daemon=True)
    thread.start()
    return thread


class InterruptedReader:
    """Stream wrapper raising KeyboardInterrupt on a given read call."""

    def __init__(self, source: BinaryIO, interrupt_on: int) -> None:
        self._source = source
        self.interrupt_on = interrupt_on
        self.reads = 0

    def read(self, size: int = -1) -> bytes:
        self.reads += 1
        if self.reads == self.interrupt_on:
            raise KeyboardInterrupt
        return self._source.read(size)


class RecordingEndpoint(LocalFSEndpoint):
    """Local endpoint remembering the scope of the last put, optionally interrupting it."""

    def __init__(self, base_path: Path, interrupt_on: int | None = None) -> None:
        super().__init__(base_path)
        self.scope: CancelScope | None = None
        self.interrupt_on = interrupt_on

    def put(self, bucket: str, key: str, source: BinaryIO, scope: CancelScope) -> None:
        self.scope = scope
        if self.interrupt_on is not None:
            source = InterruptedReader(source, self.interrupt_on)
        super().put(bucket, key, source, scope)


def _join_stage_threads() -> list[threading.Thread]:
    """Join pipeline stage threads, returning those still alive."""
    stages = [t for t in threading.enumerate() if t.name.startswith("stage-")]
    for thread in stages:
        thread.join(timeout=5)
    return [t for t in stages if t.is_alive()]


def _write_large_tree(root: Path) -> None:
    (root / "sub").mkdir(parents=True)
    for index in range(8):
        (root / f"blob{index}.bin").write_bytes(os.urandom(64 * 1024))
    (root / "sub" / "note.txt").write_text("nested")


class TestDirectoryRoundTrip:
    """Upload then download of directory trees."""

    def test_zstd_scenario(self, session: TransferSession, sample_tree: Path, tmp_path: Path) -> None:
        """root/a.txt and empty root/sub/ should come back under out/."""
        out = tmp_path / "out"

        uploaded = session.upload_directory(sample_tree, "backup.zstd")
        downloaded = session.download_directory("backup.zstd", out)

        assert (out / "a.txt").read_bytes() == b"hi"
        assert (out / "sub").is_dir()
        assert list((out / "sub").iterdir()) == []
        assert sorted(p.name for p in out.iterdir()) == ["a.txt", "sub"]
        assert uploaded.entries == 3
        assert uploaded.direction == "upload"
        assert downloaded.entries == 3
        assert downloaded.bytes_transferred == 2

    def test_object_stored(
        self, session: TransferSession, sample_tree: Path, store_path: Path
    ) -> None:
        """The compressed archive should be stored under bucket/key."""
        session.upload_directory(sample_tree, "nested/backup.xz")

        assert session.endpoint.exists("test-bucket", "nested/backup.xz")
        stored = store_path / "test-bucket" / "nested" / "backup.xz"
        assert stored.read_bytes()[:6] == b"\xfd7zXZ\x00"

    @pytest.mark.parametrize("key", ["tree.xz", "tree.zstd"])
    def test_preserves_structure_and_permissions(
        self, session: TransferSession, tmp_path: Path, key: str
    ) -> None:
        """Paths, kinds, permission bits and bytes should survive the round trip."""
        root = tmp_path / "data"
        (root / "docs" / "deep").mkdir(parents=True)
        (root / "empty").mkdir()
        payload = os.urandom(300_000)
        (root / "docs" / "blob.bin").write_bytes(payload)
        (root / "docs" / "deep" / "note.txt").write_text("nested")
        (root / "run.sh").write_text("#!/bin/sh\n")
        os.chmod(root / "run.sh", 0o750)
        os.chmod(root / "docs" / "deep", 0o700)
        out = tmp_path / "restored"

        session.upload_directory(root, key)
        session.download_directory(key, out)

        assert (out / "docs" / "blob.bin").read_bytes() == payload
        assert (out / "docs" / "deep" / "note.txt").read_text() == "nested"
        assert (out / "empty").is_dir()
        assert stat.S_IMODE(os.stat(out / "run.sh").st_mode) == 0o750
        assert stat.S_IMODE(os.stat(out / "docs" / "deep").st_mode) == 0o700

    def test_download_over_existing_tree(
        self, session: TransferSession, sample_tree: Path, tmp_path: Path
    ) -> None:
        """Downloading twice into the same root should succeed."""
        out = tmp_path / "out"
        session.upload_directory(sample_tree, "backup.zstd")

        session.download_directory("backup.zstd", out)
        session.download_directory("backup.zstd", out)

        assert (out / "a.txt").read_bytes() == b"hi"

    def test_current_directory(
        self,
        session: TransferSession,
        sample_tree: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Uploading "." should archive the working directory under its own name."""
        monkeypatch.chdir(sample_tree)
        out = tmp_path / "out"

        uploaded = session.upload_directory(".", "backup.zstd")
        session.download_directory("backup.zstd", out)

        assert uploaded.entries == 3
        assert (out / "a.txt").read_bytes() == b"hi"
        assert (out / "sub").is_dir()
        assert sorted(p.name for p in out.iterdir()) == ["a.txt", "sub"]

    def test_background_handles(
        self, session: TransferSession, sample_tree: Path, tmp_path: Path
    ) -> None:
        """start_* methods should run transfers in the background."""
        upload = session.start_upload_directory(sample_tree, "backup.zstd")
        assert upload.result(timeout=10).entries == 3
        assert upload.done

        download = session.start_download_directory("backup.zstd", tmp_path / "out")
        download.result(timeout=10)

        assert (tmp_path / "out" / "a.txt").read_bytes() == b"hi"


class TestFailures:
    """Failure reporting of directory transfers."""

    def test_unsupported_codec_upload(
        self, session: TransferSession, sample_tree: Path, store_path: Path
    ) -> None:
        """An unknown key suffix should fail before anything is written."""
        with pytest.raises(UnsupportedCodecError):
            session.upload_directory(sample_tree, "backup.tar.gz")

        assert not (store_path / "test-bucket").exists()

    def test_unsupported_codec_download(self, session: TransferSession, tmp_path: Path) -> None:
        """An unknown key suffix should fail before anything is created locally."""
        with pytest.raises(UnsupportedCodecError):
            session.download_directory("backup.tar.gz", tmp_path / "out")

        assert not (tmp_path / "out").exists()

    def test_unsupported_codec_background(self, session: TransferSession, sample_tree: Path) -> None:
        """start_* methods should reject unknown suffixes immediately."""
        with pytest.raises(UnsupportedCodecError):
            session.start_upload_directory(sample_tree, "backup.gz")

    def test_missing_object(self, session: TransferSession, tmp_path: Path) -> None:
        """A missing object should be reported as such, creating nothing."""
        with pytest.raises(ObjectNotFoundError):
            session.download_directory("missing.zstd", tmp_path / "out")

        assert not (tmp_path / "out").exists()

    def test_missing_local_directory(
        self, session: TransferSession, tmp_path: Path, store_path: Path
    ) -> None:
        """A walk failure should be reported and leave no object behind."""
        with pytest.raises(FileNotFoundError):
            session.upload_directory(tmp_path / "does-not-exist", "backup.zstd")

        assert not session.endpoint.exists("test-bucket", "backup.zstd")
        assert not (store_path / "test-bucket" / "backup.zstd.partial").exists()

    def test_extraction_failure(
        self, session: TransferSession, sample_tree: Path, tmp_path: Path
    ) -> None:
        """A local root that cannot be created should fail the download."""
        session.upload_directory(sample_tree, "backup.zstd")

        with pytest.raises(FileNotFoundError):
            session.download_directory("backup.zstd", tmp_path / "no" / "parent" / "out")

    def test_corrupt_object(self, session: TransferSession, tmp_path: Path) -> None:
        """A corrupt compressed object should raise CodecError."""
        session.endpoint.put(
            "test-bucket", "broken.zstd", io.BytesIO(b"not zstd at all" * 100), CancelScope()
        )

        with pytest.raises(CodecError):
            session.download_directory("broken.zstd", tmp_path / "out")

    @pytest.mark.parametrize("key", ["tree.xz", "tree.zstd"])
    def test_truncated_object(
        self, session: TransferSession, tmp_path: Path, store_path: Path, key: str
    ) -> None:
        """An object cut in half should fail the download instead of restoring a partial tree."""
        _write_large_tree(tmp_path / "data")
        session.upload_directory(tmp_path / "data", key)
        stored = store_path / "test-bucket" / key
        data = stored.read_bytes()
        stored.write_bytes(data[: len(data) // 2])

        with pytest.raises(CodecError, match="truncated"):
            session.download_directory(key, tmp_path / "out")

    def test_archive_without_end_marker(self, session: TransferSession, tmp_path: Path) -> None:
        """A complete compressed stream holding a cut-off archive should raise ArchiveError."""
        archive = io.BytesIO()
        with TarArchiveWriter(archive) as writer:
            writer.write(ArchiveEntry(name="/root", is_dir=True, mode=0o755))
            writer.write(
                ArchiveEntry(
                    name="/root/a.bin",
                    is_dir=False,
                    mode=0o644,
                    size=512,
                    content=io.BytesIO(b"x" * 512),
                )
            )
        # Directory header, file header and content; no trailer
        compressed = ZstdCodec().compress(archive.getvalue()[:1536])
        session.endpoint.put("test-bucket", "cut.zstd", io.BytesIO(compressed), CancelScope())

        with pytest.raises(ArchiveError, match="end-of-archive marker"):
            session.download_directory("cut.zstd", tmp_path / "out")


class TestCancellation:
    """Cancellation of in-flight transfers."""

    @pytest.fixture
    def endpoint(self, store_path: Path) -> StallingEndpoint:
        """Endpoint stalling until cancelled."""
        return StallingEndpoint(store_path)

    @pytest.fixture
    def stalling_session(self, endpoint: StallingEndpoint) -> TransferSession:
        """Session on the stalling endpoint."""
        return TransferSession(endpoint, "test-bucket")

    def test_cancel_upload(
        self,
        stalling_session: TransferSession,
        endpoint: StallingEndpoint,
        sample_tree: Path,
    ) -> None:
        """session.cancel() should abort a blocking upload promptly."""
        canceller = _cancel_when_started(stalling_session, endpoint)
        start = time.monotonic()

        with pytest.raises(TransferCancelledError):
            stalling_session.upload_directory(sample_tree, "backup.zstd")

        assert time.monotonic() - start < 4
        canceller.join(timeout=5)

    def test_cancel_download(
        self,
        stalling_session: TransferSession,
        endpoint: StallingEndpoint,
        tmp_path: Path,
    ) -> None:
        """session.cancel() should abort a blocking download promptly."""
        canceller = _cancel_when_started(stalling_session, endpoint)
        start = time.monotonic()

        with pytest.raises(TransferCancelledError):
            stalling_session.download_directory("backup.xz", tmp_path / "out")

        assert time.monotonic() - start < 4
        assert not (tmp_path / "out").exists()
        canceller.join(timeout=5)

    def test_cancel_handle(
        self,
        stalling_session: TransferSession,
        endpoint: StallingEndpoint,
        sample_tree: Path,
    ) -> None:
        """TransferHandle.cancel() should abort its own transfer."""
        handle = stalling_session.start_upload_directory(sample_tree, "backup.zstd")
        assert endpoint.started.wait(timeout=5)

        assert handle.cancel() is True

        with pytest.raises(TransferCancelledError):
            handle.result(timeout=4)
        assert handle.done

    def test_result_timeout(
        self,
        stalling_session: TransferSession,
        endpoint: StallingEndpoint,
        sample_tree: Path,
    ) -> None:
        """result() should time out while the transfer is running."""
        handle = stalling_session.start_upload_directory(sample_tree, "backup.zstd")
        endpoint.started.wait(timeout=5)

        with pytest.raises(TimeoutError):
            handle.result(timeout=0.05)

        handle.cancel()
        with pytest.raises(TransferCancelledError):
            handle.result(timeout=4)

    def test_cancel_credentials(
        self, stalling_session: TransferSession, endpoint: StallingEndpoint
    ) -> None:
        """session.cancel() should interrupt credential resolution."""
        _cancel_when_started(stalling_session, endpoint)

        with pytest.raises(TransferCancelledError):
            stalling_session.get_credentials()

    def test_keyboard_interrupt_during_put(self, store_path: Path, tmp_path: Path) -> None:
        """Ctrl-C in the calling thread should cancel the pipeline and leave no object."""
        _write_large_tree(tmp_path / "data")
        endpoint = RecordingEndpoint(store_path, interrupt_on=2)
        session = TransferSession(endpoint, "test-bucket")

        with pytest.raises(KeyboardInterrupt):
            session.upload_directory(tmp_path / "data", "backup.zstd")

        assert endpoint.scope is not None
        assert endpoint.scope.cancelled
        assert _join_stage_threads() == []
        assert not endpoint.exists("test-bucket", "backup.zstd")
        assert not (store_path / "test-bucket" / "backup.zstd.partial").exists()

        # The session stays usable
        endpoint.interrupt_on = None
        session.upload_directory(tmp_path / "data", "backup.zstd")
        assert endpoint.exists("test-bucket", "backup.zstd")

    def test_keyboard_interrupt_while_joining(
        self,
        store_path: Path,
        sample_tree: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Ctrl-C while waiting for the stages should still cancel and join them."""
        endpoint = RecordingEndpoint(store_path)
        session = TransferSession(endpoint, "test-bucket")
        original_wait = Stage.wait
        interrupted: list[str] = []

        def wait(self: Stage, timeout: float | None = None) -> StageResult:
            if not interrupted:
                interrupted.append(self.name)
                raise KeyboardInterrupt
            return original_wait(self, timeout)

        monkeypatch.setattr(Stage, "wait", wait)

        with pytest.raises(KeyboardInterrupt):
            session.upload_directory(sample_tree, "backup.zstd")

        assert interrupted == ["archive"]
        assert endpoint.scope is not None
        assert endpoint.scope.cancelled
        assert _join_stage_threads() == []

    def test_cancel_without_transfer(self, session: TransferSession, sample_tree: Path) -> None:
        """cancel() with nothing in flight should not affect later transfers."""
        session.cancel()
        session.upload_directory(sample_tree, "backup.zstd")
        session.cancel()

        assert session.endpoint.exists("test-bucket", "backup.zstd")


class TestSingleObjects:
    """Single-object transfers and session accessors."""

    def test_file_round_trip(self, session: TransferSession, tmp_path: Path) -> None:
        """upload_file() and download_file() should move bytes unchanged."""
        source = tmp_path / "report.pdf"
        source.write_bytes(b"%PDF-1.7 fake" * 1000)
        target = tmp_path / "copy.pdf"

        uploaded = session.upload_file(source, "docs/report.pdf")
        downloaded = session.download_file("docs/report.pdf", target)

        assert target.read_bytes() == source.read_bytes()
        assert uploaded.bytes_transferred == downloaded.bytes_transferred == 13_000

    def test_download_missing_file(self, session: TransferSession, tmp_path: Path) -> None:
        """download_file() of a missing object should raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            session.download_file("missing", tmp_path / "x")

    def test_bucket(self, session: TransferSession) -> None:
        """The bucket should be exposed."""
        assert session.bucket == "test-bucket"
        assert session.get_bucket() == "test-bucket"

    def test_local_credentials(self, session: TransferSession) -> None:
        """The local store needs no credentials."""
        assert session.get_credentials() is None


class TestFromConfig:
    """Tests for TransferSession.from_config()."""

    def test_local(self, tmp_path: Path) -> None:
        """A storage path should build a local session."""
        session = TransferSession.from_config(
            StoreConfig(bucket="b", storage_path=str(tmp_path / "store"))
        )
        assert isinstance(session.endpoint, LocalFSEndpoint)
        assert session.bucket == "b"

    def test_s3_requires_bucket(self) -> None:
        """S3 without a bucket should be rejected."""
        with pytest.raises(ValueError, match="requires a bucket"):
            TransferSession.from_config(StoreConfig())
