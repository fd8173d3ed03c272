"""Transfer orchestration for streamed directory archives.

This module provides:
- TransferSession: Upload/download directories and single objects to a bucket
- TransferHandle: Cancellable handle to a transfer running in the background
- TransferResult: Summary of a finished transfer

Upload pipeline (three threads):

    walker -> tar writer -> pipe A -> compressor -> pipe B -> endpoint.put
    '----- archive stage -----'   '- codec stage -'         (calling thread)

Download pipeline:

    endpoint.get -> pipe B -> decompressor -> pipe A -> tar reader -> extractor
    (calling thread)        '- codec stage -'        '--- extract stage ---'

Every stage closes the pipe ends it owns when it exits, with its error if it
failed, so a failure anywhere unblocks every other stage. The error reported
to the caller is the earliest failure, or TransferCancelledError when the
transfer was cancelled.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cloudtree.archive.extract import Extractor
from cloudtree.archive.tar import TarArchiveReader, TarArchiveWriter
from cloudtree.archive.walker import walk_directory
from cloudtree.core.cancel import CancelScope
from cloudtree.core.config import DEFAULT_COPY_BUFFER_SIZE
from cloudtree.core.types import TransferCancelledError, TransferError
from cloudtree.storage import create_endpoint
from cloudtree.stream.codecs import codec_for_key
from cloudtree.stream.pipe import connect, drain
from cloudtree.stream.sink import SequentialSink
from cloudtree.transfer.stages import Stage, StageResult, first_failure, run_inline

if TYPE_CHECKING:
    import os
    from collections.abc import Callable, Iterator

    from cloudtree.archive.extract import ExtractStats
    from cloudtree.core.config import StoreConfig
    from cloudtree.storage import Credentials, TransferEndpoint
    from cloudtree.stream.codecs import CompressionCodec
    from cloudtree.stream.pipe import PipeReader, PipeWriter

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while resolving credentials
CREDENTIALS_POLL_INTERVAL = 0.1


def _noop() -> None:
    pass


@dataclass
class TransferResult:
    """Summary of a finished transfer.

    Attributes:
        key: Object key.
        direction: "upload" or "download".
        entries: Archive entries written or extracted (0 for single objects).
        bytes_transferred: Uncompressed bytes that went through the pipeline.
        elapsed_time: Time taken in seconds.
    """

    key: str
    direction: str
    entries: int = 0
    bytes_transferred: int = 0
    elapsed_time: float = 0.0


class TransferHandle:
    """Handle to a transfer running on a background thread.

    Each handle owns its own cancellation scope, so cancelling one transfer
    never affects another.

    Usage:
        handle = session.start_upload_directory("photos", "photos.tar.zstd")
        ...
        handle.cancel()
        handle.result()  # raises TransferCancelledError
    """

    def __init__(self, name: str, scope: CancelScope) -> None:
        self.name = name
        self._scope = scope
        self._done = threading.Event()
        self._value: TransferResult | None = None
        self._error: BaseException | None = None

    @property
    def done(self) -> bool:
        """Check if the transfer has finished."""
        return self._done.is_set()

    def cancel(self) -> bool:
        """Cancel the transfer.

        Returns:
            True if this call requested cancellation, False if it already was.
        """
        return self._scope.cancel()

    def result(self, timeout: float | None = None) -> TransferResult:
        """Wait for the transfer and return its result.

        Raises:
            TimeoutError: If the transfer is still running after timeout.
            TransferError: Or any other error the transfer failed with.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"{self.name} still running")
        if self._error is not None:
            raise self._error
        if self._value is None:
            raise RuntimeError(f"{self.name} finished without a result")
        return self._value

    def _finish(self, value: TransferResult | None, error: BaseException | None) -> None:
        self._value = value
        self._error = error
        self._done.set()


def _close_writer(writer: PipeWriter, error: BaseException | None) -> None:
    if error is None:
        writer.close()
    else:
        writer.close_with_error(error)


def _close_on_cancel(scope: CancelScope, *ends: PipeReader | PipeWriter) -> None:
    for end in ends:
        scope.on_cancel(lambda end=end: end.close_with_error(scope.error()))


class TransferSession:
    """Streams directory trees and single objects to and from one bucket.

    The session keeps a single cancellation slot: cancel() aborts whichever
    transfer started most recently and is still running. Transfers started
    with start_upload_directory()/start_download_directory() can also be
    cancelled individually through their TransferHandle.

    Usage:
        session = TransferSession.from_config(StoreConfig.from_environment())
        session.upload_directory("/data/photos", "backups/photos.zstd")
        session.download_directory("backups/photos.zstd", "/restore/photos")
    """

    def __init__(
        self,
        endpoint: TransferEndpoint,
        bucket: str,
        buffer_size: int = DEFAULT_COPY_BUFFER_SIZE,
    ) -> None:
        """Initialize the session.

        Args:
            endpoint: Remote transfer endpoint.
            bucket: Bucket (namespace) for every object of this session.
            buffer_size: Chunk size for copies between stages.
        """
        self._endpoint = endpoint
        self._bucket = bucket
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._cancel: Callable[[], Any] = _noop

    @classmethod
    def from_config(cls, config: StoreConfig) -> TransferSession:
        """Create a session and its endpoint from configuration.

        Raises:
            ValueError: If S3 storage is configured without a bucket.
        """
        if config.storage_type == "s3" and not config.bucket:
            raise ValueError("S3 storage requires a bucket (AWS_S3_BUCKET)")
        return cls(create_endpoint(config), config.bucket, config.copy_buffer_size)

    @property
    def bucket(self) -> str:
        """Return the bucket name."""
        return self._bucket

    def get_bucket(self) -> str:
        """Return the bucket name."""
        return self._bucket

    @property
    def endpoint(self) -> TransferEndpoint:
        """Return the remote transfer endpoint."""
        return self._endpoint

    def cancel(self) -> None:
        """Cancel the transfer currently in flight, if any.

        Safe to call from any thread, at any time, any number of times.
        """
        with self._lock:
            cancel = self._cancel
            self._cancel = _noop
        cancel()

    @contextmanager
    def _cancellation_slot(self, scope: CancelScope) -> Iterator[CancelScope]:
        with self._lock:
            self._cancel = scope.cancel
        try:
            yield scope
        finally:
            with self._lock:
                if self._cancel == scope.cancel:
                    self._cancel = _noop

    # Credentials

    def get_credentials(self) -> Credentials | None:
        """Resolve the endpoint's credentials.

        Resolution runs on its own stage so that cancel() returns control to
        the caller immediately even if the credential provider is slow.

        Raises:
            TransferCancelledError: If cancelled before resolution finished.
        """
        scope = CancelScope("credentials")
        with self._cancellation_slot(scope):
            stage = Stage(
                "credentials", lambda: self._endpoint.resolve_credentials(scope), scope=scope
            )
            stage.start()
            while True:
                try:
                    result = stage.wait(timeout=CREDENTIALS_POLL_INTERVAL)
                    break
                except TimeoutError:
                    scope.raise_if_cancelled()

        scope.raise_if_cancelled()
        if not result.success:
            raise result.error or TransferError("credential resolution failed")
        credentials: Credentials | None = result.result
        return credentials

    # Single objects

    def upload_file(self, local_file: str | os.PathLike[str], key: str) -> TransferResult:
        """Upload one local file as-is."""
        local_path = Path(local_file)
        scope = CancelScope(f"upload {key}")
        start_time = time.monotonic()

        with self._cancellation_slot(scope), open(local_path, "rb") as source:
            logger.info(f"Uploading {local_path} to {self._bucket}/{key}")
            try:
                self._endpoint.put(self._bucket, key, source, scope)
            except Exception as e:
                if scope.cancelled and not isinstance(e, TransferCancelledError):
                    raise scope.error() from e
                raise

        return TransferResult(
            key=key,
            direction="upload",
            bytes_transferred=local_path.stat().st_size,
            elapsed_time=time.monotonic() - start_time,
        )

    def download_file(self, key: str, local_file: str | os.PathLike[str]) -> TransferResult:
        """Download one object into a local file, creating or truncating it."""
        local_path = Path(local_file)
        scope = CancelScope(f"download {key}")
        start_time = time.monotonic()

        with self._cancellation_slot(scope), open(local_path, "wb") as destination:
            logger.info(f"Downloading {self._bucket}/{key} to {local_path}")
            sink = SequentialSink(destination)
            try:
                self._endpoint.get(self._bucket, key, sink, scope)
            except Exception as e:
                if scope.cancelled and not isinstance(e, TransferCancelledError):
                    raise scope.error() from e
                raise

        return TransferResult(
            key=key,
            direction="download",
            bytes_transferred=sink.position,
            elapsed_time=time.monotonic() - start_time,
        )

    # Directories

    def upload_directory(
        self,
        local_directory: str | os.PathLike[str],
        key: str,
        strip_prefix: str | None = None,
    ) -> TransferResult:
        """Archive, compress and upload a directory tree.

        The codec is chosen from the key suffix (".xz" or ".zstd").

        Args:
            local_directory: Directory to upload.
            key: Destination object key.
            strip_prefix: Prefix removed from local paths to form entry names.
                Defaults to the parent of local_directory.

        Raises:
            UnsupportedCodecError: Before any I/O, if the key suffix is unknown.
            TransferCancelledError: If the transfer was cancelled.
            TransferError, OSError: The first failure of any stage.
        """
        codec = codec_for_key(key)
        scope = CancelScope(f"upload {key}")
        with self._cancellation_slot(scope):
            return self._upload_directory(Path(local_directory), key, strip_prefix, codec, scope)

    def download_directory(
        self, key: str, local_root: str | os.PathLike[str]
    ) -> TransferResult:
        """Download, decompress and extract an archived directory tree.

        The archived root directory is replaced by local_root.

        Raises:
            UnsupportedCodecError: Before any I/O, if the key suffix is unknown.
            TransferCancelledError: If the transfer was cancelled.
            TransferError, OSError: The first failure of any stage.
        """
        codec = codec_for_key(key)
        scope = CancelScope(f"download {key}")
        with self._cancellation_slot(scope):
            return self._download_directory(key, Path(local_root), codec, scope)

    def start_upload_directory(
        self,
        local_directory: str | os.PathLike[str],
        key: str,
        strip_prefix: str | None = None,
    ) -> TransferHandle:
        """Start upload_directory() on a background thread.

        Raises:
            UnsupportedCodecError: Immediately, if the key suffix is unknown.
        """
        codec = codec_for_key(key)
        scope = CancelScope(f"upload {key}")
        return self._start(
            scope,
            lambda: self._upload_directory(Path(local_directory), key, strip_prefix, codec, scope),
        )

    def start_download_directory(
        self, key: str, local_root: str | os.PathLike[str]
    ) -> TransferHandle:
        """Start download_directory() on a background thread.

        Raises:
            UnsupportedCodecError: Immediately, if the key suffix is unknown.
        """
        codec = codec_for_key(key)
        scope = CancelScope(f"download {key}")
        return self._start(
            scope, lambda: self._download_directory(key, Path(local_root), codec, scope)
        )

    def _start(self, scope: CancelScope, body: Callable[[], TransferResult]) -> TransferHandle:
        handle = TransferHandle(scope.name, scope)

        def run() -> None:
            try:
                with self._cancellation_slot(scope):
                    value = body()
            except Exception as e:
                handle._finish(None, e)
            else:
                handle._finish(value, None)

        threading.Thread(target=run, name=f"transfer-{scope.name}", daemon=True).start()
        return handle

    def _upload_directory(
        self,
        local_directory: Path,
        key: str,
        strip_prefix: str | None,
        codec: CompressionCodec,
        scope: CancelScope,
    ) -> TransferResult:
        logger.info(f"Uploading {local_directory} to {self._bucket}/{key}")
        start_time = time.monotonic()

        archive_reader, archive_writer = connect()
        upload_reader, upload_writer = connect()
        _close_on_cancel(scope, archive_reader, archive_writer, upload_reader, upload_writer)

        def write_archive() -> int:
            with TarArchiveWriter(archive_writer) as archive:
                for entry in walk_directory(local_directory, strip_prefix):
                    archive.write(entry)
            return archive.entries_written

        def compress() -> int:
            return codec.compress_stream(archive_reader, upload_writer, self._buffer_size)

        def close_compress_ends(error: BaseException | None) -> None:
            archive_reader.close()
            _close_writer(upload_writer, error)

        def put() -> None:
            self._endpoint.put(self._bucket, key, upload_reader, scope)

        stages = [
            Stage(
                "archive",
                write_archive,
                on_exit=lambda error: _close_writer(archive_writer, error),
                scope=scope,
            ),
            Stage("compress", compress, on_exit=close_compress_ends, scope=scope),
        ]
        results = self._run_pipeline(
            stages,
            # put may return without reading to the end; closing releases the codec
            lambda: run_inline("put", put, on_exit=lambda error: upload_reader.close(), scope=scope),
            scope,
        )
        self._raise_first_failure(results, scope, f"Upload of {local_directory}")

        archive_result, compress_result, _ = results
        elapsed = time.monotonic() - start_time
        logger.info(
            f"Uploaded {archive_result.result} entries ({compress_result.result} bytes) "
            f"to {self._bucket}/{key} in {elapsed:.2f}s"
        )
        return TransferResult(
            key=key,
            direction="upload",
            entries=archive_result.result,
            bytes_transferred=compress_result.result,
            elapsed_time=elapsed,
        )

    def _download_directory(
        self,
        key: str,
        local_root: Path,
        codec: CompressionCodec,
        scope: CancelScope,
    ) -> TransferResult:
        logger.info(f"Downloading {self._bucket}/{key} to {local_root}")
        start_time = time.monotonic()

        download_reader, download_writer = connect()
        archive_reader, archive_writer = connect()
        _close_on_cancel(scope, download_reader, download_writer, archive_reader, archive_writer)

        def decompress() -> int:
            return codec.decompress_stream(download_reader, archive_writer, self._buffer_size)

        def close_decompress_ends(error: BaseException | None) -> None:
            download_reader.close()
            _close_writer(archive_writer, error)

        def extract() -> ExtractStats:
            reader = TarArchiveReader(archive_reader)
            try:
                stats = Extractor(local_root, self._buffer_size).extract(reader)
            finally:
                reader.close()
            # Record padding after the end-of-archive marker
            drain(archive_reader, self._buffer_size)
            return stats

        def get() -> None:
            self._endpoint.get(self._bucket, key, SequentialSink(download_writer), scope)

        stages = [
            Stage("decompress", decompress, on_exit=close_decompress_ends, scope=scope),
            Stage(
                "extract",
                extract,
                on_exit=lambda error: archive_reader.close(),
                scope=scope,
            ),
        ]
        results = self._run_pipeline(
            stages,
            lambda: run_inline(
                "get",
                get,
                on_exit=lambda error: _close_writer(download_writer, error),
                scope=scope,
            ),
            scope,
        )
        self._raise_first_failure(results, scope, f"Download of {key}")

        _, extract_result, _ = results
        stats: ExtractStats = extract_result.result
        elapsed = time.monotonic() - start_time
        logger.info(f"Downloaded {self._bucket}/{key} to {local_root} in {elapsed:.2f}s")
        return TransferResult(
            key=key,
            direction="download",
            entries=stats.files + stats.directories,
            bytes_transferred=stats.bytes_written,
            elapsed_time=elapsed,
        )

    @staticmethod
    def _run_pipeline(
        stages: list[Stage],
        inline: Callable[[], StageResult],
        scope: CancelScope,
    ) -> list[StageResult]:
        """Run the background stages and the inline step, then collect every outcome.

        Returns:
            Outcomes of the background stages in order, then the inline one.
        """
        for stage in stages:
            stage.start()
        try:
            inline_result = inline()
            return [stage.wait() for stage in stages] + [inline_result]
        except BaseException:
            # KeyboardInterrupt on the calling thread, in the inline step or a join
            scope.cancel()
            for stage in stages:
                stage.wait()
            raise

    @staticmethod
    def _raise_first_failure(
        results: list[StageResult], scope: CancelScope, description: str
    ) -> None:
        failure = first_failure(results)
        if failure is None:
            return
        if failure.error is None:
            raise TransferError(f"{description} failed in {failure.name} stage")

        if scope.cancelled:
            logger.info(f"{description} cancelled")
            if isinstance(failure.error, TransferCancelledError):
                raise failure.error
            raise scope.error() from failure.error

        logger.error(f"{description} failed in {failure.name} stage: {failure.error}")
        raise failure.error
