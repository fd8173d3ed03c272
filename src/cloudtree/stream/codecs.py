"""Compression codecs selected by a destination key's suffix.

This module provides:
- CompressionCodec: Abstract stream-to-stream codec
- XzCodec: LZMA/xz via the standard library
- ZstdCodec: Zstandard via the zstandard package
- key_extension: Extension of a key's final element
- codec_for_key: Resolve the codec for a key, failing fast on unknown tags
- register_codec: Add a codec to the registry
"""

from __future__ import annotations

import io
import logging
import lzma
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import zstandard

from cloudtree.core.types import CodecError, UnsupportedCodecError
from cloudtree.stream.pipe import DEFAULT_BUFFER_SIZE, copy_stream

if TYPE_CHECKING:
    from typing import BinaryIO

logger = logging.getLogger(__name__)

ZSTD_LEVEL = 3
XZ_PRESET = 6


class CompressionCodec(ABC):
    """Abstract stream-to-stream compression codec.

    A codec never closes the streams it is given; the pipeline stage that
    runs it owns both ends.
    """

    @property
    @abstractmethod
    def tag(self) -> str:
        """Return the key suffix selecting this codec (e.g. '.xz')."""
        ...

    @abstractmethod
    def compress_stream(
        self, source: BinaryIO, sink: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE
    ) -> int:
        """Compress source into sink until source ends.

        Returns:
            Number of uncompressed bytes consumed.
        """
        ...

    @abstractmethod
    def decompress_stream(
        self, source: BinaryIO, sink: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE
    ) -> int:
        """Decompress source into sink until the compressed stream ends.

        Returns:
            Number of uncompressed bytes produced.

        Raises:
            CodecError: If the compressed stream is corrupt or truncated.
        """
        ...

    def compress(self, data: bytes) -> bytes:
        """Compress a byte string."""
        sink = io.BytesIO()
        self.compress_stream(io.BytesIO(data), sink)
        return sink.getvalue()

    def decompress(self, data: bytes) -> bytes:
        """Decompress a byte string."""
        sink = io.BytesIO()
        self.decompress_stream(io.BytesIO(data), sink)
        return sink.getvalue()


class XzCodec(CompressionCodec):
    """xz container with LZMA2 compression."""

    def __init__(self, preset: int = XZ_PRESET) -> None:
        self._preset = preset

    @property
    def tag(self) -> str:
        return ".xz"

    def compress_stream(
        self, source: BinaryIO, sink: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE
    ) -> int:
        try:
            with lzma.LZMAFile(sink, mode="wb", preset=self._preset) as compressor:
                return copy_stream(source, compressor, buffer_size)
        except lzma.LZMAError as e:
            raise CodecError(f"xz compression failed: {e}") from e

    def decompress_stream(
        self, source: BinaryIO, sink: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE
    ) -> int:
        try:
            with lzma.LZMAFile(source, mode="rb") as decompressor:
                return copy_stream(decompressor, sink, buffer_size)
        except lzma.LZMAError as e:
            raise CodecError(f"corrupt xz stream: {e}") from e
        except EOFError as e:
            raise CodecError(f"truncated xz stream: {e}") from e


class ZstdCodec(CompressionCodec):
    """Zstandard frames."""

    def __init__(self, level: int = ZSTD_LEVEL) -> None:
        self._level = level

    @property
    def tag(self) -> str:
        return ".zstd"

    def compress_stream(
        self, source: BinaryIO, sink: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE
    ) -> int:
        compressor = zstandard.ZstdCompressor(level=self._level)
        try:
            with compressor.stream_writer(sink, closefd=False) as writer:
                return copy_stream(source, writer, buffer_size)
        except zstandard.ZstdError as e:
            raise CodecError(f"zstd compression failed: {e}") from e

    def decompress_stream(
        self, source: BinaryIO, sink: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE
    ) -> int:
        """Decode every frame in source, which must end on a frame boundary."""
        decompressor = zstandard.ZstdDecompressor()
        frame = decompressor.decompressobj()
        in_frame = False
        produced = 0
        try:
            while True:
                chunk = source.read(buffer_size)
                if not chunk:
                    break
                while chunk:
                    in_frame = True
                    data = frame.decompress(chunk)
                    if data:
                        sink.write(data)
                        produced += len(data)
                    if not frame.eof:
                        break
                    # Bytes past the end of a frame start the next one
                    chunk = frame.unused_data
                    frame = decompressor.decompressobj()
                    in_frame = False
        except zstandard.ZstdError as e:
            raise CodecError(f"corrupt zstd stream: {e}") from e

        if in_frame:
            raise CodecError("truncated zstd stream")
        return produced


_CODECS: dict[str, CompressionCodec] = {}


def register_codec(codec: CompressionCodec) -> None:
    """Register a codec under its (lower-cased) tag, replacing any previous one."""
    _CODECS[codec.tag.lower()] = codec


def supported_tags() -> list[str]:
    """Return the registered codec tags, sorted."""
    return sorted(_CODECS)


def key_extension(key: str) -> str:
    """Return the extension of a key's final element, including the dot."""
    name = key.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def codec_for_key(key: str) -> CompressionCodec:
    """Resolve the codec for a destination key.

    The extension is everything from the last dot of the final path element,
    matched case-insensitively, so "backup.tar.ZSTD" and ".zstd" select the
    zstd codec while "backup.tar.gz" is rejected.

    Raises:
        UnsupportedCodecError: If the extension is not a registered tag.
    """
    extension = key_extension(key).lower()
    codec = _CODECS.get(extension)
    if codec is None:
        raise UnsupportedCodecError(
            f"unknown extension for {key} (supported: {', '.join(supported_tags())})"
        )
    logger.debug(f"Using {codec.tag} codec for {key}")
    return codec


register_codec(XzCodec())
register_codec(ZstdCodec())
