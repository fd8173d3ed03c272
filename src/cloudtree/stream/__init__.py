"""Byte streams: in-memory pipes, sequential sinks and compression codecs."""

from cloudtree.stream.codecs import (
    CompressionCodec,
    XzCodec,
    ZstdCodec,
    codec_for_key,
    register_codec,
    supported_tags,
)
from cloudtree.stream.pipe import (
    DEFAULT_BUFFER_SIZE,
    PipeReader,
    PipeWriter,
    connect,
    copy_stream,
    drain,
)
from cloudtree.stream.sink import SequentialSink

__all__ = [
    # Pipes
    "DEFAULT_BUFFER_SIZE",
    "PipeReader",
    "PipeWriter",
    "connect",
    "copy_stream",
    "drain",
    # Sinks
    "SequentialSink",
    # Codecs
    "CompressionCodec",
    "XzCodec",
    "ZstdCodec",
    "codec_for_key",
    "register_codec",
    "supported_tags",
]
