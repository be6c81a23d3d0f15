"""Encoding and decoding of RTMP chunk basic headers and chunk message headers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO

EXTENDED_TIMESTAMP_MARKER = 0xFFFFFF
MIN_CHUNK_STREAM_ID = 2
MAX_CHUNK_STREAM_ID = 65599


@dataclass
class ChunkBasicHeader:
    """The basic header of a chunk: its format and chunk stream id."""

    fmt: int = 0
    chunk_stream_id: int = 0


@dataclass
class ChunkMessageHeader:
    """The message header of a chunk; which fields are present depends on fmt."""

    timestamp: int = 0  # fmt 0
    timestamp_delta: int = 0  # fmt 1 and 2
    message_length: int = 0  # fmt 0 and 1
    message_type_id: int = 0  # fmt 0 and 1
    message_stream_id: int = 0  # fmt 0


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    parts = []
    remaining = size
    while remaining > 0:
        data = reader.read(remaining)
        if not data:
            raise EOFError(f"Expected {size} bytes, got {size - remaining}")
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def _read_extended(reader: BinaryIO, value: int) -> int:
    if value == EXTENDED_TIMESTAMP_MARKER:
        return int.from_bytes(_read_exact(reader, 4), "big")
    return value


def _split_extended(value: int) -> tuple[int, bytes]:
    if value >= EXTENDED_TIMESTAMP_MARKER:
        return EXTENDED_TIMESTAMP_MARKER, (value & 0xFFFFFFFF).to_bytes(4, "big")
    return value, b""


def _u24(value: int) -> bytes:
    return (value & 0xFFFFFF).to_bytes(3, "big")


def decode_chunk_basic_header(reader: BinaryIO) -> ChunkBasicHeader:
    """Read a basic header (one to three bytes) from ``reader``."""
    first = _read_exact(reader, 1)[0]
    fmt = (first & 0xC0) >> 6
    chunk_stream_id = first & 0x3F

    if chunk_stream_id == 0:
        chunk_stream_id = _read_exact(reader, 1)[0] + 64
    elif chunk_stream_id == 1:
        low, high = _read_exact(reader, 2)
        chunk_stream_id = high * 256 + low + 64

    return ChunkBasicHeader(fmt=fmt, chunk_stream_id=chunk_stream_id)


def encode_chunk_basic_header(writer: BinaryIO, header: ChunkBasicHeader) -> None:
    """Write ``header`` in its shortest form; raise ValueError for ids out of range."""
    head = (header.fmt & 0x03) << 6
    csid = header.chunk_stream_id

    if 2 <= csid <= 63:
        data = bytes([head | (csid & 0x3F)])
    elif 64 <= csid <= 319:
        data = bytes([head, csid - 64])
    elif 320 <= csid <= MAX_CHUNK_STREAM_ID:
        data = bytes([head | 1, (csid - 64) % 256, (csid - 64) // 256])
    else:
        raise ValueError(
            f"Chunk stream id is out of range: {csid} must be in range "
            f"[{MIN_CHUNK_STREAM_ID}, {MAX_CHUNK_STREAM_ID}]"
        )
    writer.write(data)


def decode_chunk_message_header(reader: BinaryIO, fmt: int) -> ChunkMessageHeader:
    """Read the message header that belongs to a chunk of format ``fmt``."""
    header = ChunkMessageHeader()

    if fmt == 0:
        buf = _read_exact(reader, 11)
        header.timestamp = int.from_bytes(buf[0:3], "big")
        header.message_length = int.from_bytes(buf[3:6], "big")
        header.message_type_id = buf[6]
        header.message_stream_id = int.from_bytes(buf[7:11], "little")
        header.timestamp = _read_extended(reader, header.timestamp)
    elif fmt == 1:
        buf = _read_exact(reader, 7)
        header.timestamp_delta = int.from_bytes(buf[0:3], "big")
        header.message_length = int.from_bytes(buf[3:6], "big")
        header.message_type_id = buf[6]
        header.timestamp_delta = _read_extended(reader, header.timestamp_delta)
    elif fmt == 2:
        buf = _read_exact(reader, 3)
        header.timestamp_delta = _read_extended(reader, int.from_bytes(buf, "big"))
    elif fmt != 3:
        raise ValueError(f"Unexpected fmt: {fmt}")

    return header


def encode_chunk_message_header(writer: BinaryIO, fmt: int, header: ChunkMessageHeader) -> None:
    """Write the fields of ``header`` that chunk format ``fmt`` carries."""
    if fmt == 0:
        timestamp, extended = _split_extended(header.timestamp)
        data = (
            _u24(timestamp)
            + _u24(header.message_length)
            + bytes([header.message_type_id & 0xFF])
            + (header.message_stream_id & 0xFFFFFFFF).to_bytes(4, "little")
            + extended
        )
    elif fmt == 1:
        delta, extended = _split_extended(header.timestamp_delta)
        data = (
            _u24(delta)
            + _u24(header.message_length)
            + bytes([header.message_type_id & 0xFF])
            + extended
        )
    elif fmt == 2:
        delta, extended = _split_extended(header.timestamp_delta)
        data = _u24(delta) + extended
    elif fmt == 3:
        return
    else:
        raise ValueError(f"Unexpected fmt: {fmt}")
    writer.write(data)