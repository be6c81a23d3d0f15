"""The plain RTMP handshake: C0/C1/C2 and S0/S1/S2 packets and both sides of the exchange."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

RTMP_VERSION = 3
VERSION = bytes(4)
RANDOM_SIZE = 1528


class HandshakeError(Exception):
    """Raised when the handshake with a peer fails."""


@dataclass
class HandshakeConfig:
    """Options of the handshake."""

    skip_handshake_verification: bool = False


@dataclass
class S1C1:
    """The C1 or S1 packet: time, version and random bytes."""

    time: int = 0
    version: bytes = VERSION
    random: bytes = field(default_factory=lambda: bytes(RANDOM_SIZE))

    def __post_init__(self) -> None:
        if len(self.version) != len(VERSION):
            raise ValueError(f"version must be {len(VERSION)} bytes")
        if len(self.random) != RANDOM_SIZE:
            raise ValueError(f"random must be {RANDOM_SIZE} bytes")


@dataclass
class S2C2:
    """The C2 or S2 packet: peer time, own time and the echoed random bytes."""

    time: int = 0
    time2: int = 0
    random: bytes = field(default_factory=lambda: bytes(RANDOM_SIZE))

    def __post_init__(self) -> None:
        if len(self.random) != RANDOM_SIZE:
            raise ValueError(f"random must be {RANDOM_SIZE} bytes")


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


def _now_millis() -> int:
    return (time.time_ns() // 1_000_000) & 0xFFFFFFFF


class Decoder:
    """Reads handshake packets from a binary reader."""

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader

    def decode_s0c0(self) -> int:
        return _read_exact(self._reader, 1)[0]

    def decode_s1c1(self) -> S1C1:
        timestamp = int.from_bytes(_read_exact(self._reader, 4), "big")
        version = _read_exact(self._reader, len(VERSION))
        random = _read_exact(self._reader, RANDOM_SIZE)
        return S1C1(time=timestamp, version=version, random=random)

    def decode_s2c2(self) -> S2C2:
        timestamp = int.from_bytes(_read_exact(self._reader, 4), "big")
        timestamp2 = int.from_bytes(_read_exact(self._reader, 4), "big")
        random = _read_exact(self._reader, RANDOM_SIZE)
        return S2C2(time=timestamp, time2=timestamp2, random=random)


class Encoder:
    """Writes handshake packets to a binary writer."""

    def __init__(self, writer: BinaryIO) -> None:
        self._writer = writer

    def encode_s0c0(self, version: int) -> None:
        self._writer.write(bytes([version & 0xFF]))

    def encode_s1c1(self, h: S1C1) -> None:
        self._writer.write((h.time & 0xFFFFFFFF).to_bytes(4, "big"))
        self._writer.write(h.version)
        self._writer.write(h.random)

    def encode_s2c2(self, h: S2C2) -> None:
        self._writer.write((h.time & 0xFFFFFFFF).to_bytes(4, "big"))
        self._writer.write((h.time2 & 0xFFFFFFFF).to_bytes(4, "big"))
        self._writer.write(h.random)


def handshake_with_client(
    reader: BinaryIO, writer: BinaryIO, config: Optional[HandshakeConfig] = None
) -> None:
    """Run the server side of the handshake against a connecting client."""
    config = config or HandshakeConfig()
    decoder = Decoder(reader)
    encoder = Encoder(writer)

    decoder.decode_s0c0()  # C0
    encoder.encode_s0c0(RTMP_VERSION)  # S0

    s1 = S1C1(time=_now_millis(), version=VERSION, random=os.urandom(RANDOM_SIZE))
    encoder.encode_s1c1(s1)

    c1 = decoder.decode_s1c1()

    s2 = S2C2(time=c1.time, time2=_now_millis(), random=c1.random)
    encoder.encode_s2c2(s2)

    c2 = decoder.decode_s2c2()

    if config.skip_handshake_verification:
        return
    if c2.random != s1.random:
        raise HandshakeError("Random echo is not matched")


def handshake_with_server(
    reader: BinaryIO, writer: BinaryIO, config: Optional[HandshakeConfig] = None
) -> None:
    """Run the client side of the handshake against a server."""
    config = config or HandshakeConfig()
    decoder = Decoder(reader)
    encoder = Encoder(writer)

    try:
        encoder.encode_s0c0(RTMP_VERSION)
    except OSError as exc:
        raise HandshakeError("Failed to encode c0") from exc

    c1 = S1C1(time=_now_millis(), version=VERSION, random=os.urandom(RANDOM_SIZE))
    try:
        encoder.encode_s1c1(c1)
    except OSError as exc:
        raise HandshakeError("Failed to encode c1") from exc

    try:
        decoder.decode_s0c0()
    except (OSError, EOFError) as exc:
        raise HandshakeError("Failed to decode s0") from exc

    try:
        s1 = decoder.decode_s1c1()
    except (OSError, EOFError) as exc:
        raise HandshakeError("Failed to decode s1") from exc

    try:
        s2 = decoder.decode_s2c2()
    except (OSError, EOFError) as exc:
        raise HandshakeError("Failed to decode s2") from exc

    c2 = S2C2(time=c1.time, time2=_now_millis(), random=s1.random)
    try:
        encoder.encode_s2c2(c2)
    except OSError as exc:
        raise HandshakeError("Failed to encode c2") from exc

    if config.skip_handshake_verification:
        return
    if s2.random != c1.random:
        raise HandshakeError("Random echo is not matched")