"""Per-connection stream control state: chunk size, window sizes and their limits."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

DEFAULT_CHUNK_SIZE = 128
MAX_CHUNK_SIZE = 0xFFFFFF

_MAX_INT32 = 0x7FFFFFFF
_MAX_UINT32 = 0xFFFFFFFF


class LimitType(IntEnum):
    """The limit type carried by a Set Peer Bandwidth message."""

    HARD = 0
    SOFT = 1
    DYNAMIC = 2


class ControlStateError(Exception):
    """Raised when a control value exceeds its configured limit."""


@dataclass
class StreamControlStateConfig:
    """Defaults and limits for stream control; zero means 'use the default'."""

    default_chunk_size: int = 0
    max_chunk_size: int = 0
    max_chunk_streams: int = 0

    default_ack_window_size: int = 0
    max_ack_window_size: int = 0

    default_bandwidth_window_size: int = 0
    default_bandwidth_limit_type: LimitType = LimitType.HARD
    max_bandwidth_window_size: int = 0

    max_message_size: int = 0
    max_message_streams: int = 0

    def normalize(self) -> "StreamControlStateConfig":
        """Return a copy with every unset value replaced by its default."""
        return dataclasses.replace(
            self,
            default_chunk_size=self.default_chunk_size or DEFAULT_CHUNK_SIZE,
            max_chunk_size=self.max_chunk_size or MAX_CHUNK_SIZE,
            max_chunk_streams=self.max_chunk_streams or _MAX_UINT32,
            default_ack_window_size=self.default_ack_window_size or _MAX_INT32,
            max_ack_window_size=self.max_ack_window_size or _MAX_INT32,
            default_bandwidth_window_size=self.default_bandwidth_window_size or _MAX_INT32,
            max_bandwidth_window_size=self.max_bandwidth_window_size or _MAX_INT32,
            max_message_streams=self.max_message_streams or _MAX_UINT32,
            max_message_size=self.max_message_size or MAX_CHUNK_SIZE,
        )


DEFAULT_STREAM_CONTROL_STATE_CONFIG = StreamControlStateConfig().normalize()


class StreamControlState:
    """Current control values of one side of a connection."""

    def __init__(self, config: Optional[StreamControlStateConfig] = None) -> None:
        self.config = config if config is not None else DEFAULT_STREAM_CONTROL_STATE_CONFIG
        self._chunk_size = self.config.default_chunk_size
        self._ack_window_size = self.config.default_ack_window_size
        self.bandwidth_window_size = self.config.default_bandwidth_window_size
        self.bandwidth_limit_type = self.config.default_bandwidth_limit_type

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def ack_window_size(self) -> int:
        return self._ack_window_size

    def set_chunk_size(self, chunk_size: int) -> None:
        """Set the chunk size, capped at the protocol maximum and checked against the config."""
        chunk_size = min(chunk_size, MAX_CHUNK_SIZE)
        if chunk_size > self.config.max_chunk_size:
            raise ControlStateError(
                "Exceeded configured max chunk size: "
                f"Limit = {self.config.max_chunk_size}, Value = {chunk_size}"
            )
        self._chunk_size = chunk_size

    def set_ack_window_size(self, ack_window_size: int) -> None:
        """Set the acknowledgement window size, checked against the config."""
        if ack_window_size > self.config.max_ack_window_size:
            raise ControlStateError(
                "Exceeded configured max ack window size: "
                f"Limit = {self.config.max_ack_window_size}, Value = {ack_window_size}"
            )
        self._ack_window_size = ack_window_size