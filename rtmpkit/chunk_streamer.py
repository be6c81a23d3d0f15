"""Splitting RTMP messages into chunks and reassembling them, per chunk stream."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import BinaryIO, Callable, Deque, Dict, Optional

from .chunk_header import (
    ChunkBasicHeader,
    ChunkMessageHeader,
    decode_chunk_basic_header,
    decode_chunk_message_header,
    encode_chunk_basic_header,
    encode_chunk_message_header,
)
from .conn_state import (
    DEFAULT_STREAM_CONTROL_STATE_CONFIG,
    StreamControlState,
    StreamControlStateConfig,
)

CTRL_MSG_CHUNK_STREAM_ID = 2
MAX_WRITER_QUEUE_SIZE = 64
ACK_TYPE_ID = 3

_MAX_UINT32 = 0xFFFFFFFF
_WAIT_WRITERS_TIMEOUT = 3.0

ControlStreamWriter = Callable[[int, int, int, bytes], None]


class ChunkStreamerError(Exception):
    """Raised when chunks cannot be read or written."""


class ChunkStreamReader:
    """The reassembly state of one chunk stream and the bytes of its current message."""

    def __init__(self) -> None:
        self.basic_header = ChunkBasicHeader()
        self.message_header = ChunkMessageHeader()
        self.timestamp = 0
        self.timestamp_delta = 0
        self.message_length = 0
        self.message_type_id = 0
        self.message_stream_id = 0
        self.buf = bytearray()
        self.completed = False

    def read(self, size: int = -1) -> bytes:
        """Consume up to ``size`` buffered bytes (all of them when negative)."""
        if size is None or size < 0:
            size = len(self.buf)
        data = bytes(self.buf[:size])
        del self.buf[:size]
        return data


class ChunkStreamWriter(ChunkStreamReader):
    """The state of one outgoing chunk stream, owned by one message at a time."""

    def __init__(self, chunk_stream_id: int = 0) -> None:
        super().__init__()
        self.basic_header.chunk_stream_id = chunk_stream_id
        # The first message always differs from this, forcing a full header.
        self.message_header.timestamp = _MAX_UINT32
        self.new_chunk = True
        self.last_error: Optional[BaseException] = None
        self._cond = threading.Condition()
        self._done = True
        self._closed = False

    def write(self, data: bytes) -> int:
        """Append ``data`` to the message being prepared."""
        self.buf.extend(data)
        return len(data)

    def wait(self, timeout: Optional[float] = None) -> None:
        """Wait until the previous message is written, then take the writer over.

        Raises TimeoutError when ``timeout`` seconds pass first, and the
        writing error when the previous message failed.
        """
        with self._cond:
            ready = self._cond.wait_for(lambda: self._done or self._closed, timeout)
            if not ready:
                raise TimeoutError("deadline exceeded")
            if self._done:
                if self.last_error is not None:
                    raise self.last_error
                self._done = False
                return
            if self.last_error is not None:
                raise self.last_error

    def _finish(self, error: Optional[BaseException] = None) -> None:
        with self._cond:
            self.last_error = error
            self._done = True
            self._cond.notify_all()

    def _force_close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class CountingReader:
    """A reader that counts the bytes it has delivered."""

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader
        self.total_read_bytes = 0
        self.fragment_read_bytes = 0

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        self.total_read_bytes = (self.total_read_bytes + len(data)) & _MAX_UINT32
        self.fragment_read_bytes = (self.fragment_read_bytes + len(data)) & _MAX_UINT32
        return data

    def reset_fragment_read_bytes(self) -> None:
        self.fragment_read_bytes = 0


class FlushingWriter:
    """A writer that flushes the underlying writer when it can be flushed."""

    def __init__(self, writer: BinaryIO) -> None:
        self._writer = writer

    def write(self, data: bytes) -> int:
        result = self._writer.write(data)
        return len(data) if result is None else result

    def flush(self) -> None:
        flush = getattr(self._writer, "flush", None)
        if flush is not None:
            flush()


class _WriterScheduler:
    """Runs queued writers one chunk at a time, round robin."""

    def __init__(self, streamer: "ChunkStreamer") -> None:
        self._streamer = streamer
        self._queue: Deque[ChunkStreamWriter] = deque()
        self._cond = threading.Condition()
        self._stopped = False

    def sched(self, writer: ChunkStreamWriter) -> None:
        with self._cond:
            self._cond.wait_for(
                lambda: len(self._queue) < MAX_WRITER_QUEUE_SIZE or self._stopped
            )
            self._queue.append(writer)
            self._cond.notify_all()

    def run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._queue or self._stopped)
                if self._stopped:
                    return
                writer = self._queue.popleft()
                self._cond.notify_all()

            try:
                completed = self._streamer._write_chunk(writer)
            except Exception as exc:
                writer._finish(exc)
                raise

            if completed:
                writer._finish()
                continue

            with self._cond:
                self._queue.append(writer)
                self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()


class ChunkStreamer:
    """Multiplexes messages over chunk streams on one byte stream."""

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        config: Optional[StreamControlStateConfig] = None,
    ) -> None:
        if config is None:
            config = DEFAULT_STREAM_CONTROL_STATE_CONFIG
        self.config = config
        self._reader = CountingReader(reader)
        self._writer = FlushingWriter(writer)
        self._readers: Dict[int, ChunkStreamReader] = {}
        self._writers: Dict[int, ChunkStreamWriter] = {}
        self._lock = threading.Lock()
        self.self_state = StreamControlState(config)
        self.peer_state = StreamControlState(config)
        self.control_stream_writer: Optional[ControlStreamWriter] = None
        self.logger = logging.getLogger(__name__)
        self._err: Optional[BaseException] = None
        self._done = threading.Event()
        self._scheduler = _WriterScheduler(self)
        self._thread = threading.Thread(
            target=self._sched_write_loop, name="chunk-streamer-writer", daemon=True
        )
        self._thread.start()

    @property
    def reader(self) -> CountingReader:
        return self._reader

    @property
    def err(self) -> Optional[BaseException]:
        """The error that stopped the writing loop, if any."""
        return self._err

    def write(
        self,
        chunk_stream_id: int,
        timestamp: int,
        type_id: int,
        stream_id: int,
        payload: bytes,
        timeout: Optional[float] = None,
    ) -> None:
        """Queue one message for writing on ``chunk_stream_id``."""
        writer = self.new_chunk_writer(chunk_stream_id, timeout)
        writer.write(payload)
        writer.timestamp = timestamp & _MAX_UINT32
        writer.message_length = len(writer.buf)
        writer.message_type_id = type_id & 0xFF
        writer.message_stream_id = stream_id & _MAX_UINT32
        self.sched(writer)

    def new_chunk_reader(self) -> ChunkStreamReader:
        """Read chunks until a message is complete, acknowledging as the window requires."""
        while True:
            reader = self.read_chunk()
            if self._reader.fragment_read_bytes >= self.peer_state.ack_window_size // 2:
                self._send_ack(self._reader.total_read_bytes)
                self._reader.reset_fragment_read_bytes()
            if reader.completed:
                return reader

    def new_chunk_writer(
        self, chunk_stream_id: int, timeout: Optional[float] = None
    ) -> ChunkStreamWriter:
        """Return the writer of a chunk stream once its previous message is written."""
        try:
            writer = self.prepare_chunk_writer(chunk_stream_id)
        except ChunkStreamerError as exc:
            raise ChunkStreamerError(f"Failed to prepare chunk writer: {exc}") from exc
        try:
            writer.wait(timeout)
        except Exception as exc:
            raise ChunkStreamerError(f"Failed to wait chunk writer: {exc}") from exc
        return writer

    def sched(self, writer: ChunkStreamWriter) -> None:
        """Hand a prepared writer to the writing loop."""
        writer.new_chunk = True
        self._scheduler.sched(writer)

    def read_chunk(self) -> ChunkStreamReader:
        """Read one chunk; the returned reader is completed once its message is whole."""
        basic = decode_chunk_basic_header(self._reader)
        header = decode_chunk_message_header(self._reader, basic.fmt)

        try:
            reader = self.prepare_chunk_reader(basic.chunk_stream_id)
        except ChunkStreamerError as exc:
            raise ChunkStreamerError(f"Failed to prepare chunk reader: {exc}") from exc
        if reader.completed:
            reader.buf.clear()
            reader.completed = False

        reader.basic_header = basic
        reader.message_header = header

        if basic.fmt == 0:
            reader.timestamp = header.timestamp
            reader.timestamp_delta = 0
            reader.message_length = header.message_length
            reader.message_type_id = header.message_type_id
            reader.message_stream_id = header.message_stream_id
        elif basic.fmt == 1:
            reader.timestamp_delta = header.timestamp_delta
            reader.message_length = header.message_length
            reader.message_type_id = header.message_type_id
        elif basic.fmt == 2:
            reader.timestamp_delta = header.timestamp_delta

        expect_len = reader.message_length - len(reader.buf)
        if expect_len <= 0:
            raise ChunkStreamerError("invalid state")
        expect_len = min(expect_len, self.peer_state.chunk_size)

        reader.buf.extend(self._read_up_to(expect_len))

        if reader.message_length != len(reader.buf):
            return reader

        reader.timestamp = (reader.timestamp + reader.timestamp_delta) & _MAX_UINT32
        reader.completed = True
        return reader

    def prepare_chunk_reader(self, chunk_stream_id: int) -> ChunkStreamReader:
        """Return the reader of a chunk stream, creating it within the configured limit."""
        with self._lock:
            reader = self._readers.get(chunk_stream_id)
            if reader is None:
                if len(self._readers) >= self.config.max_chunk_streams:
                    raise ChunkStreamerError(
                        "Creating chunk streams limit exceeded(Reader): "
                        f"Limit = {self.config.max_chunk_streams}"
                    )
                reader = ChunkStreamReader()
                self._readers[chunk_stream_id] = reader
            return reader

    def prepare_chunk_writer(self, chunk_stream_id: int) -> ChunkStreamWriter:
        """Return the writer of a chunk stream, creating it within the configured limit."""
        with self._lock:
            writer = self._writers.get(chunk_stream_id)
            if writer is None:
                if len(self._writers) >= self.config.max_chunk_streams:
                    raise ChunkStreamerError(
                        "Creating chunk streams limit exceeded(Writer): "
                        f"Limit = {self.config.max_chunk_streams}"
                    )
                writer = ChunkStreamWriter(chunk_stream_id)
                self._writers[chunk_stream_id] = writer
            return writer

    def wait_writers(self) -> None:
        """Wait up to three seconds in all for every writer to finish its message."""
        with self._lock:
            deadline = time.monotonic() + _WAIT_WRITERS_TIMEOUT
            for chunk_stream_id, writer in self._writers.items():
                try:
                    writer.wait(max(0.0, deadline - time.monotonic()))
                except Exception:
                    self.logger.warning("Failed to wait writer: ID = %d", chunk_stream_id)

    def wait_done(self, timeout: Optional[float] = None) -> bool:
        """Wait for the writing loop to stop; return whether it did."""
        return self._done.wait(timeout)

    def close(self) -> None:
        """Stop the writing loop."""
        self._scheduler.close()

    def _read_up_to(self, size: int) -> bytes:
        parts = []
        remaining = size
        while remaining > 0:
            data = self._reader.read(remaining)
            if not data:
                break
            parts.append(data)
            remaining -= len(data)
        return b"".join(parts)

    def _write_chunk(self, writer: ChunkStreamWriter) -> bool:
        self._update_writer_header(writer)

        expect_len = min(len(writer.buf), self.self_state.chunk_size)

        encode_chunk_basic_header(self._writer, writer.basic_header)
        encode_chunk_message_header(
            self._writer, writer.basic_header.fmt, writer.message_header
        )
        self._writer.write(writer.read(expect_len))
        self._writer.flush()

        return len(writer.buf) == 0

    @staticmethod
    def _update_writer_header(writer: ChunkStreamWriter) -> None:
        header = writer.message_header
        fmt = 2
        if (
            header.message_length != writer.message_length
            or header.message_type_id != writer.message_type_id
        ):
            header.message_length = writer.message_length
            header.message_type_id = writer.message_type_id
            fmt = 1
        if writer.timestamp != header.timestamp or writer.new_chunk:
            if writer.timestamp >= header.timestamp:
                writer.timestamp_delta = writer.timestamp - header.timestamp
            else:
                # The timestamp went backwards: send it in full.
                fmt = 0
                writer.timestamp_delta = 0
        writer.new_chunk = False
        if writer.timestamp_delta == header.timestamp_delta and fmt == 2:
            fmt = 3
        header.timestamp_delta = writer.timestamp_delta
        header.timestamp = writer.timestamp

        if header.message_stream_id != writer.message_stream_id:
            fmt = 0
            header.message_stream_id = writer.message_stream_id
        writer.basic_header.fmt = fmt

    def _send_ack(self, read_bytes: int) -> None:
        self.logger.debug("Sending Ack...: Bytes = %d", read_bytes)
        payload = (read_bytes & _MAX_UINT32).to_bytes(4, "big")
        if self.control_stream_writer is not None:
            self.control_stream_writer(CTRL_MSG_CHUNK_STREAM_ID, 0, ACK_TYPE_ID, payload)
        else:
            self.write(CTRL_MSG_CHUNK_STREAM_ID, 0, ACK_TYPE_ID, 0, payload)

    def _force_close_writers(self) -> None:
        with self._lock:
            for writer in self._writers.values():
                writer._force_close()

    def _sched_write_loop(self) -> None:
        try:
            self._scheduler.run()
        except Exception as exc:
            self._err = exc
            self._force_close_writers()
        finally:
            self._done.set()