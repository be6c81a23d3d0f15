import io
import threading

import pytest

from rtmpkit.chunk_streamer import (
    ChunkStreamer,
    ChunkStreamerError,
    ChunkStreamReader,
    ChunkStreamWriter,
    CountingReader,
    FlushingWriter,
)
from rtmpkit.conn_state import StreamControlStateConfig

VIDEO_TYPE_ID = 9


class _Loopback:
    """A byte pipe: writes append, reads consume."""

    def __init__(self):
        self._data = bytearray()
        self._lock = threading.Lock()

    def write(self, data):
        with self._lock:
            self._data.extend(data)
        return len(data)

    def read(self, size=-1):
        with self._lock:
            if size is None or size < 0:
                size = len(self._data)
            out = bytes(self._data[:size])
            del self._data[:size]
            return out


class _Sink:
    def __init__(self):
        self.count = 0

    def write(self, data):
        self.count += len(data)
        return len(data)


class _AlwaysErrorWriter:
    def write(self, data):
        raise OSError("Always error!")


def _loopback_streamer(config=None):
    buf = _Loopback()
    return ChunkStreamer(buf, buf, config)


def test_single_chunk():
    streamer = _loopback_streamer()
    content = b"testtesttest"

    w = streamer.new_chunk_writer(2)
    w.write(content)
    w.message_length = len(w.buf)
    w.message_type_id = VIDEO_TYPE_ID
    w.timestamp = 72
    streamer.sched(w)

    streamer.new_chunk_writer(2, timeout=5)

    r = streamer.read_chunk()
    assert r.completed
    assert r.timestamp == 72
    assert r.message_type_id == VIDEO_TYPE_ID
    assert r.read() == content
    streamer.close()


def test_multiple_chunk():
    streamer = _loopback_streamer()
    content = b"test" * 128

    w = streamer.new_chunk_writer(2)
    w.write(content)
    w.message_length = len(w.buf)
    w.message_type_id = VIDEO_TYPE_ID
    w.timestamp = 72
    streamer.sched(w)

    streamer.new_chunk_writer(2, timeout=5)

    completions = [streamer.read_chunk().completed for _ in range(4)]
    assert completions == [False, False, False, True]
    r = streamer.prepare_chunk_reader(2)
    assert r.timestamp == 72
    assert r.message_type_id == VIDEO_TYPE_ID
    assert r.read() == content
    streamer.close()


@pytest.mark.parametrize(
    "chunk_stream_id, type_id, message_stream_id, writes, reads",
    [
        (
            3,
            8,
            12345,
            [(1000, 32), (1020, 32), (1040, 32), (1060, 32)],
            [(1000, 0, True), (1020, 2, True), (1040, 3, True), (1060, 3, True)],
        ),
        (
            4,
            9,
            12346,
            [(1000, 307)],
            [(1000, 0, False), (1000, 3, False), (1000, 3, True)],
        ),
        (
            5,
            10,
            22346,
            [(1000, 200), (2000, 200)],
            [(1000, 0, False), (1000, 3, True), (1000, 2, False), (2000, 3, True)],
        ),
    ],
    ids=["example-1", "example-2", "original-1"],
)
def test_chunk_example1(chunk_stream_id, type_id, message_stream_id, writes, reads):
    streamer = _loopback_streamer()

    for timestamp, length in writes:
        w = streamer.new_chunk_writer(chunk_stream_id, timeout=5)
        w.message_length = length
        w.message_type_id = type_id
        w.message_stream_id = message_stream_id
        w.timestamp = timestamp
        w.write(bytes(length))
        streamer.sched(w)

    streamer.new_chunk_writer(chunk_stream_id, timeout=5)

    for timestamp, fmt, complete in reads:
        r = streamer.read_chunk()
        assert r.basic_header.fmt == fmt
        assert r.timestamp == timestamp
        assert r.completed is complete
    streamer.close()


def test_chunk_example2_same_timestamp_delta():
    writes = [(1000, 200, 10), (1001, 200, 11), (2000, 200, 10), (2000, 200, 11)]
    reads = [
        (0, 0, False),
        (0, 3, True),
        (1, 1, False),
        (0, 3, True),
        (999, 1, False),
        (0, 3, True),
        (0, 1, False),
        (0, 3, True),
    ]
    streamer = _loopback_streamer()

    for timestamp, length, type_id in writes:
        w = streamer.new_chunk_writer(5, timeout=5)
        w.message_length = length
        w.message_type_id = type_id
        w.message_stream_id = 22346
        w.timestamp = timestamp
        w.write(bytes(length))
        streamer.sched(w)

    streamer.new_chunk_writer(5, timeout=5)

    for delta, fmt, complete in reads:
        r = streamer.read_chunk()
        assert r.basic_header.fmt == fmt
        assert r.message_header.timestamp_delta == delta
        assert r.completed is complete
    streamer.close()


def test_write_to_invalid_writer():
    streamer = ChunkStreamer(_Loopback(), _AlwaysErrorWriter())

    streamer.write(10, 0, 3, 0, bytes(4))

    assert streamer.wait_done(timeout=5)
    assert str(streamer.err) == "Always error!"
    with pytest.raises(ChunkStreamerError, match="Failed to wait chunk writer: Always error!"):
        streamer.new_chunk_writer(10, timeout=1)


def test_close_stops_loop():
    streamer = _loopback_streamer()
    streamer.close()
    assert streamer.wait_done(timeout=5)
    assert streamer.err is None


def test_streams_limitation():
    streamer = _loopback_streamer(StreamControlStateConfig(max_chunk_streams=1))
    try:
        first = streamer.prepare_chunk_reader(0)
        assert streamer.prepare_chunk_reader(0) is first
        with pytest.raises(ChunkStreamerError) as excinfo:
            streamer.prepare_chunk_reader(1)
        assert str(excinfo.value) == "Creating chunk streams limit exceeded(Reader): Limit = 1"

        writer = streamer.prepare_chunk_writer(0)
        assert writer.basic_header.chunk_stream_id == 0
        with pytest.raises(ChunkStreamerError) as excinfo:
            streamer.prepare_chunk_writer(1)
        assert str(excinfo.value) == "Creating chunk streams limit exceeded(Writer): Limit = 1"
    finally:
        streamer.close()


@pytest.mark.parametrize("wait_first", [True, False])
def test_dual_writer(wait_first):
    sink = _Sink()
    streamer = ChunkStreamer(_Loopback(), sink)
    payload = b"abcdabcd12341234" * 512

    for i in range(20):
        streamer.write(10 + i % 2, 0, VIDEO_TYPE_ID, 0, payload, timeout=10)

    if wait_first:
        streamer.wait_writers()
        assert sink.count > 20 * len(payload)

    streamer.close()
    assert streamer.wait_done(timeout=5)
    assert streamer.err is None


def test_new_chunk_writer_twice():
    streamer = ChunkStreamer(_Loopback(), _Sink())

    streamer.new_chunk_writer(10)
    with pytest.raises(ChunkStreamerError) as excinfo:
        streamer.new_chunk_writer(10, timeout=0.2)
    assert str(excinfo.value) == "Failed to wait chunk writer: deadline exceeded"

    streamer.close()
    assert streamer.wait_done(timeout=5)
    assert streamer.err is None


def test_new_chunk_reader_sends_acks():
    streamer = _loopback_streamer()
    streamer.peer_state.set_ack_window_size(100)
    acks = []
    streamer.control_stream_writer = lambda *args: acks.append(args)

    streamer.write(2, 0, VIDEO_TYPE_ID, 0, bytes(200), timeout=5)
    streamer.new_chunk_writer(2, timeout=5)

    reader = streamer.new_chunk_reader()
    assert reader.completed
    assert reader.read() == bytes(200)
    assert acks == [
        (2, 0, 3, (140).to_bytes(4, "big")),
        (2, 0, 3, (213).to_bytes(4, "big")),
    ]
    assert streamer.reader.total_read_bytes == 213
    streamer.close()


def test_zero_length_message_is_invalid_state():
    data = bytes([0x02]) + bytes([0, 0, 0, 0, 0, 0, 9, 0, 0, 0, 0])
    streamer = ChunkStreamer(io.BytesIO(data), _Sink())
    with pytest.raises(ChunkStreamerError, match="invalid state"):
        streamer.read_chunk()
    streamer.close()


def test_chunk_stream_reader_read_consumes():
    reader = ChunkStreamReader()
    reader.buf.extend(b"abcdef")
    assert reader.read(2) == b"ab"
    assert reader.read() == b"cdef"
    assert reader.read(3) == b""


def test_chunk_stream_writer_wait_takes_ownership():
    writer = ChunkStreamWriter(7)
    assert writer.write(b"xyz") == 3
    assert bytes(writer.buf) == b"xyz"
    writer.wait(0)
    with pytest.raises(TimeoutError):
        writer.wait(0.05)


def test_counting_reader():
    reader = CountingReader(io.BytesIO(b"0123456789"))
    assert reader.read(4) == b"0123"
    assert reader.read(3) == b"456"
    assert (reader.total_read_bytes, reader.fragment_read_bytes) == (7, 7)
    reader.reset_fragment_read_bytes()
    assert reader.read(10) == b"789"
    assert (reader.total_read_bytes, reader.fragment_read_bytes) == (10, 3)


def test_flushing_writer_flushes_buffer():
    raw = io.BytesIO()
    writer = FlushingWriter(io.BufferedWriter(raw, buffer_size=64))
    assert writer.write(b"hello") == 5
    writer.flush()
    assert raw.getvalue() == b"hello"