# rtmpkit

Building blocks for working with RTMP streams in pure Python, using only the
standard library:

- `rtmpkit.chunk_header` — encode and decode RTMP chunk basic headers and
  chunk message headers (`ChunkBasicHeader`, `ChunkMessageHeader`), including
  the 2- and 3-byte chunk stream id forms and extended timestamps.
- `rtmpkit.handshake` — the plain RTMP handshake (C0/C1/C2 and S0/S1/S2), from
  either side: `handshake_with_client` and `handshake_with_server`, with
  `Encoder` and `Decoder` for the individual packets (`S1C1`, `S2C2`). A failed
  random echo check raises `HandshakeError` unless
  `HandshakeConfig(skip_handshake_verification=True)` is given.
- `rtmpkit.conn_state` — per-connection control state (`StreamControlState`)
  and its limits (`StreamControlStateConfig`), whose `normalize()` fills in
  defaults for unset values. Values above the limits raise `ControlStateError`.
- `rtmpkit.chunk_streamer` — `ChunkStreamer`, which splits outgoing messages
  into chunks on a background writer thread and reassembles incoming chunks
  into complete messages, sending acknowledgements as the window requires.
  Errors are raised as `ChunkStreamerError`.
- `rtmpkit.address` — `make_valid_addr`, which adds the default RTMP port
  (1935) to an address that has none.
- `rtmpkit.relay` — an in-memory publish/subscribe relay of FLV tags
  (`RelayService`, `Pubsub`, `Pub`, `Sub`, `FlvTag`), which sends new
  subscribers the last AVC sequence header and key frame first, plus a small
  thread-safe `Cache` and `rand_str` for random keys.
- `rtmpkit.hls` — `HlsController`, a tiny HTTP controller that starts
  `ffmpeg` to turn an RTMP stream into an HLS playlist.

## Installation

```
pip install .
```

The HLS controller needs `ffmpeg` on your `PATH`.

## Examples

Completing an address:

```python
from rtmpkit.address import make_valid_addr

make_valid_addr("host")      # "host:1935"
make_valid_addr("host:123")  # "host:123"
```

Writing a chunk basic header:

```python
import io
from rtmpkit.chunk_header import ChunkBasicHeader, encode_chunk_basic_header

out = io.BytesIO()
encode_chunk_basic_header(out, ChunkBasicHeader(fmt=1, chunk_stream_id=2))
out.getvalue()  # b"\x42"
```

Chunk stream ids outside `[2, 65599]` raise `ValueError`.

Relaying tags:

```python
from rtmpkit.relay import AudioData, FlvTag, RelayService, TagType

service = RelayService()
pubsub = service.new_pubsub("live")
publisher = pubsub.pub()
subscriber = pubsub.sub()

received = []
subscriber.event_callback = received.append
publisher.publish(FlvTag(TagType.AUDIO, 1000, AudioData(data=b"\x00")))
received[0].timestamp  # 0: timestamps are rebased to the subscriber's first one
```

Publishing a name twice raises `ValueError`; looking up or removing a name
that is not published raises `LookupError`.

## The HLS controller

```
rtmpkit-hls [--port PORT] [--segments-dir DIR]
```

starts an HTTP server (port 7001 by default). A request with
`?channel=<ROOM_NAME>` remembers the channel; a request with `?channel=$tart`
then, in the background, creates a directory named after the remembered
channel inside the segments directory (`~/Downloads/segments` by default,
which must already exist), notifies `http://localhost:9001/ded?channel=<name>`
and runs `ffmpeg` on `rtmp://localhost:1935/appname/<name>`, writing an
`index.m3u8` playlist with its segments there. A request without a channel
answers with status 400.

## What this package does not do

There is no RTMP connection, client or server here: no message or AMF
encoding, no command handling (connect, createStream, publish, play), and no
network listener that wires the handshake, chunk streamer and relay together.
`make_valid_addr` only normalises an address; it does not dial it. The relay
works on `FlvTag` objects in memory and does not parse or write FLV bytes.

## Running the tests

```
pip install .[test]
pytest
```