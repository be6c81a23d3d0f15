"""A publish/subscribe relay of FLV tags, keyed by stream name, with a key cache."""

from __future__ import annotations

import dataclasses
import secrets
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Union

_MAX_UINT32 = 0xFFFFFFFF

LETTERS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

AVC_PACKET_TYPE_SEQUENCE_HEADER = 0
AVC_PACKET_TYPE_NALU = 1
FRAME_TYPE_KEY_FRAME = 1
FRAME_TYPE_INTER_FRAME = 2


class TagType(IntEnum):
    """The type of an FLV tag."""

    AUDIO = 8
    VIDEO = 9
    SCRIPT_DATA = 18


@dataclass
class AudioData:
    """The body of an FLV audio tag."""

    sound_format: int = 10
    sound_rate: int = 3
    sound_size: int = 1
    sound_type: int = 1
    aac_packet_type: int = 1
    data: bytes = b""


@dataclass
class VideoData:
    """The body of an FLV video tag."""

    frame_type: int = FRAME_TYPE_INTER_FRAME
    codec_id: int = 7
    avc_packet_type: int = AVC_PACKET_TYPE_NALU
    composition_time: int = 0
    data: bytes = b""


@dataclass
class ScriptData:
    """The body of an FLV script data tag."""

    objects: Dict[str, Any] = field(default_factory=dict)


TagData = Union[AudioData, VideoData, ScriptData]


@dataclass
class FlvTag:
    """An FLV tag: its type, timestamp and body."""

    tag_type: TagType
    timestamp: int
    data: TagData


EventCallback = Callable[[FlvTag], Any]


class Cache:
    """A thread-safe string to string map."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._store[key] = value

    def get(self, key: str) -> Optional[str]:
        """Return the value stored for ``key``, or None."""
        with self._lock:
            return self._store.get(key)


def rand_str(n: int) -> str:
    """Return ``n`` random characters drawn from digits and upper-case letters."""
    return "".join(secrets.choice(LETTERS) for _ in range(n))


def _clone_view(tag: FlvTag) -> FlvTag:
    if not isinstance(tag.data, (AudioData, VideoData, ScriptData)):
        raise TypeError(f"unexpected tag data: {type(tag.data).__name__}")
    return dataclasses.replace(tag, data=dataclasses.replace(tag.data))


class Sub:
    """A subscriber; receives tags with timestamps rebased to its first one."""

    def __init__(self, event_callback: Optional[EventCallback] = None) -> None:
        self.initialized = False
        self.closed = False
        self.last_timestamp = 0
        self.event_callback = event_callback

    def on_event(self, tag: FlvTag) -> Any:
        """Rebase the timestamp of ``tag`` and hand it to the callback."""
        if self.closed:
            return None
        if tag.timestamp != 0 and self.last_timestamp == 0:
            self.last_timestamp = tag.timestamp
        tag.timestamp = (tag.timestamp - self.last_timestamp) & _MAX_UINT32
        if self.event_callback is None:
            return None
        return self.event_callback(tag)

    def close(self) -> None:
        self.closed = True


class Pub:
    """The publisher of a stream; fans tags out to the subscribers."""

    def __init__(self, pubsub: "Pubsub") -> None:
        self._pubsub = pubsub
        self.avc_seq_header: Optional[FlvTag] = None
        self.last_key_frame: Optional[FlvTag] = None

    def publish(self, tag: FlvTag) -> None:
        """Deliver ``tag``; new subscribers first get the sequence header and last key frame."""
        subs = self._pubsub.subscribers()
        data = tag.data
        if isinstance(data, (AudioData, ScriptData)):
            for sub in subs:
                _deliver(sub, _clone_view(tag))
        elif isinstance(data, VideoData):
            if data.avc_packet_type == AVC_PACKET_TYPE_SEQUENCE_HEADER:
                self.avc_seq_header = tag
            if data.frame_type == FRAME_TYPE_KEY_FRAME:
                self.last_key_frame = tag

            for sub in subs:
                if not sub.initialized:
                    if self.avc_seq_header is not None:
                        _deliver(sub, _clone_view(self.avc_seq_header))
                    if self.last_key_frame is not None:
                        _deliver(sub, _clone_view(self.last_key_frame))
                    sub.initialized = True
                    continue
                _deliver(sub, _clone_view(tag))
        else:
            raise TypeError(f"unexpected tag data: {type(data).__name__}")

    def close(self) -> None:
        """Close the subscribers and remove the stream from the service."""
        self._pubsub.deregister()


def _deliver(sub: Sub, tag: FlvTag) -> None:
    # Errors of one subscriber must not stop delivery to the others.
    try:
        sub.on_event(tag)
    except Exception:
        pass


class Pubsub:
    """One published stream with its publisher and subscribers."""

    def __init__(self, service: "RelayService", name: str) -> None:
        self._service = service
        self.name = name
        self.publisher: Optional[Pub] = None
        self._subs: List[Sub] = []
        self._lock = threading.Lock()

    def subscribers(self) -> List[Sub]:
        with self._lock:
            return list(self._subs)

    def deregister(self) -> None:
        """Close every subscriber and remove this stream from the service."""
        with self._lock:
            for sub in self._subs:
                sub.close()
        self._service.remove_pubsub(self.name)

    def pub(self) -> Pub:
        publisher = Pub(self)
        self.publisher = publisher
        return publisher

    def sub(self) -> Sub:
        subscriber = Sub()
        with self._lock:
            self._subs.append(subscriber)
        return subscriber


class RelayService:
    """The registry of published streams."""

    def __init__(self, cache: Optional[Cache] = None) -> None:
        self._streams: Dict[str, Pubsub] = {}
        self._lock = threading.Lock()
        self.cache = cache if cache is not None else Cache()

    def new_pubsub(self, key: str) -> Pubsub:
        """Register a new stream; raise ValueError if it is already published."""
        with self._lock:
            if key in self._streams:
                raise ValueError(f"Already published: {key}")
            pubsub = Pubsub(self, key)
            self._streams[key] = pubsub
            return pubsub

    def get_pubsub(self, key: str) -> Pubsub:
        """Return a published stream; raise LookupError if there is none."""
        with self._lock:
            pubsub = self._streams.get(key)
            if pubsub is None:
                raise LookupError(f"Not published: {key}")
            return pubsub

    def remove_pubsub(self, key: str) -> None:
        """Remove a published stream; raise LookupError if there is none."""
        with self._lock:
            if key not in self._streams:
                raise LookupError(f"Not published: {key}")
            del self._streams[key]