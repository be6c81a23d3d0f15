"""An HTTP controller that records a channel name and converts its RTMP stream to HLS."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import subprocess
import threading
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlsplit

START_CHANNEL = "$tart"
USAGE = "url: /data?channel=<ROOM_NAME>"
DEFAULT_PORT = 7001
DEFAULT_RTMP_BASE = "rtmp://localhost:1935/appname/"
DEFAULT_API_BASE = "http://localhost:9001/ded?channel="
PLAYLIST_NAME = "index.m3u8"

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

logger = logging.getLogger(__name__)

Runner = Callable[[List[str]], Any]
HttpGet = Callable[[str], Any]
Spawn = Callable[..., Any]


def build_ffmpeg_command(url: str, playlist_path: str) -> List[str]:
    """Return the ffmpeg command that turns the stream at ``url`` into an HLS playlist."""
    return [
        "ffmpeg",
        "-i", url,
        "-c:v", "libx264",
        "-c:a", "aac",
        "-f", "hls",
        "-hls_time", "10",
        "-hls_list_size", "6",
        "-hls_flags", "6",
        "-vsync", "1",
        str(playlist_path),
    ]


def _run_command(command: List[str]) -> None:
    subprocess.run(command, check=True)


def _http_get(url: str) -> int:
    with urllib.request.urlopen(url) as response:
        return response.status


def _spawn_thread(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


def _json_body(status: int, data: Any) -> bytes:
    text = json.dumps({"status": status, "data": data}, separators=(",", ":"))
    text = text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return text.encode()


def _parse_query(query: str) -> Optional[dict]:
    if ";" in query or _BAD_ESCAPE.search(query):
        return None
    values: dict = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        values.setdefault(key, value)
    return values


class HlsController:
    """Remembers the last requested channel and starts its HLS conversion on request."""

    def __init__(
        self,
        segments_dir: Optional[os.PathLike] = None,
        rtmp_base: str = DEFAULT_RTMP_BASE,
        api_base: str = DEFAULT_API_BASE,
        runner: Runner = _run_command,
        http_get: HttpGet = _http_get,
        spawn: Spawn = _spawn_thread,
    ) -> None:
        self.segments_dir = (
            Path(segments_dir) if segments_dir is not None
            else Path.home() / "Downloads" / "segments"
        )
        self.rtmp_base = rtmp_base
        self.api_base = api_base
        self._runner = runner
        self._http_get = http_get
        self._spawn = spawn
        self._lock = threading.Lock()
        self._channel = ""

    @property
    def channel(self) -> str:
        with self._lock:
            return self._channel

    def handle(self, query: str) -> Tuple[int, bytes]:
        """Answer a request with the given query string; return the status and body."""
        params = _parse_query(query)
        if params is None:
            return 400, _json_body(400, USAGE)

        requested = params.get("channel", "")
        if requested == START_CHANNEL:
            channel = self.channel
            self._spawn(self.start_download, channel)
            return 200, f"Response for channel={channel}".encode() + _json_body(200, "dfg")

        with self._lock:
            self._channel = requested
        if not requested:
            return 400, _json_body(400, USAGE)

        logger.info("channel: %s", requested)
        return 200, f"Response for channel={requested}".encode() + _json_body(200, "ok")

    def start_download(self, channel: str) -> bool:
        """Create the channel's directory and run ffmpeg on its stream.

        Returns False when the directory cannot be created; a failing ffmpeg
        raises CalledProcessError.
        """
        save_path = self.segments_dir / channel
        url = self.rtmp_base + channel
        try:
            os.mkdir(save_path, 0o755)
        except OSError as exc:
            print("Error creating directory:", exc)
            return False

        self._spawn(self.call_api)
        self._runner(build_ffmpeg_command(url, str(save_path / PLAYLIST_NAME)))
        return True

    def call_api(self) -> bool:
        """Notify the downstream service of the current channel; return whether it answered."""
        url = self.api_base + self.channel
        print(url)
        try:
            self._http_get(url)
        except OSError as exc:
            print("Error:", exc)
            return False
        return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Serve the controller over HTTP."""
    parser = argparse.ArgumentParser(description="Start HLS conversion of RTMP channels.")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--segments-dir", default=None)
    args = parser.parse_args(argv)

    controller = HlsController(segments_dir=args.segments_dir)

    class _RequestHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            status, body = controller.handle(urlsplit(self.path).query)
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        do_POST = do_GET

    try:
        with ThreadingHTTPServer(("", args.port), _RequestHandler) as server:
            server.serve_forever()
    except OSError as exc:
        print("Error starting server:", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0