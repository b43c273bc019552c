"""Media delivery gateway: classifies stream requests and serves them.

MediaGateway is the one long-lived owner of the remote file channel, the
transcode supervisor, the subtitle cache and the subtitle search client.
Routes only translate HTTP to and from its operations. Every stream request
is classified into one of three strategies:

    direct     local file in a browser-compatible container, byte ranges
    transcode  incompatible container (local or remote), fragmented MP4
    remote     remote file in a compatible container, byte ranges over FTP
"""

import atexit
import ftplib
import logging
import mimetypes
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

from config import get_settings
from error_handler import ConfigurationError, NotFoundError, StreamInterruptedError
from ftp_channel import FtpChannel, RemoteRangeStream
from media_info import get_media_info
from range_utils import parse_range_header
from subtitle_cache import SubtitleCache
from subtitle_normalizer import (
    decode_subtitle_bytes,
    shift_timestamps,
    to_canonical,
    unpack_subtitle_payload,
)
from subtitle_search import SubtitleSearchClient
from transcoder import TranscodeSession, TranscodeSupervisor, detect_profile

logger = logging.getLogger(__name__)

DIRECT = "direct"
TRANSCODE = "transcode"
REMOTE = "remote"

INCOMPATIBLE_EXTENSIONS = {".mkv", ".avi", ".wmv", ".flv", ".m2ts", ".ts"}
INCOMPATIBLE_MIMETYPES = {
    "video/x-matroska",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "video/x-flv",
    "video/mp2t",
}

# Python's mimetypes table lacks some containers the player sees
_EXTRA_MIMETYPES = {
    ".mkv": "video/x-matroska",
    ".m4v": "video/mp4",
    ".webm": "video/webm",
    ".m2ts": "video/mp2t",
    ".flv": "video/x-flv",
}


@dataclass
class MediaInput:
    """Where a tool reads a file from: a locator it can open, or a byte feed."""

    path: str
    locator: str
    remote: bool = False
    source_id: Optional[str] = None
    feed_factory: Optional[Callable[[], Iterable[bytes]]] = None


@dataclass
class StreamResponse:
    """Status, headers and body of a byte-range media response."""

    status: int
    mimetype: str
    body: Iterable[bytes]
    headers: dict = field(default_factory=dict)


def guess_mimetype(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in _EXTRA_MIMETYPES:
        return _EXTRA_MIMETYPES[ext]
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


def needs_transcode(path: str) -> bool:
    """True when the browser cannot play the container directly."""
    ext = os.path.splitext(path)[1].lower()
    return ext in INCOMPATIBLE_EXTENSIONS or guess_mimetype(path) in INCOMPATIBLE_MIMETYPES


class MediaGateway:
    """Serves media and captions for the player."""

    def __init__(
        self,
        channel: Optional[FtpChannel] = None,
        supervisor: Optional[TranscodeSupervisor] = None,
        subtitle_cache: Optional[SubtitleCache] = None,
        search_client: Optional[SubtitleSearchClient] = None,
    ):
        self.settings = get_settings()
        self.channel = channel if channel is not None else FtpChannel()
        self.supervisor = supervisor if supervisor is not None else TranscodeSupervisor()
        self.subtitle_cache = subtitle_cache if subtitle_cache is not None else SubtitleCache()
        self._search_client = search_client
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    @property
    def search_client(self) -> SubtitleSearchClient:
        if self._search_client is None:
            self._search_client = SubtitleSearchClient()
        return self._search_client

    # ─── Classification ──────────────────────────────────────────────────────

    @staticmethod
    def is_local(path: str) -> bool:
        return os.path.isfile(path)

    def classify(self, path: str) -> str:
        """Pick the serving strategy for a /stream request."""
        if needs_transcode(path):
            return TRANSCODE
        if self.is_local(path):
            return DIRECT
        return REMOTE

    def resolve_input(self, path: str, source_id: Optional[str] = None) -> MediaInput:
        """Work out how ffmpeg/ffprobe should read `path`.

        Local files are opened directly. Remote files need a configured
        source; plain FTP gets an ftp:// locator and FTPS is piped in through
        a dedicated range stream.

        Raises:
            ConfigurationError: For a remote file when no source is configured.
        """
        if self.is_local(path):
            return MediaInput(path=path, locator=path)

        if not self.channel.has_configs():
            raise ConfigurationError(context={"file": path})

        config = self.channel.resolve_config(source_id)
        locator = self.channel.build_locator(config.id, path)
        if locator is not None:
            return MediaInput(path=path, locator=locator, remote=True, source_id=config.id)

        return MediaInput(
            path=path,
            locator=f"ftps://{config.host}{path}",
            remote=True,
            source_id=config.id,
            feed_factory=lambda: self.channel.open_range_stream(config.id, path, 0),
        )

    # ─── Direct Range Stream ─────────────────────────────────────────────────

    def open_direct(self, path: str, range_header: Optional[str]) -> StreamResponse:
        """Serve a local file, honoring a Range header."""
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise NotFoundError(f"File not found: {path}") from e

        mimetype = guess_mimetype(path)
        byte_range = parse_range_header(range_header, size) if size else None
        if byte_range is None:
            logger.debug("Serving %s in full (%d bytes)", path, size)
            return StreamResponse(
                status=200,
                mimetype=mimetype,
                body=_read_file(path, 0, size, self.settings.stream_chunk_size),
                headers={"Content-Length": str(size), "Accept-Ranges": "bytes"},
            )

        logger.debug("Serving %s bytes %d-%d/%d", path, byte_range.start, byte_range.end, size)
        return StreamResponse(
            status=206,
            mimetype=mimetype,
            body=_read_file(path, byte_range.start, byte_range.length, self.settings.stream_chunk_size),
            headers={
                "Content-Range": byte_range.content_range(size),
                "Content-Length": str(byte_range.length),
                "Accept-Ranges": "bytes",
            },
        )

    # ─── Remote Range Stream ─────────────────────────────────────────────────

    def open_remote(self, path: str, source_id: Optional[str], range_header: Optional[str]) -> StreamResponse:
        """Serve a remote file from the requested offset. Always 206.

        Raises:
            ConfigurationError: If no source is configured; no connection is attempted.
            NotFoundError: If the remote path does not exist.
            RemoteConnectionError: If the remote server cannot be reached.
        """
        if not self.channel.has_configs():
            raise ConfigurationError(context={"file": path})

        size = self.channel.size(source_id, path)
        byte_range = parse_range_header(range_header, size) or parse_range_header("bytes=0-", size)
        stream = self.channel.open_range_stream(source_id, path, byte_range.start)
        logger.info("Streaming remote %s bytes %d-%d/%d", path, byte_range.start, byte_range.end, size)
        return StreamResponse(
            status=206,
            mimetype=guess_mimetype(path),
            body=_limit_stream(stream, byte_range.length),
            headers={
                "Content-Range": byte_range.content_range(size),
                "Content-Length": str(byte_range.length),
                "Accept-Ranges": "bytes",
            },
        )

    # ─── Transcode Stream ────────────────────────────────────────────────────

    def start_transcode(
        self,
        path: str,
        source_id: Optional[str] = None,
        seek_seconds: float = 0.0,
        audio_track: Optional[int] = None,
        sink: str = "",
    ) -> TranscodeSession:
        """Start an ffmpeg session for path. Every seek or audio switch is a new session.

        Raises:
            ConfigurationError: For a remote file when no source is configured.
            TranscodeSetupError: If ffmpeg cannot be started.
        """
        media = self.resolve_input(path, source_id)
        feed = media.feed_factory() if media.feed_factory is not None else None
        try:
            return self.supervisor.start(
                media.locator,
                seek_seconds=seek_seconds,
                audio_track=audio_track,
                sink=sink or path,
                feed=feed,
            )
        except Exception:
            if feed is not None:
                feed.close()
            raise

    def transcode_body(self, session: TranscodeSession) -> Iterator[bytes]:
        return self.supervisor.iter_output(session, self.settings.stream_chunk_size)

    # ─── Media info ──────────────────────────────────────────────────────────

    def media_info(self, path: str, source_id: Optional[str] = None) -> dict:
        media = self.resolve_input(path, source_id)
        feed = media.feed_factory() if media.feed_factory is not None else None
        return get_media_info(media.locator, feed)

    # ─── Subtitles ───────────────────────────────────────────────────────────

    def embedded_subtitle(
        self,
        path: str,
        track: int,
        source_id: Optional[str] = None,
        start: float = 0.0,
        refresh: bool = False,
    ) -> str:
        """Extract (or reuse) an embedded track as canonical captions.

        refresh drops the cached extraction first, for files replaced in place.
        """
        media = self.resolve_input(path, source_id)
        cache_key = f"{media.source_id}:{path}" if media.remote else path
        if refresh and self.subtitle_cache.invalidate(cache_key, track):
            logger.info("Re-extracting %s track %d", path, track)
        text = self.subtitle_cache.get(cache_key, track, media.locator, media.feed_factory)
        return shift_timestamps(text, start)

    def external_subtitle(self, url: str, start: float = 0.0) -> str:
        """Fetch captions from an arbitrary URL and normalize them."""
        payload = self.search_client.fetch_text_url(url)
        return self._normalize_payload(payload, start)

    def parse_subtitle(self, raw: str, start: float = 0.0) -> str:
        return shift_timestamps(to_canonical(raw), start)

    def search_subtitles(self, **criteria) -> dict:
        return self.search_client.search(**criteria)

    def download_subtitle(self, start: float = 0.0, **reference) -> str:
        payload = self.search_client.download(**reference)
        return self._normalize_payload(payload, start)

    @staticmethod
    def _normalize_payload(payload: bytes, start: float) -> str:
        text = decode_subtitle_bytes(unpack_subtitle_payload(payload))
        return shift_timestamps(to_canonical(text), start)

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "active_sessions": self.supervisor.active_count(),
            "cached_subtitles": len(self.subtitle_cache),
            "configured_sources": len(self.channel.list_configs()),
        }

    def apply_settings(self, changed: Iterable[str]) -> None:
        """Pick up reloaded settings in the running components.

        Listener address and FTP timeouts only take effect on restart.
        """
        changed = set(changed)
        self.settings = get_settings()
        if changed & {"opensubtitles_api_key", "opensubtitles_user_agent", "request_timeout"}:
            if self._search_client is not None:
                self._search_client.close()
            self._search_client = None
        if changed & {"ffmpeg_path", "terminate_grace_seconds", "hwaccel",
                      "transcode_video_bitrate", "transcode_audio_bitrate"}:
            self.supervisor.ffmpeg_path = self.settings.ffmpeg_path
            self.supervisor.grace_seconds = self.settings.terminate_grace_seconds
            self.supervisor.video_bitrate = self.settings.transcode_video_bitrate
            self.supervisor.audio_bitrate = self.settings.transcode_audio_bitrate
            self.supervisor.profile = detect_profile(self.settings.hwaccel)
        if "ffmpeg_path" in changed:
            self.subtitle_cache.ffmpeg_path = self.settings.ffmpeg_path
        logger.info("Settings applied: %s", ", ".join(sorted(changed)) or "none")

    def shutdown(self) -> None:
        """Stop every transcode, drop the subtitle cache and close connections. Idempotent."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
        terminated = self.supervisor.terminate_all()
        cleared = self.subtitle_cache.clear()
        self.channel.disconnect()
        if self._search_client is not None:
            self._search_client.close()
        logger.info("Gateway shut down (%d sessions terminated, %d subtitles cleared)", terminated, cleared)


def _read_file(path: str, start: int, length: int, chunk_size: int) -> Iterator[bytes]:
    """Yield exactly `length` bytes of path beginning at `start`."""
    remaining = length
    sent = 0
    try:
        with open(path, "rb") as f:
            f.seek(start)
            while remaining > 0:
                chunk = f.read(min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                sent += len(chunk)
                yield chunk
    except OSError as e:
        error = StreamInterruptedError(f"Reading {path} failed after {sent} bytes: {e}")
        logger.warning("[%s] %s", error.code, error)


def _limit_stream(stream: RemoteRangeStream, length: int) -> Iterator[bytes]:
    """Yield at most `length` bytes of a remote stream, then close it."""
    remaining = length
    sent = 0
    try:
        for chunk in stream:
            if len(chunk) > remaining:
                chunk = chunk[:remaining]
            remaining -= len(chunk)
            sent += len(chunk)
            yield chunk
            if remaining <= 0:
                break
    except (OSError, EOFError, ftplib.Error) as e:
        error = StreamInterruptedError(f"Remote stream of {stream.path} failed after {sent} bytes: {e}")
        logger.warning("[%s] %s", error.code, error)
    finally:
        stream.close()


# ─── Singleton ───────────────────────────────────────────────────────────────

_gateway: Optional[MediaGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> MediaGateway:
    """Get or create the process-wide gateway; its shutdown runs at exit."""
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = MediaGateway()
            atexit.register(_gateway.shutdown)
        return _gateway


def reset_gateway() -> None:
    """Shut down and forget the process-wide gateway."""
    global _gateway
    with _gateway_lock:
        gateway, _gateway = _gateway, None
    if gateway is not None:
        gateway.shutdown()
        atexit.unregister(gateway.shutdown)
