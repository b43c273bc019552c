"""Cache of embedded subtitle tracks extracted to WebVTT files.

Entries are keyed by (source path, track index) and point at a file under
the subtitle cache directory. A hit is only trusted while its backing file
still exists; otherwise the track is extracted again.
"""

import hashlib
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from config import get_settings
from error_handler import NotFoundError, TranscodeSetupError
from ftp_channel import redact_locator
from media_info import run_piped
from subtitle_normalizer import decode_subtitle_bytes, to_canonical

logger = logging.getLogger(__name__)


@dataclass
class SubtitleCacheEntry:
    path: str
    track: int
    file_path: str
    created_at: float = field(default_factory=time.time)


class SubtitleCache:
    """Thread-safe (path, track) -> extracted caption file map."""

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        ffmpeg_path: Optional[str] = None,
        timeout: Optional[int] = None,
        extractor: Optional[Callable] = None,
    ):
        settings = get_settings()
        self.cache_dir = cache_dir or settings.get_subtitle_cache_dir()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.timeout = timeout or settings.ffmpeg_timeout
        self._extract = extractor or self._extract_with_ffmpeg
        self._entries: dict[tuple[str, int], SubtitleCacheEntry] = {}
        self._key_locks: dict[tuple[str, int], threading.Lock] = {}
        self._lock = threading.Lock()

    def get(
        self,
        path: str,
        track: int,
        locator: Optional[str] = None,
        feed_factory: Optional[Callable[[], Iterable[bytes]]] = None,
    ) -> str:
        """Return the canonical captions for one embedded track.

        Args:
            path: Cache key for the media file (local path or remote path).
            track: Absolute stream index of the subtitle track.
            locator: What ffmpeg should open. Defaults to path.
            feed_factory: Opens a byte stream to pipe into ffmpeg instead of
                          letting it open the locator (FTPS sources).
        """
        key = (path, track)
        text = self._read_entry(key)
        if text is not None:
            return text

        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        # Concurrent first requests for the same track extract once
        with key_lock:
            text = self._read_entry(key)
            if text is not None:
                return text

            os.makedirs(self.cache_dir, exist_ok=True)
            output = os.path.join(self.cache_dir, _cache_filename(path, track))
            try:
                feed = feed_factory() if feed_factory is not None else None
                self._extract(locator or path, track, output, feed)

                with open(output, "rb") as f:
                    canonical = to_canonical(decode_subtitle_bytes(f.read()))
                with open(output, "w", encoding="utf-8") as f:
                    f.write(canonical)
            except Exception:
                # No entry tracks a failed extraction, so clear() would miss it
                _remove_file(output)
                raise

            with self._lock:
                self._entries[key] = SubtitleCacheEntry(path, track, output)
            logger.info("Cached subtitle track %d of %s", track, redact_locator(path))
            return canonical

    def _read_entry(self, key: tuple[str, int]) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        try:
            with open(entry.file_path, encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            logger.info("Cached subtitle %s vanished, extracting again", entry.file_path)
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
            return None

    def invalidate(self, path: str, track: int) -> bool:
        with self._lock:
            entry = self._entries.pop((path, track), None)
        if entry is None:
            return False
        _remove_file(entry.file_path)
        return True

    def clear(self) -> int:
        """Drop every entry and delete its backing file. Returns the entry count."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self._key_locks.clear()
        for entry in entries:
            _remove_file(entry.file_path)
        if entries:
            logger.info("Cleared %d cached subtitle(s)", len(entries))
        return len(entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _extract_with_ffmpeg(
        self,
        locator: str,
        track: int,
        output: str,
        feed: Optional[Iterable[bytes]] = None,
    ) -> None:
        """Extract one subtitle stream to a WebVTT file.

        Raises:
            NotFoundError: If the input has no stream with that index.
            TranscodeSetupError: If ffmpeg is not installed.
            RuntimeError: If ffmpeg fails or times out.
        """
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            "pipe:0" if feed is not None else locator,
            "-map",
            f"0:{track}",
            "-c:s",
            "webvtt",
            "-f",
            "webvtt",
            output,
        ]
        shown = redact_locator(locator)
        try:
            if feed is not None:
                result = run_piped(cmd, feed, self.timeout)
            else:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, stdin=subprocess.DEVNULL, timeout=self.timeout
                )
        except FileNotFoundError as e:
            raise TranscodeSetupError(f"ffmpeg not found: {self.ffmpeg_path}") from e
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"Subtitle extraction timed out after {self.timeout}s: {shown}")

        if result.returncode != 0:
            stderr = result.stderr.strip().replace(locator, shown)
            if "matches no streams" in stderr or "Invalid stream specifier" in stderr:
                raise NotFoundError(f"Subtitle track {track} not found in {shown}")
            if "No such file or directory" in stderr:
                raise NotFoundError(f"File not found: {shown}")
            raise RuntimeError(f"ffmpeg extraction failed: {stderr}")
        logger.debug("Extracted stream %d of %s to %s", track, shown, output)


def _cache_filename(path: str, track: int) -> str:
    digest = hashlib.sha1(f"{path}\0{track}".encode("utf-8")).hexdigest()[:16]
    return f"{digest}_{track}.vtt"


def _remove_file(file_path: str) -> None:
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not delete cached subtitle %s: %s", file_path, e)
