"""FFprobe-based media inspection for the player's track menus.

get_media_info() returns the duration/size/bitrate/format summary plus the
video, audio and subtitle track lists, each track carrying a human-readable
displayName for the UI.
"""

import json
import logging
import subprocess
import tempfile
import time
from typing import Iterable, Optional

from config import get_settings
from error_handler import NotFoundError
from ftp_channel import redact_locator

logger = logging.getLogger(__name__)

TEXT_SUBTITLE_CODECS = {"subrip", "srt", "ass", "ssa", "webvtt", "mov_text", "text"}
IMAGE_SUBTITLE_CODECS = {"dvd_subtitle", "hdmv_pgs_subtitle", "dvb_subtitle", "xsub"}

_LANGUAGE_NAMES = {
    "und": "Unknown",
    "eng": "English",
    "spa": "Spanish",
    "fre": "French",
    "fra": "French",
    "ger": "German",
    "deu": "German",
    "ita": "Italian",
    "por": "Portuguese",
    "rus": "Russian",
    "jpn": "Japanese",
    "kor": "Korean",
    "chi": "Chinese",
    "zho": "Chinese",
    "hin": "Hindi",
    "ara": "Arabic",
}

_CHANNEL_LABELS = {1: "Mono", 2: "Stereo", 6: "5.1", 8: "7.1"}


def run_ffprobe(locator: str, feed: Optional[Iterable[bytes]] = None) -> dict:
    """Run ffprobe and return its parsed JSON (format + streams).

    With a feed the media bytes are piped to ffprobe's stdin instead of
    letting it open the locator.

    Raises:
        NotFoundError: If ffprobe reports the input does not exist.
        RuntimeError: If ffprobe is missing, fails, times out, or returns invalid JSON.
    """
    settings = get_settings()
    shown = redact_locator(locator)
    cmd = [
        settings.ffprobe_path,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        "pipe:0" if feed is not None else locator,
    ]
    try:
        if feed is not None:
            result = run_piped(cmd, feed, settings.ffprobe_timeout)
        else:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=settings.ffprobe_timeout)
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"ffprobe timed out after {settings.ffprobe_timeout}s: {shown}")
    except FileNotFoundError:
        raise RuntimeError("ffprobe not found. Install ffmpeg to enable media inspection.")
    if result.returncode != 0:
        if "No such file or directory" in result.stderr:
            raise NotFoundError(f"File not found: {shown}")
        raise RuntimeError(f"ffprobe failed: {result.stderr.strip().replace(locator, shown)}")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON: {e}")


def get_media_info(locator: str, feed: Optional[Iterable[bytes]] = None) -> dict:
    """Inspect a file with ffprobe and return the normalized track summary."""
    return parse_probe_data(run_ffprobe(locator, feed))


def parse_probe_data(metadata: dict) -> dict:
    """Turn raw ffprobe JSON into the media-info payload."""
    fmt = metadata.get("format") or {}
    info = {
        "duration": _to_float(fmt.get("duration")),
        "size": _to_int(fmt.get("size")),
        "bitrate": _to_int(fmt.get("bit_rate")),
        "format": fmt.get("format_name") or "unknown",
        "videoTracks": [],
        "audioTracks": [],
        "subtitleTracks": [],
    }

    for stream in metadata.get("streams") or []:
        tags = stream.get("tags") or {}
        disposition = stream.get("disposition") or {}
        index = stream.get("index")
        common = {
            "index": index,
            "codec": stream.get("codec_name"),
            "codecLong": stream.get("codec_long_name"),
            "language": tags.get("language") or "und",
            "title": tags.get("title") or f"Track {index}",
            "default": disposition.get("default") == 1,
            "forced": disposition.get("forced") == 1,
        }

        codec_type = stream.get("codec_type")
        if codec_type == "video":
            info["videoTracks"].append({
                **common,
                "width": stream.get("width"),
                "height": stream.get("height"),
                "frameRate": stream.get("r_frame_rate"),
                "bitrate": stream.get("bit_rate"),
                "pixelFormat": stream.get("pix_fmt"),
                "aspectRatio": stream.get("display_aspect_ratio"),
            })
        elif codec_type == "audio":
            track = {
                **common,
                "channels": stream.get("channels"),
                "sampleRate": stream.get("sample_rate"),
                "bitrate": stream.get("bit_rate"),
                "channelLayout": stream.get("channel_layout"),
            }
            track["displayName"] = track_display_name(track)
            info["audioTracks"].append(track)
        elif codec_type == "subtitle":
            track = {**common, "type": subtitle_type(common["codec"])}
            track["displayName"] = track_display_name(track)
            info["subtitleTracks"].append(track)

    logger.debug(
        "Inspected %s: %.1fs, %d video, %d audio, %d subtitle tracks",
        info["format"],
        info["duration"],
        len(info["videoTracks"]),
        len(info["audioTracks"]),
        len(info["subtitleTracks"]),
    )
    return info


def subtitle_type(codec) -> str:
    """"text", "image" or "unknown" for a subtitle codec name."""
    if codec in TEXT_SUBTITLE_CODECS:
        return "text"
    if codec in IMAGE_SUBTITLE_CODECS:
        return "image"
    return "unknown"


def track_display_name(track: dict) -> str:
    """Menu label such as "English (Default) - 5.1 (AC3)"."""
    language = track.get("language") or ""
    name = _LANGUAGE_NAMES.get(language) or (language.upper() if language else "Unknown")

    title = track.get("title")
    if title and title != f"Track {track.get('index')}":
        name = title

    if track.get("default"):
        name += " (Default)"
    if track.get("forced"):
        name += " (Forced)"

    channels = track.get("channels")
    if channels:
        name += " - " + _CHANNEL_LABELS.get(channels, f"{channels}ch")

    if track.get("codec"):
        name += f" ({track['codec'].upper()})"

    return name


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def run_piped(cmd: list[str], feed: Iterable[bytes], timeout: float) -> subprocess.CompletedProcess:
    """Run an ffmpeg-family tool with `feed` written to its stdin.

    Output is spooled to temporary files so a chatty tool never blocks on a
    full pipe while we are still writing input. The tool may stop reading
    early (ffprobe only needs the headers); that ends the feed.

    Raises:
        FileNotFoundError: If the tool is not installed.
        subprocess.TimeoutExpired: If the tool runs longer than `timeout`.
    """
    deadline = time.monotonic() + timeout
    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        process = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=out, stderr=err)
        try:
            for chunk in feed:
                if process.poll() is not None:
                    break
                if time.monotonic() > deadline:
                    raise subprocess.TimeoutExpired(cmd, timeout)
                process.stdin.write(chunk)
        except BrokenPipeError:
            logger.debug("%s closed its input early", cmd[0])
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            raise
        finally:
            close = getattr(feed, "close", None)
            if close is not None:
                close()
            try:
                process.stdin.close()
            except OSError:
                pass

        try:
            process.wait(timeout=max(deadline - time.monotonic(), 1.0))
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            raise

        out.seek(0)
        err.seek(0)
        return subprocess.CompletedProcess(
            cmd,
            process.returncode,
            out.read().decode("utf-8", errors="replace"),
            err.read().decode("utf-8", errors="replace"),
        )
