"""Subtitle normalization to WebVTT for browser playback.

Every subtitle the gateway serves goes through to_canonical(): WebVTT passes
through untouched, ASS/SSA scripts and SubRip blocks are converted with the
regex converters below, anything else is handed to pysubs2. Timestamps can
then be rewritten with shift_timestamps() so captions line up with a
transcoded stream whose clock restarts at zero after a seek.
"""

import gzip
import io
import logging
import re
import zipfile
import zlib

import pysubs2
from pysubs2.exceptions import Pysubs2Error

from error_handler import SubtitleParseError

logger = logging.getLogger(__name__)

VTT_HEADER = "WEBVTT"

# Frame rate assumed for frame-based formats (MicroDVD) in the pysubs2 fallback
DEFAULT_FPS = 23.976

_ASS_MARKER_RE = re.compile(r"^\s*(?:\[Script Info\]|\[Events\]|Dialogue\s*:)", re.IGNORECASE | re.MULTILINE)
_OVERRIDE_TAG_RE = re.compile(r"\{[^}]*\}")
_ASS_TIME_RE = re.compile(r"^\s*(\d+):(\d{2}):(\d{2})[.:](\d{1,3})\s*$")
_ASS_DEFAULT_FIELDS = ["layer", "start", "end", "style", "name", "marginl", "marginr", "marginv", "effect", "text"]

_SRT_TIME = r"(?:\d{1,2}:)?\d{1,2}:\d{2}[,.]\d{1,3}"
_SRT_TIMING_RE = re.compile(rf"({_SRT_TIME})\s*-->\s*({_SRT_TIME})")

_TIMESTAMP_PAIR_RE = re.compile(
    r"(?P<start>(?:\d{1,2}:)?\d{1,2}:\d{2}[.,]\d{1,3})"
    r"(?P<arrow>\s*-->\s*)"
    r"(?P<end>(?:\d{1,2}:)?\d{1,2}:\d{2}[.,]\d{1,3})"
)

_SUBTITLE_EXTENSIONS = (".srt", ".vtt", ".ass", ".ssa", ".sub", ".txt")


def detect_format(text: str) -> str:
    """Return "vtt", "ass" or "srt" for a subtitle document."""
    stripped = text.lstrip("\ufeff").lstrip()
    if stripped.startswith(VTT_HEADER):
        return "vtt"
    if _ASS_MARKER_RE.search(text):
        return "ass"
    return "srt"


def to_canonical(raw: str) -> str:
    """Convert subtitle text of any supported dialect to WebVTT.

    Never raises: when no converter recognizes a single cue the raw text is
    returned as-is so the player can still try it.
    """
    if raw is None or not raw.strip():
        return VTT_HEADER + "\n\n"

    fmt = detect_format(raw)
    if fmt == "vtt":
        return raw

    cues = _ass_cues(raw) if fmt == "ass" else _srt_cues(raw)
    if cues:
        return _render_vtt(cues)

    logger.debug("No %s cues found, trying pysubs2 autodetection", fmt)
    try:
        return _convert_with_pysubs2(raw)
    except SubtitleParseError as e:
        logger.warning("Subtitle conversion failed, passing raw text through: %s", e)
        return raw


def shift_timestamps(text: str, offset_seconds: float) -> str:
    """Subtract offset_seconds from every cue timing pair, flooring at zero.

    Matches both HH:MM:SS.mmm and the hours-omitted MM:SS.mmm form; output is
    always rendered as HH:MM:SS.mmm.
    """
    if not offset_seconds:
        return text

    offset_ms = int(round(offset_seconds * 1000))

    def _shift(match: re.Match) -> str:
        start = max(0, _parse_timestamp_ms(match.group("start")) - offset_ms)
        end = max(0, _parse_timestamp_ms(match.group("end")) - offset_ms)
        return f"{_format_timestamp_ms(start)}{match.group('arrow')}{_format_timestamp_ms(end)}"

    return _TIMESTAMP_PAIR_RE.sub(_shift, text)


def decode_subtitle_bytes(payload: bytes) -> str:
    """Decode a downloaded subtitle payload to text."""
    if payload.startswith(b"\xef\xbb\xbf"):
        return payload.decode("utf-8-sig", errors="replace")
    if payload.startswith((b"\xff\xfe", b"\xfe\xff")):
        return payload.decode("utf-16", errors="replace")
    for encoding in ("utf-8", "cp1252"):
        try:
            return payload.decode(encoding)
        except UnicodeDecodeError:
            continue
    return payload.decode("latin-1")


def unpack_subtitle_payload(payload: bytes) -> bytes:
    """Unwrap a subtitle download: ZIP archive, then gzip, then raw bytes.

    Each stage falls through to the next on failure.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as zf:
            member = _pick_archive_member(zf.namelist())
            if member:
                logger.debug("Extracting %s from subtitle archive", member)
                return zf.read(member)
            logger.warning("Subtitle archive has no subtitle files")
    except zipfile.BadZipFile:
        logger.debug("Subtitle payload is not a ZIP archive")

    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, zlib.error):
        logger.debug("Subtitle payload is not gzip compressed, using raw bytes")

    return payload


def _pick_archive_member(names: list[str]) -> str | None:
    files = [n for n in names if not n.endswith("/")]
    for ext in _SUBTITLE_EXTENSIONS:
        for name in files:
            if name.lower().endswith(ext):
                return name
    return files[0] if files else None


# ─── ASS / SSA ───────────────────────────────────────────────────────────────


def _ass_cues(text: str) -> list[tuple[str, str, str]]:
    fields = _ASS_DEFAULT_FIELDS
    cues = []
    for line in text.splitlines():
        stripped = line.strip()
        key, _, value = stripped.partition(":")
        key = key.strip().lower()
        if key == "format":
            declared = [f.strip().lower() for f in value.split(",")]
            if "text" in declared:
                fields = declared
            continue
        if key != "dialogue":
            continue

        parts = value.split(",", len(fields) - 1)
        if len(parts) < len(fields):
            continue
        record = dict(zip(fields, parts))
        start = _ass_time(record.get("start", ""))
        end = _ass_time(record.get("end", ""))
        if start is None or end is None:
            continue
        body = _clean_ass_text(record.get("text", ""))
        if body:
            cues.append((start, end, body))
    return cues


def _ass_time(value: str) -> str | None:
    """Pad an ASS H:MM:SS.cc time to HH:MM:SS.cc."""
    m = _ASS_TIME_RE.match(value)
    if not m:
        return None
    hours, minutes, seconds, fraction = m.groups()
    return f"{int(hours):02d}:{minutes}:{seconds}.{fraction}"


def _clean_ass_text(text: str) -> str:
    text = _OVERRIDE_TAG_RE.sub("", text)
    text = text.replace("\\N", "\n").replace("\\n", "\n").replace("\\h", " ")
    lines = [line.strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)


# ─── SubRip ──────────────────────────────────────────────────────────────────


def _srt_cues(text: str) -> list[tuple[str, str, str]]:
    normalized = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    cues = []
    for block in re.split(r"\n\s*\n", normalized.strip()):
        lines = block.split("\n")
        # The index line is optional, so find the timing line by content
        timing_index = next((i for i, line in enumerate(lines) if "-->" in line), None)
        if timing_index is None:
            continue
        m = _SRT_TIMING_RE.search(lines[timing_index])
        if not m:
            continue
        body = "\n".join(lines[timing_index + 1:]).strip()
        cues.append((m.group(1).replace(",", "."), m.group(2).replace(",", "."), body))
    return cues


# ─── Shared helpers ──────────────────────────────────────────────────────────


def _render_vtt(cues: list[tuple[str, str, str]]) -> str:
    blocks = [f"{start} --> {end}\n{body}" if body else f"{start} --> {end}" for start, end, body in cues]
    return VTT_HEADER + "\n\n" + "\n\n".join(blocks) + "\n"


def _convert_with_pysubs2(text: str) -> str:
    """Convert with pysubs2's format autodetection.

    Raises:
        SubtitleParseError: If pysubs2 cannot read the text or finds no events.
    """
    try:
        subs = pysubs2.SSAFile.from_string(text, fps=DEFAULT_FPS)
    except (Pysubs2Error, ValueError) as e:
        raise SubtitleParseError(f"Unrecognized subtitle content: {e}") from e
    if not subs.events:
        raise SubtitleParseError("No subtitle events found")
    return subs.to_string("vtt")


def _parse_timestamp_ms(value: str) -> int:
    clock, _, fraction = re.split(r"([.,])", value, maxsplit=1)
    parts = [int(p) for p in clock.split(":")]
    while len(parts) < 3:
        parts.insert(0, 0)
    hours, minutes, seconds = parts
    millis = int(fraction.ljust(3, "0")[:3]) if fraction else 0
    return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis


def _format_timestamp_ms(total_ms: int) -> str:
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"
