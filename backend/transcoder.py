"""FFmpeg transcode supervisor for browser-incompatible containers.

Builds the ffmpeg invocation for one (input, seek, audio track, encoder
profile) combination, starts it with stdout piped to the HTTP response and
owns the process until it exits or is terminated. Every running session is
tracked in a live set so a service shutdown can stop all of them.
"""

import collections
import itertools
import logging
import platform
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Optional

from config import get_settings
from error_handler import TranscodeSetupError
from ftp_channel import redact_locator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncoderProfile:
    """Video encoder settings for one platform/hardware combination."""

    name: str
    video_codec: str
    video_args: tuple[str, ...] = ()
    hardware: bool = False


SOFTWARE_PROFILE = EncoderProfile(
    name="software",
    video_codec="libx264",
    video_args=("-preset", "ultrafast", "-tune", "zerolatency", "-pix_fmt", "yuv420p"),
)

ENCODER_PROFILES = {
    "software": SOFTWARE_PROFILE,
    "videotoolbox": EncoderProfile(
        name="videotoolbox",
        video_codec="h264_videotoolbox",
        video_args=("-realtime", "1", "-allow_sw", "1", "-pix_fmt", "yuv420p"),
        hardware=True,
    ),
    "nvenc": EncoderProfile(
        name="nvenc",
        video_codec="h264_nvenc",
        video_args=("-preset", "p1", "-tune", "ll", "-pix_fmt", "yuv420p"),
        hardware=True,
    ),
}


def detect_profile(hwaccel: Optional[str] = None) -> EncoderProfile:
    """Pick the encoder profile for this host.

    "auto" uses VideoToolbox on macOS and the software encoder elsewhere;
    any other known name forces that profile.
    """
    choice = (hwaccel or get_settings().hwaccel or "auto").lower()
    if choice == "auto":
        if platform.system() == "Darwin":
            return ENCODER_PROFILES["videotoolbox"]
        return SOFTWARE_PROFILE
    profile = ENCODER_PROFILES.get(choice)
    if profile is None:
        logger.warning("Unknown hwaccel %r, using software encoder", choice)
        return SOFTWARE_PROFILE
    return profile


def build_ffmpeg_args(
    input_locator: str,
    seek_seconds: float = 0.0,
    audio_track: Optional[int] = None,
    profile: EncoderProfile = SOFTWARE_PROFILE,
    ffmpeg_path: str = "ffmpeg",
    video_bitrate: str = "4M",
    audio_bitrate: str = "192k",
) -> list[str]:
    """Build the ffmpeg argument list for a fragmented MP4 transcode to stdout.

    Args:
        input_locator: Local path, ftp:// URL, or "pipe:0" for stdin input.
        seek_seconds: Start offset. Seeks the input before decoding.
        audio_track: Absolute stream index of the audio track to keep.
        profile: Encoder profile (hardware or software).
    """
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostdin"]
    if input_locator == "pipe:0":
        # stdin carries media bytes, so -nostdin must not be used
        cmd.remove("-nostdin")

    if seek_seconds and seek_seconds > 0:
        cmd += ["-accurate_seek", "-ss", f"{seek_seconds:.3f}"]
    cmd += ["-i", input_locator]

    if audio_track is not None:
        cmd += ["-map", "0:v:0", "-map", f"0:{audio_track}"]

    cmd += ["-c:v", profile.video_codec, *profile.video_args]
    cmd += ["-b:v", video_bitrate, "-maxrate", video_bitrate, "-bufsize", _double_bitrate(video_bitrate)]
    cmd += ["-fps_mode", "cfr"]
    cmd += [
        "-c:a", "aac",
        "-b:a", audio_bitrate,
        "-ar", "48000",
        "-ac", "2",
        "-af", "aresample=async=1:first_pts=0",
    ]
    cmd += [
        "-f", "mp4",
        "-movflags", "frag_keyframe+empty_moov+default_base_moof",
        "pipe:1",
    ]
    return cmd


def _double_bitrate(bitrate: str) -> str:
    """Double a bitrate string, e.g. 4M becomes 8M."""
    number = bitrate.rstrip("kKmM")
    suffix = bitrate[len(number):]
    try:
        return f"{int(number) * 2}{suffix}"
    except ValueError:
        return bitrate


class SessionState(str, Enum):
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


_session_ids = itertools.count(1)


@dataclass(eq=False)
class TranscodeSession:
    """One ffmpeg process and the response it is piping to."""

    process: subprocess.Popen
    sink: str
    created_at: float = field(default_factory=time.time)
    id: int = field(default_factory=lambda: next(_session_ids))
    state: SessionState = SessionState.RUNNING
    feeder: Optional[threading.Thread] = None
    stderr_tail: collections.deque = field(default_factory=lambda: collections.deque(maxlen=40), repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid


class TranscodeSupervisor:
    """Starts transcode sessions and guarantees each one is torn down exactly once."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        grace_seconds: Optional[float] = None,
        profile: Optional[EncoderProfile] = None,
        popen=subprocess.Popen,
    ):
        settings = get_settings()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.grace_seconds = grace_seconds if grace_seconds is not None else settings.terminate_grace_seconds
        self.video_bitrate = settings.transcode_video_bitrate
        self.audio_bitrate = settings.transcode_audio_bitrate
        self.profile = profile or detect_profile(settings.hwaccel)
        self._popen = popen
        self._sessions: set[TranscodeSession] = set()
        self._sessions_lock = threading.Lock()

    def start(
        self,
        input_locator: str,
        seek_seconds: float = 0.0,
        audio_track: Optional[int] = None,
        sink: str = "",
        feed: Optional[Iterable[bytes]] = None,
    ) -> TranscodeSession:
        """Spawn ffmpeg and register the session.

        Args:
            input_locator: Path or URL ffmpeg can open. Ignored when feed is given.
            feed: Byte chunks to pump into ffmpeg's stdin (remote sources
                  ffmpeg cannot address itself).

        Raises:
            TranscodeSetupError: If ffmpeg cannot be started.
        """
        locator = "pipe:0" if feed is not None else input_locator
        cmd = build_ffmpeg_args(
            locator,
            seek_seconds=seek_seconds,
            audio_track=audio_track,
            profile=self.profile,
            ffmpeg_path=self.ffmpeg_path,
            video_bitrate=self.video_bitrate,
            audio_bitrate=self.audio_bitrate,
        )
        logger.debug("Starting ffmpeg: %s", _redact(cmd))

        try:
            process = self._popen(
                cmd,
                stdin=subprocess.PIPE if feed is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except FileNotFoundError as e:
            raise TranscodeSetupError(f"ffmpeg not found: {self.ffmpeg_path}") from e
        except OSError as e:
            raise TranscodeSetupError(f"Could not start ffmpeg: {e}") from e

        session = TranscodeSession(process=process, sink=sink)
        with self._sessions_lock:
            self._sessions.add(session)

        threading.Thread(
            target=_drain_stderr,
            args=(session,),
            name=f"transcode-stderr-{session.id}",
            daemon=True,
        ).start()

        if feed is not None:
            session.feeder = threading.Thread(
                target=self._pump_input,
                args=(session, feed),
                name=f"transcode-feed-{session.id}",
                daemon=True,
            )
            session.feeder.start()

        logger.info(
            "Transcode session %d started (pid=%s, seek=%.2fs, audio=%s, encoder=%s)",
            session.id, session.pid, seek_seconds or 0.0, audio_track, self.profile.name,
        )
        return session

    def _pump_input(self, session: TranscodeSession, feed: Iterable[bytes]) -> None:
        stdin = session.process.stdin
        try:
            for chunk in feed:
                if session.state is not SessionState.RUNNING:
                    break
                stdin.write(chunk)
        except (BrokenPipeError, ValueError):
            logger.debug("Transcode session %d stopped reading input", session.id)
        except OSError as e:
            logger.warning("Input feed for transcode session %d failed: %s", session.id, e)
        finally:
            close = getattr(feed, "close", None)
            if close is not None:
                close()
            try:
                stdin.close()
            except OSError:
                pass

    def iter_output(self, session: TranscodeSession, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """Yield ffmpeg output in order; the session is terminated when iteration stops."""
        stdout = session.process.stdout
        total = 0
        try:
            while True:
                chunk = stdout.read(chunk_size)
                if not chunk:
                    break
                total += len(chunk)
                yield chunk
            returncode = session.process.wait()
            if returncode != 0:
                stderr = _read_stderr(session)
                logger.error(
                    "ffmpeg exited with %s for session %d after %d bytes: %s",
                    returncode, session.id, total, stderr,
                )
            else:
                logger.info("Transcode session %d finished (%d bytes)", session.id, total)
        finally:
            self.terminate(session)

    def terminate(self, session: TranscodeSession) -> None:
        """Stop the process: SIGTERM, then SIGKILL after the grace window.

        Safe to call any number of times from any thread.
        """
        with session._lock:
            if session.state is not SessionState.RUNNING:
                return
            session.state = SessionState.TERMINATING

        process = session.process
        try:
            if process.poll() is None:
                logger.info("Terminating transcode session %d (pid=%s)", session.id, session.pid)
                process.terminate()
                try:
                    process.wait(timeout=self.grace_seconds)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        "Transcode session %d ignored SIGTERM for %.1fs, killing",
                        session.id, self.grace_seconds,
                    )
                    process.kill()
                    process.wait()
        except OSError as e:
            logger.debug("Signalling transcode session %d failed: %s", session.id, e)
        finally:
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    try:
                        pipe.close()
                    except OSError:
                        pass
            session.state = SessionState.EXITED
            with self._sessions_lock:
                self._sessions.discard(session)

    def terminate_all(self) -> int:
        """Terminate every live session. Returns how many were live."""
        with self._sessions_lock:
            sessions = list(self._sessions)
        for session in sessions:
            self.terminate(session)
        if sessions:
            logger.info("Terminated %d transcode session(s)", len(sessions))
        return len(sessions)

    def active_sessions(self) -> list[TranscodeSession]:
        with self._sessions_lock:
            return list(self._sessions)

    def active_count(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)


def _drain_stderr(session: TranscodeSession) -> None:
    """Keep the last ffmpeg stderr lines so a full pipe never stalls the encoder."""
    stderr = session.process.stderr
    if stderr is None:
        return
    try:
        for line in iter(stderr.readline, b""):
            session.stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())
    except (OSError, ValueError):
        pass


def _read_stderr(session: TranscodeSession) -> str:
    return "\n".join(session.stderr_tail)[-2000:]


def _redact(cmd: list[str]) -> str:
    return " ".join(redact_locator(arg) for arg in cmd)
