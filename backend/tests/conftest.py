"""Shared pytest fixtures for all tests."""

import ftplib
import io
import itertools
import os
import shutil
import subprocess
import tempfile
import time

import pytest

from config import reload_settings


@pytest.fixture
def temp_dir():
    """Create a temporary directory for file operations."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_settings(temp_dir, monkeypatch):
    """Point settings at a temp subtitle cache and quiet the logs."""
    monkeypatch.setenv("SCOOTY_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("SCOOTY_SUBTITLE_CACHE_DIR", os.path.join(temp_dir, "subs"))
    monkeypatch.setenv("SCOOTY_OPENSUBTITLES_API_KEY", "")
    monkeypatch.setenv("SCOOTY_TERMINATE_GRACE_SECONDS", "0.05")
    monkeypatch.setenv("SCOOTY_HWACCEL", "software")
    settings = reload_settings()
    yield settings
    monkeypatch.undo()
    reload_settings()


# ─── Fake FTP server ─────────────────────────────────────────────────────────


class FakeDataConnection:
    """Data socket of a RETR transfer."""

    def __init__(self, data: bytes):
        self._buffer = io.BytesIO(data)
        self.closed = False

    def recv(self, size: int) -> bytes:
        return self._buffer.read(size)

    def close(self):
        self.closed = True


class FakeFTP:
    """In-memory stand-in for ftplib.FTP, built from a {path: bytes} map."""

    def __init__(self, files, mlsd=True, denied=(), hanging=(), listing_delay=0.0):
        self.files = dict(files)
        self.mlsd = mlsd
        self.denied = set(denied)
        self.hanging = set(hanging)
        self.listing_delay = listing_delay
        self.dropped = False
        self.closed = False
        self.cwd_path = "/"
        self.timeout = None
        self.sock = None
        self.commands = []
        self.data_connections = []

    # Directory model derived from the file paths
    def _children(self, path):
        prefix = path.rstrip("/") + "/"
        entries = {}
        for file_path, data in self.files.items():
            if not file_path.startswith(prefix):
                continue
            head, _, rest = file_path[len(prefix):].partition("/")
            if rest:
                entries[head] = None
            else:
                entries[head] = len(data)
        return entries

    def _is_dir(self, path):
        return path == "/" or bool(self._children(path))

    def _check_alive(self):
        if self.dropped or self.closed:
            raise EOFError("connection closed")

    def size(self, path):
        self._check_alive()
        self.commands.append(f"SIZE {path}")
        if path not in self.files:
            raise ftplib.error_perm("550 No such file")
        return len(self.files[path])

    def transfercmd(self, cmd, rest=None):
        self._check_alive()
        self.commands.append(cmd if rest is None else f"REST {rest}; {cmd}")
        path = cmd[len("RETR "):]
        if path not in self.files:
            raise ftplib.error_perm("550 No such file")
        conn = FakeDataConnection(self.files[path][rest or 0:])
        self.data_connections.append(conn)
        return conn

    def cwd(self, path):
        self._check_alive()
        if not self._is_dir(path):
            raise ftplib.error_perm("550 Not a directory")
        self.cwd_path = path

    def retrlines(self, cmd, callback):
        self._check_alive()
        self.commands.append(cmd)
        if self.listing_delay:
            time.sleep(self.listing_delay)
        if cmd.startswith("MLSD"):
            if not self.mlsd:
                raise ftplib.error_perm("500 Unknown command MLSD")
            path = cmd[len("MLSD "):]
        else:
            path = self.cwd_path

        if path in self.hanging:
            raise TimeoutError("timed out")
        if path in self.denied:
            raise ftplib.error_perm("550 Permission denied")

        for name, size in sorted(self._children(path).items()):
            if cmd.startswith("MLSD"):
                if size is None:
                    callback(f"type=dir;modify=20240101120000; {name}")
                else:
                    callback(f"type=file;size={size};modify=20240101120000; {name}")
            elif size is None:
                callback(f"drwxr-xr-x 2 ftp ftp 4096 Jan 01 12:00 {name}")
            else:
                callback(f"-rw-r--r-- 1 ftp ftp {size} Jan 01 12:00 {name}")
        return "226 Transfer complete"

    def voidcmd(self, cmd):
        return "200 OK"

    def close(self):
        self.closed = True


class FakeFtpFactory:
    """connection_factory for FtpChannel that hands out FakeFTP clients."""

    def __init__(self, files=None, fail=False, **ftp_kwargs):
        self.files = files if files is not None else {}
        self.fail = fail
        self.ftp_kwargs = ftp_kwargs
        self.clients = []

    def __call__(self, config, timeout):
        from error_handler import RemoteConnectionError

        if self.fail:
            raise RemoteConnectionError(f"Cannot connect to {config.host}:{config.port}")
        client = FakeFTP(self.files, **self.ftp_kwargs)
        self.clients.append(client)
        return client


REMOTE_FILES = {
    "/movies/Heat (1995)/heat.mp4": bytes(range(256)) * 4,
    "/movies/Heat (1995)/heat.nfo": b"<movie/>",
    "/movies/Alien/alien.mkv": b"\x1a\x45\xdf\xa3" + b"\x00" * 60,
    "/shows/Show/Season 1/s01e01.avi": b"RIFF" + b"\x00" * 28,
    "/.hidden/secret.mp4": b"\x00" * 8,
}


@pytest.fixture
def ftp_factory():
    return FakeFtpFactory(REMOTE_FILES)


# ─── Fake ffmpeg processes ───────────────────────────────────────────────────


class RecordingStdin(io.BytesIO):
    """stdin pipe that keeps what was written after it is closed."""

    data = b""

    def close(self):
        if not self.closed:
            self.data = self.getvalue()
        super().close()


class FakeProcess:
    _pids = itertools.count(4000)

    def __init__(self, args, output=b"", exit_code=0, ignore_sigterm=False, stdin=None, **kwargs):
        self.args = args
        self.pid = next(self._pids)
        self.stdout = io.BytesIO(output)
        self.stderr = io.BytesIO(b"")
        self.stdin = RecordingStdin() if stdin == subprocess.PIPE else None
        self.exit_code = exit_code
        self.ignore_sigterm = ignore_sigterm
        self.returncode = None
        self.signals = []

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is not None:
            return self.returncode
        if self.signals and self.ignore_sigterm and "KILL" not in self.signals:
            raise subprocess.TimeoutExpired(self.args, timeout)
        self.returncode = self.exit_code
        return self.returncode

    def terminate(self):
        self.signals.append("TERM")
        if not self.ignore_sigterm:
            self.returncode = -15

    def kill(self):
        self.signals.append("KILL")
        self.returncode = -9


class FakePopen:
    """Popen replacement recording every spawned FakeProcess."""

    def __init__(self, output=b"ftypisom" + b"\x00" * 120, exit_code=0, ignore_sigterm=False, error=None):
        self.output = output
        self.exit_code = exit_code
        self.ignore_sigterm = ignore_sigterm
        self.error = error
        self.processes = []

    def __call__(self, args, **kwargs):
        if self.error is not None:
            raise self.error
        process = FakeProcess(
            args,
            output=self.output,
            exit_code=self.exit_code,
            ignore_sigterm=self.ignore_sigterm,
            **kwargs,
        )
        self.processes.append(process)
        return process


@pytest.fixture
def fake_popen():
    return FakePopen()


# ─── Subtitle extraction ─────────────────────────────────────────────────────


SAMPLE_SRT = "1\n00:00:01,000 --> 00:00:03,000\nHello\n\n2\n00:00:04,500 --> 00:00:06,000\nWorld\n\n"


class FakeExtractor:
    """SubtitleCache extractor that writes a fixed SRT and counts calls."""

    def __init__(self, content=SAMPLE_SRT):
        self.content = content
        self.calls = []

    def __call__(self, locator, track, output, feed=None):
        self.calls.append((locator, track))
        if feed is not None:
            for _ in feed:
                pass
        with open(output, "w", encoding="utf-8") as f:
            f.write(self.content)


@pytest.fixture
def extractor():
    return FakeExtractor()


# ─── Gateway and app ─────────────────────────────────────────────────────────


@pytest.fixture
def sample_media(temp_dir):
    """Local media files: a 1000-byte MP4 and a small MKV."""
    mp4 = os.path.join(temp_dir, "movie.mp4")
    with open(mp4, "wb") as f:
        f.write(bytes(i % 251 for i in range(1000)))
    mkv = os.path.join(temp_dir, "movie.mkv")
    with open(mkv, "wb") as f:
        f.write(b"\x1a\x45\xdf\xa3" + b"\x00" * 100)
    return {"mp4": mp4, "mkv": mkv}


@pytest.fixture
def gateway(temp_dir, ftp_factory, fake_popen, extractor):
    from ftp_channel import FtpChannel
    from gateway import MediaGateway
    from subtitle_cache import SubtitleCache
    from transcoder import SOFTWARE_PROFILE, TranscodeSupervisor

    gw = MediaGateway(
        channel=FtpChannel(connection_factory=ftp_factory, list_timeout=2.0),
        supervisor=TranscodeSupervisor(ffmpeg_path="ffmpeg", profile=SOFTWARE_PROFILE, popen=fake_popen),
        subtitle_cache=SubtitleCache(cache_dir=os.path.join(temp_dir, "subs"), extractor=extractor),
    )
    yield gw
    gw.shutdown()


@pytest.fixture
def app(gateway):
    from app import create_app

    return create_app(testing=True, gateway=gateway)


@pytest.fixture
def client(app):
    """Create a test client for the Flask app."""
    with app.test_client() as client:
        yield client


@pytest.fixture
def make_config():
    """Factory for RemoteSourceConfig objects pointing at the fake server."""
    from ftp_channel import RemoteSourceConfig

    def _make(**overrides):
        data = {"id": "nas", "host": "nas.local", "user": "scooty", "password": "s3cret", "remote_path": "/"}
        data.update(overrides)
        return RemoteSourceConfig.from_dict(data)

    return _make


# ─── Fake HTTP ───────────────────────────────────────────────────────────────


class FakeResponse:
    def __init__(self, status_code=200, content=b"", json_data=None, headers=None):
        self.status_code = status_code
        self.content = content
        self._json = json_data
        self.headers = headers or {}

    @property
    def text(self):
        return self.content.decode("utf-8", errors="replace")

    def json(self):
        return self._json


class FakeSession:
    """requests-style session answering from a {url prefix: FakeResponse} map."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self.closed = False

    def _answer(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        for prefix, response in self.responses.items():
            if url.startswith(prefix):
                return response
        return FakeResponse(404)

    def get(self, url, **kwargs):
        return self._answer("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._answer("POST", url, kwargs)

    def close(self):
        self.closed = True
