"""Remote FTP/FTPS source channel.

Keeps a registry of configured remote sources and one shared control
connection used for directory listings. Every byte transfer (size query,
range stream) runs on its own dedicated connection: issuing RETR on the
control connection while a listing is in flight corrupts the session.
"""

import ftplib
import logging
import posixpath
import re
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, NamedTuple, Optional
from urllib.parse import quote

from config import get_settings
from error_handler import (
    ConfigurationError,
    NotFoundError,
    ReconnectionError,
    RemoteConnectionError,
)

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".webm", ".m4v", ".wmv")

# LIST output, Unix style: "-rw-r--r-- 1 owner group 12345 Jan 01 12:00 name"
_UNIX_LIST_RE = re.compile(
    r"^(?P<kind>[-dl])\S*\s+\d+\s+\S+\s+\S+\s+(?P<size>\d+)\s+"
    r"\w{3}\s+\d{1,2}\s+[\d:]{4,5}\s+(?P<name>.+)$"
)
# LIST output, DOS/IIS style: "01-31-24  09:15PM       <DIR>          name"
_DOS_LIST_RE = re.compile(
    r"^\d{2}-\d{2}-\d{2,4}\s+\d{1,2}:\d{2}(?:AM|PM)?\s+(?P<size><DIR>|\d+)\s+(?P<name>.+)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RemoteSourceConfig:
    """Connection settings for one remote source. Replaced wholesale, never mutated."""

    id: str
    host: str
    port: int = 21
    user: str = "anonymous"
    password: str = ""
    secure: bool = False
    reject_unauthorized: bool = True
    remote_path: str = "/"
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteSourceConfig":
        """Build a config from the UI payload (accepts camelCase keys)."""
        host = str(data.get("host") or "").strip()
        if not host:
            raise ValueError("host is required")
        reject = data.get("reject_unauthorized", data.get("rejectUnauthorized", True))
        return cls(
            id=str(data.get("id") or host),
            host=host,
            port=int(data.get("port") or 21),
            user=str(data.get("user") or "anonymous"),
            password=str(data.get("password") or ""),
            secure=bool(data.get("secure", False)),
            reject_unauthorized=reject is not False,
            remote_path=str(data.get("remote_path") or data.get("remotePath") or "/"),
            name=str(data.get("name") or ""),
        )

    def to_safe_dict(self) -> dict:
        """Config without the password, for API responses and logs."""
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": "***configured***" if self.password else "",
            "secure": self.secure,
            "reject_unauthorized": self.reject_unauthorized,
            "remote_path": self.remote_path,
        }


class _Entry(NamedTuple):
    name: str
    is_dir: bool
    size: int


class _ListingTimeout(Exception):
    pass


def open_ftp_connection(config: RemoteSourceConfig, timeout: float) -> ftplib.FTP:
    """Open and log in an FTP or FTPS connection in binary mode.

    Raises:
        RemoteConnectionError: On auth, network or TLS trust failure.
    """
    if config.secure:
        context = ssl.create_default_context()
        if not config.reject_unauthorized:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        ftp: ftplib.FTP = ftplib.FTP_TLS(context=context, timeout=timeout)
    else:
        ftp = ftplib.FTP(timeout=timeout)

    try:
        ftp.connect(config.host, config.port)
        ftp.login(config.user, config.password)
        if config.secure:
            ftp.prot_p()
        ftp.voidcmd("TYPE I")
    except ftplib.error_perm as e:
        _close_quietly(ftp)
        raise RemoteConnectionError(
            f"Login to {config.host} failed: {e}",
            context={"source_id": config.id},
            troubleshooting="Check the FTP username and password.",
        ) from e
    except ssl.SSLError as e:
        _close_quietly(ftp)
        raise RemoteConnectionError(
            f"TLS handshake with {config.host} failed: {e}",
            context={"source_id": config.id},
            troubleshooting="Disable certificate verification for self-signed servers.",
        ) from e
    except ftplib.all_errors as e:
        _close_quietly(ftp)
        raise RemoteConnectionError(
            f"Cannot connect to {config.host}:{config.port}: {e}",
            context={"source_id": config.id},
        ) from e
    return ftp


def redact_locator(locator: str) -> str:
    """Locator with any ftp:// credentials hidden, for logs and error messages."""
    if locator.startswith("ftp://") and "@" in locator:
        return "ftp://***@" + locator.rsplit("@", 1)[1]
    return locator


def _close_quietly(ftp) -> None:
    try:
        ftp.close()
    except (OSError, EOFError):
        pass


def _is_missing(error: Exception) -> bool:
    return str(error).startswith("550")


class RemoteRangeStream:
    """Byte stream from a RETR on a dedicated connection, starting at an offset.

    Iterating yields chunks in source order; the connection is closed when
    iteration ends, fails or close() is called.
    """

    def __init__(self, client, conn, path: str, start_byte: int, chunk_size: int):
        self.path = path
        self.start_byte = start_byte
        self.chunk_size = chunk_size
        self._client = client
        self._conn = conn
        self._closed = False
        self._lock = threading.Lock()

    def __iter__(self) -> Iterator[bytes]:
        try:
            while True:
                chunk = self._conn.recv(self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._conn.close()
        except OSError:
            pass
        # Dedicated connection: dropping it aborts the transfer server-side
        _close_quietly(self._client)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class RemoteFile:
    """Dedicated connection bound to one remote path."""

    def __init__(self, client, config: RemoteSourceConfig, path: str, chunk_size: int):
        self.config = config
        self.path = path
        self.chunk_size = chunk_size
        self._client = client
        self._handed_off = False

    def size(self) -> int:
        try:
            size = self._client.size(self.path)
        except ftplib.error_perm as e:
            if _is_missing(e):
                raise NotFoundError(f"Remote file not found: {self.path}") from e
            raise RemoteConnectionError(f"SIZE failed for {self.path}: {e}") from e
        except ftplib.all_errors as e:
            raise RemoteConnectionError(f"SIZE failed for {self.path}: {e}") from e
        if size is None:
            raise RemoteConnectionError(f"{self.config.host} did not report a size for {self.path}")
        return int(size)

    def open_stream(self, start_byte: int = 0) -> RemoteRangeStream:
        """Start RETR at start_byte. The returned stream owns the connection."""
        try:
            conn = self._client.transfercmd(f"RETR {self.path}", rest=start_byte or None)
        except ftplib.error_perm as e:
            self.close()
            if _is_missing(e):
                raise NotFoundError(f"Remote file not found: {self.path}") from e
            raise RemoteConnectionError(f"RETR failed for {self.path}: {e}") from e
        except ftplib.all_errors as e:
            self.close()
            raise RemoteConnectionError(f"RETR failed for {self.path}: {e}") from e
        self._handed_off = True
        return RemoteRangeStream(self._client, conn, self.path, start_byte, self.chunk_size)

    def close(self) -> None:
        if not self._handed_off:
            _close_quietly(self._client)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FtpChannel:
    """Registry of remote sources plus listing, size and range-read operations."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        list_timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
        connection_factory: Optional[Callable[[RemoteSourceConfig, float], object]] = None,
    ):
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.ftp_timeout
        self.list_timeout = list_timeout if list_timeout is not None else settings.ftp_list_timeout
        self.chunk_size = chunk_size or settings.stream_chunk_size
        self.connection_factory = connection_factory or open_ftp_connection

        self._configs: dict[str, RemoteSourceConfig] = {}
        self._configs_lock = threading.Lock()

        # Shared control connection, used for listings only. _state_lock is
        # never held across network I/O; _listing_lock is held for one
        # directory listing at a time.
        self._client = None
        self._client_source_id: Optional[str] = None
        self._retired: list = []
        self._state_lock = threading.Lock()
        self._listing_lock = threading.Lock()
        self._mlsd_unsupported: set[str] = set()

        self.connection_attempts = 0

    # ─── Registry ────────────────────────────────────────────────────────────

    def add_config(self, config: RemoteSourceConfig) -> None:
        """Register or replace a source without connecting."""
        with self._configs_lock:
            self._configs[config.id] = config
        logger.info("Registered remote source %s (%s)", config.id, config.host)

    def remove_config(self, source_id: str) -> bool:
        with self._configs_lock:
            removed = self._configs.pop(source_id, None)
        if removed is None:
            return False
        self._detach_client(source_id)
        logger.info("Removed remote source %s", source_id)
        return True

    def list_configs(self) -> list[RemoteSourceConfig]:
        with self._configs_lock:
            return list(self._configs.values())

    def has_configs(self) -> bool:
        with self._configs_lock:
            return bool(self._configs)

    def resolve_config(self, source_id: Optional[str] = None, host: Optional[str] = None) -> RemoteSourceConfig:
        """Look up a source by id, then host, then fall back to the first one.

        The first-config fallback keeps older clients that never send a
        source id working; with several sources it may pick the wrong one.

        Raises:
            ConfigurationError: If no source is registered at all.
        """
        configs = self.list_configs()
        if not configs:
            raise ConfigurationError()

        if source_id:
            for config in configs:
                if config.id == source_id:
                    return config
        if host:
            for config in configs:
                if config.host == host:
                    return config

        fallback = configs[0]
        if source_id or host:
            logger.warning(
                "Remote source %s not found, falling back to %s",
                source_id or host,
                fallback.id,
            )
        return fallback

    # ─── Connections ─────────────────────────────────────────────────────────

    def _open(self, config: RemoteSourceConfig):
        self.connection_attempts += 1
        return self.connection_factory(config, self.timeout)

    def connect(self, config: RemoteSourceConfig) -> None:
        """Open the shared control connection and register the config on success.

        Raises:
            RemoteConnectionError: On auth, network or TLS failure.
        """
        client = self._open(config)
        self._install_client(client, config.id)
        self.add_config(config)
        logger.info("Connected to %s", config.host)

    def disconnect(self) -> None:
        self._detach_client()

    def _install_client(self, client, source_id: str) -> None:
        with self._state_lock:
            if self._client is not None:
                self._retired.append(self._client)
            self._client = client
            self._client_source_id = source_id
        self._close_retired()

    def _detach_client(self, source_id: Optional[str] = None) -> None:
        """Drop the control connection without waiting for a listing that uses it.

        With source_id, only a connection to that source is dropped.
        """
        with self._state_lock:
            if self._client is None:
                return
            if source_id is not None and self._client_source_id != source_id:
                return
            self._retired.append(self._client)
            self._client = None
            self._client_source_id = None
        self._close_retired()

    def _close_retired(self) -> None:
        # While a listing runs, the listing thread closes them when it is done
        while self._listing_lock.acquire(blocking=False):
            try:
                with self._state_lock:
                    retired, self._retired = self._retired, []
                for client in retired:
                    _close_quietly(client)
            finally:
                self._listing_lock.release()
            # Anything retired while we held the lock is ours to close
            with self._state_lock:
                if not self._retired:
                    return

    def _control_connection(self, config: RemoteSourceConfig):
        """Return the control connection for config, reconnecting if needed."""
        with self._state_lock:
            if self._client is not None and self._client_source_id == config.id:
                return self._client
        self._detach_client()
        try:
            client = self._open(config)
        except RemoteConnectionError as e:
            raise ReconnectionError(f"Could not reconnect to {config.host}: {e}") from e
        self._install_client(client, config.id)
        logger.info("Control connection to %s (re)established", config.host)
        return client

    def open_file(self, source_id: Optional[str], path: str) -> RemoteFile:
        """Open a dedicated connection for byte access to one remote file."""
        config = self.resolve_config(source_id)
        client = self._open(config)
        return RemoteFile(client, config, path, self.chunk_size)

    def size(self, source_id: Optional[str], path: str) -> int:
        """File size in bytes, queried on a dedicated connection."""
        with self.open_file(source_id, path) as remote:
            return remote.size()

    def open_range_stream(self, source_id: Optional[str], path: str, start_byte: int = 0) -> RemoteRangeStream:
        """Dedicated-connection byte stream of path beginning at start_byte."""
        remote = self.open_file(source_id, path)
        return remote.open_stream(start_byte)

    def build_locator(self, source_id: Optional[str], path: str) -> Optional[str]:
        """ftp:// URL the transcoding engine can open itself, None for FTPS sources."""
        config = self.resolve_config(source_id)
        if config.secure:
            return None
        if not path.startswith("/"):
            path = "/" + path
        credentials = f"{quote(config.user, safe='')}:{quote(config.password, safe='')}@"
        return f"ftp://{credentials}{config.host}:{config.port}{quote(path)}"

    # ─── Listing ─────────────────────────────────────────────────────────────

    def list_media(
        self,
        source_id: Optional[str] = None,
        root_path: Optional[str] = None,
        max_depth: Optional[int] = None,
    ) -> list[dict]:
        """Recursively list video files under root_path.

        Unreadable or slow directories are skipped; a failed reconnect makes
        the whole call return an empty list.
        """
        config = self.resolve_config(source_id)
        root = root_path or config.remote_path or "/"
        depth_limit = max_depth if max_depth is not None else get_settings().ftp_scan_max_depth
        results: list[dict] = []

        try:
            self._scan(config, root, 0, depth_limit, results)
        except ReconnectionError as e:
            logger.error("Scan of %s aborted: %s", config.host, e)
            return []

        logger.info("Scan complete: found %d media files on %s%s", len(results), config.host, root)
        return results

    def _scan(self, config: RemoteSourceConfig, path: str, depth: int, max_depth: int, results: list) -> None:
        if depth > max_depth:
            logger.debug("Max depth (%d) reached, not descending into %s", max_depth, path)
            return

        for entry in self._list_dir(config, path):
            if entry.name in (".", "..") or entry.name.startswith("."):
                continue
            full_path = posixpath.join(path, entry.name)
            if entry.is_dir:
                self._scan(config, full_path, depth + 1, max_depth, results)
            elif entry.name.lower().endswith(VIDEO_EXTENSIONS):
                results.append({
                    "name": entry.name,
                    "path": full_path,
                    "size": entry.size,
                    "type": "video",
                    "source": "ftp",
                    "source_id": config.id,
                })

    def _list_dir(self, config: RemoteSourceConfig, path: str) -> list[_Entry]:
        """List one directory, holding the control connection only for this listing."""
        try:
            with self._listing_lock:
                return self._list_dir_once(config, path)
        finally:
            self._close_retired()

    def _list_dir_once(self, config: RemoteSourceConfig, path: str) -> list[_Entry]:
        for attempt in (1, 2):
            client = self._control_connection(config)
            try:
                return self._timed_listing(client, config, path)
            except (_ListingTimeout, TimeoutError):
                logger.warning("Listing %s timed out after %.0fs, skipping", path, self.list_timeout)
                # State of an aborted transfer is unknown, start over next time
                self._retire_client(client)
                return []
            except ftplib.error_perm as e:
                logger.warning("Cannot access %s: %s", path, e)
                return []
            except (EOFError, OSError, ftplib.error_temp, ftplib.error_reply, ftplib.error_proto) as e:
                self._retire_client(client)
                if attempt == 2:
                    logger.warning("Listing %s failed after reconnect: %s", path, e)
                    return []
                logger.info("Control connection to %s lost (%s), reconnecting", config.host, e)
        return []

    def _retire_client(self, client) -> None:
        with self._state_lock:
            if self._client is client:
                self._client = None
                self._client_source_id = None
            if client not in self._retired:
                self._retired.append(client)

    def _timed_listing(self, client, config: RemoteSourceConfig, path: str) -> list[_Entry]:
        deadline = time.monotonic() + self.list_timeout
        lines: list[str] = []

        def _collect(line: str) -> None:
            if time.monotonic() > deadline:
                raise _ListingTimeout(path)
            lines.append(line)

        _apply_timeout(client, self.list_timeout)
        try:
            if config.id not in self._mlsd_unsupported:
                try:
                    client.retrlines(f"MLSD {path}", _collect)
                    return _parse_mlsd(lines)
                except ftplib.error_perm as e:
                    if not str(e).startswith("50"):
                        raise
                    logger.debug("%s does not support MLSD, using LIST", config.host)
                    self._mlsd_unsupported.add(config.id)
                    lines.clear()
            # Navigate with cwd first, some servers ignore LIST arguments
            client.cwd(path)
            client.retrlines("LIST", _collect)
            return _parse_list(lines)
        finally:
            _apply_timeout(client, self.timeout)


def _apply_timeout(client, timeout: float) -> None:
    client.timeout = timeout
    sock = getattr(client, "sock", None)
    if sock is not None:
        sock.settimeout(timeout)


def _parse_mlsd(lines: list[str]) -> list[_Entry]:
    entries = []
    for line in lines:
        facts_part, _, name = line.partition(" ")
        if not name:
            continue
        facts = {}
        for fact in facts_part.rstrip(";").split(";"):
            key, _, value = fact.partition("=")
            facts[key.lower()] = value
        kind = facts.get("type", "").lower()
        if kind in ("cdir", "pdir"):
            continue
        size = int(facts.get("size", 0) or 0)
        entries.append(_Entry(name, kind == "dir", size))
    return entries


def _parse_list(lines: list[str]) -> list[_Entry]:
    entries = []
    for line in lines:
        m = _UNIX_LIST_RE.match(line)
        if m:
            name = m.group("name")
            if m.group("kind") == "l":
                name = name.split(" -> ", 1)[0]
            entries.append(_Entry(name, m.group("kind") == "d", int(m.group("size"))))
            continue
        m = _DOS_LIST_RE.match(line)
        if m:
            is_dir = m.group("size").upper() == "<DIR>"
            entries.append(_Entry(m.group("name"), is_dir, 0 if is_dir else int(m.group("size"))))
            continue
        logger.debug("Unparseable LIST line: %s", line)
    return entries
