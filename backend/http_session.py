"""HTTP session with retry logic, backoff, and rate-limit awareness.

Used for every outbound HTTP call the gateway makes (subtitle index search,
subtitle downloads, external caption URLs).
"""

import logging
import threading
import time
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

import version
from error_handler import RateLimitError, RemoteConnectionError

logger = logging.getLogger(__name__)


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 1.0,
    timeout: int = 15,
    user_agent: str | None = None,
    auth_hint: Optional[dict] = None,
) -> "RetryingSession":
    """Create a configured RetryingSession."""
    session = RetryingSession(timeout=timeout, auth_hint=auth_hint)
    session.headers["User-Agent"] = user_agent or version.user_agent()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


class RetryingSession(requests.Session):
    """Session with default timeout and per-host rate-limit awareness.

    A 429 or an exhausted X-RateLimit-Remaining from one host only holds back
    further requests to that host.
    """

    def __init__(self, timeout: int = 15, auth_hint: Optional[dict] = None):
        super().__init__()
        self.default_timeout = timeout
        # host -> troubleshooting text for 401/403 from that host
        self.auth_hint = auth_hint or {}
        self._rate_limit_until: dict[str, float] = {}
        self._rate_limit_lock = threading.Lock()

    def rate_limited_for(self, url: str) -> float:
        """Seconds left in the rate-limit window of url's host, 0 if none."""
        with self._rate_limit_lock:
            until = self._rate_limit_until.get(url_host(url), 0.0)
        return max(until - time.time(), 0.0)

    def _hold_back(self, url: str, seconds: float) -> None:
        with self._rate_limit_lock:
            self._rate_limit_until[url_host(url)] = time.time() + seconds

    def request(self, method, url, **kwargs):
        if "timeout" not in kwargs:
            kwargs["timeout"] = self.default_timeout

        host = url_host(url)
        wait = self.rate_limited_for(url)
        if wait > 0:
            raise RateLimitError(
                f"Rate limited by {host}, retry after {wait:.0f}s",
                context={"retry_after": int(wait) + 1},
            )

        try:
            resp = super().request(method, url, **kwargs)
        except requests.Timeout as e:
            logger.warning("Timeout for %s %s", method, url)
            raise RemoteConnectionError(f"Request to {host} timed out") from e
        except requests.RequestException as e:
            logger.warning("Request error for %s %s: %s", method, url, e)
            raise RemoteConnectionError(f"Request to {host} failed: {e}") from e

        if resp.status_code == 429:
            wait_seconds = _retry_after(resp.headers.get("Retry-After"))
            self._hold_back(url, wait_seconds)
            logger.warning("Rate limited by %s, waiting %ds", host, wait_seconds)
            raise RateLimitError(
                f"Rate limited by {host}, retry after {wait_seconds}s",
                context={"retry_after": wait_seconds},
            )

        if resp.status_code in (401, 403):
            raise RemoteConnectionError(
                f"Authentication failed for {host}: HTTP {resp.status_code}",
                troubleshooting=self.auth_hint.get(host),
            )

        remaining = resp.headers.get("X-RateLimit-Remaining") or resp.headers.get("x-ratelimit-remaining")
        if remaining is not None:
            try:
                if int(remaining) <= 1:
                    self._hold_back(url, _reset_after(
                        resp.headers.get("X-RateLimit-Reset") or resp.headers.get("x-ratelimit-reset")
                    ))
            except (ValueError, TypeError):
                pass

        return resp


def _retry_after(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 60


def _reset_after(value) -> float:
    """Seconds until a X-RateLimit-Reset value, which may be relative or absolute."""
    try:
        reset = float(value)
    except (TypeError, ValueError):
        return 5.0
    # Absolute Unix timestamps are > 1e9; milliseconds are > 1e12
    if reset > 1e12:
        reset /= 1000.0
    if reset > 1e9:
        return max(reset - time.time(), 0.0)
    return reset


def url_host(url: str) -> str:
    return requests.utils.urlparse(url).netloc or url
