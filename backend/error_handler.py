"""Centralized error handling with structured JSON error responses.

Custom exception hierarchy with error codes, HTTP status mapping,
and troubleshooting hints. All GatewayError subtypes are automatically
caught by Flask error handlers and returned as structured JSON.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


# ─── Exception Hierarchy ─────────────────────────────────────────────────────


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        code: Machine-readable error code (e.g. "CFG_001")
        label: Short machine-readable error name returned as "error"
        http_status: HTTP status code to return
        context: Additional context data for debugging
        troubleshooting: Human-readable hint for resolving the issue
    """

    code: str = "GATEWAY_000"
    label: str = "gateway_error"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        context: Optional[dict] = None,
        troubleshooting: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.context = context or {}
        self.troubleshooting = troubleshooting


class ConfigurationError(GatewayError):
    """No remote sources configured, or a bad source reference."""

    code = "CFG_001"
    label = "not_configured"
    http_status = 503

    def __init__(self, message: str = "No remote sources configured", **kwargs: object) -> None:
        kwargs.setdefault(
            "troubleshooting",
            "Add an FTP source in Settings before playing remote files.",
        )
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class NotFoundError(GatewayError):
    """Missing file, remote path or track."""

    code = "NF_001"
    label = "not_found"
    http_status = 404


class RemoteConnectionError(GatewayError):
    """Remote server unreachable, auth failure or TLS trust failure."""

    code = "REMOTE_001"
    label = "connection_failed"
    http_status = 502


class ReconnectionError(RemoteConnectionError):
    """Reconnecting with the last-known config failed."""

    code = "REMOTE_002"
    label = "reconnection_failed"

    def __init__(self, message: str = "Reconnection to remote source failed", **kwargs: object) -> None:
        kwargs.setdefault("troubleshooting", "Check that the FTP server is reachable.")
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class RateLimitError(RemoteConnectionError):
    """The subtitle index asked us to slow down."""

    code = "REMOTE_003"
    label = "rate_limited"
    http_status = 429


class TranscodeSetupError(GatewayError):
    """The transcoding engine could not be started."""

    code = "TRANSCODE_001"
    label = "transcode_setup_failed"
    http_status = 500

    def __init__(self, message: str = "Transcoding setup failed", **kwargs: object) -> None:
        kwargs.setdefault("troubleshooting", "Check that ffmpeg is installed and SCOOTY_FFMPEG_PATH is correct.")
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class StreamInterruptedError(GatewayError):
    """Mid-transfer failure after response headers were sent. Logged only."""

    code = "STREAM_001"
    label = "stream_interrupted"
    http_status = 500


class SubtitleParseError(GatewayError):
    """Malformed subtitle content."""

    code = "SUB_001"
    label = "parse_error"
    http_status = 422


# ─── Response Envelope ───────────────────────────────────────────────────────


def error_payload(label: str, message: str, code: str, **extra: object) -> dict:
    """The JSON body every failed request gets, whatever raised."""
    payload: dict = {
        "error": label,
        "message": message,
        "code": code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    request_id = getattr(g, "request_id", None)
    if request_id:
        payload["request_id"] = request_id
    payload.update({k: v for k, v in extra.items() if v})
    return payload


def gateway_error_payload(error: GatewayError) -> dict:
    return error_payload(
        error.label,
        str(error),
        error.code,
        context=error.context,
        troubleshooting=error.troubleshooting,
    )


# ─── Flask Registration ──────────────────────────────────────────────────────


def register_error_handlers(app: Flask) -> None:
    """Install request IDs and the JSON error handlers on ``app``.

    The player may send its own X-Request-ID; it is reused so client and
    gateway logs line up. Werkzeug's HTTP errors (404, 405) are rendered in
    the same envelope as GatewayError.
    """

    @app.before_request
    def _assign_request_id() -> None:
        supplied = request.headers.get(REQUEST_ID_HEADER, "")
        g.request_id = supplied[:32] if supplied.isprintable() and supplied else uuid.uuid4().hex[:8]

    @app.after_request
    def _echo_request_id(response):
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.errorhandler(GatewayError)
    def _handle_gateway_error(error: GatewayError):
        log = logger.error if error.http_status >= 500 else logger.warning
        log("[%s] %s %s: %s", error.code, request.method, request.path, error)
        return jsonify(gateway_error_payload(error)), error.http_status

    @app.errorhandler(HTTPException)
    def _handle_http_error(error: HTTPException):
        label = (error.name or "http_error").lower().replace(" ", "_")
        return jsonify(error_payload(label, error.description or error.name, f"HTTP_{error.code}")), error.code

    @app.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unhandled %s on %s %s", error.__class__.__name__, request.method, request.path)
        return jsonify(error_payload("internal_error", "Internal server error", "INTERNAL_ERROR")), 500
