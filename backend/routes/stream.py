"""Stream routes: /stream, /media-info."""

import logging
import math
from functools import partial

from flask import Blueprint, Response, current_app, jsonify, request

from error_handler import ConfigurationError, GatewayError
from gateway import DIRECT, REMOTE, TRANSCODE

bp = Blueprint("stream", __name__)
logger = logging.getLogger(__name__)


def _gateway():
    return current_app.gateway


def _text_error(message: str, status: int = 500) -> Response:
    return Response(message, status=status, mimetype="text/plain")


def float_arg(name: str, default: float = 0.0) -> float:
    """Query parameter as a non-negative float; junk becomes the default."""
    try:
        value = float(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value) or value < 0:
        return default
    return value


def int_arg(name: str):
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        return None


@bp.route("/stream", methods=["GET"])
def stream():
    """Stream a local or remote video, transcoding incompatible containers.
    ---
    get:
      tags:
        - Stream
      summary: Stream media
      description: >
        Serves local files with byte ranges, remote files over FTP with byte
        ranges, and Matroska/AVI/WMV sources as fragmented MP4. Seeking or
        switching audio tracks on a transcoded stream is a new request.
      parameters:
        - in: query
          name: file
          required: true
          schema:
            type: string
        - in: query
          name: start
          schema:
            type: number
        - in: query
          name: audio
          schema:
            type: integer
        - in: query
          name: sourceId
          schema:
            type: string
      responses:
        200:
          description: Full file or transcoded stream
        206:
          description: Byte range
        400:
          description: Missing file parameter
        503:
          description: Remote file requested with no sources configured
    """
    path = request.args.get("file", "")
    if not path:
        return _text_error("Missing file parameter", 400)

    gateway = _gateway()
    source_id = request.args.get("sourceId") or None
    range_header = request.headers.get("Range")
    strategy = gateway.classify(path)
    logger.info("Stream request for %s (%s, range=%s)", path, strategy, range_header)

    try:
        if strategy == TRANSCODE:
            return _transcode_response(gateway, path, source_id)
        if strategy == DIRECT:
            planned = gateway.open_direct(path, range_header)
        elif strategy == REMOTE:
            planned = gateway.open_remote(path, source_id, range_header)
        else:
            return _text_error(f"Unknown stream strategy {strategy}")
    except ConfigurationError:
        raise
    except GatewayError as e:
        logger.warning("Stream setup for %s failed: [%s] %s", path, e.code, e)
        return _text_error(str(e), e.http_status)

    response = Response(planned.body, status=planned.status, mimetype=planned.mimetype, direct_passthrough=True)
    response.headers.update(planned.headers)
    return response


def _transcode_response(gateway, path, source_id) -> Response:
    session = gateway.start_transcode(
        path,
        source_id=source_id,
        seek_seconds=float_arg("start"),
        audio_track=int_arg("audio"),
        sink=f"{request.remote_addr} {request.full_path}",
    )
    response = Response(
        gateway.transcode_body(session),
        status=200,
        mimetype="video/mp4",
        direct_passthrough=True,
    )
    response.headers["Cache-Control"] = "no-cache"
    # Client disconnect closes the response; the session must die with it
    response.call_on_close(partial(gateway.supervisor.terminate, session))
    return response


@bp.route("/media-info", methods=["GET"])
def media_info():
    """Read a media file for duration and tracks.
    ---
    get:
      tags:
        - Stream
      summary: Media info
      parameters:
        - in: query
          name: file
          required: true
          schema:
            type: string
        - in: query
          name: sourceId
          schema:
            type: string
      responses:
        200:
          description: Duration, size, bitrate, format and track lists
        400:
          description: Missing file parameter
    """
    path = request.args.get("file", "")
    if not path:
        return jsonify({"error": "file parameter required"}), 400

    try:
        info = _gateway().media_info(path, request.args.get("sourceId") or None)
    except RuntimeError as e:
        logger.error("Media info for %s failed: %s", path, e)
        return jsonify({"error": "probe_failed", "message": str(e)}), 500
    return jsonify(info)
