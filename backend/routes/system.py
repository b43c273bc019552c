"""System routes: /health, /openapi.json."""

import shutil
import time

from flask import Blueprint, current_app, jsonify

from config import get_settings
from version import __version__

bp = Blueprint("system", __name__)

_STARTED = time.monotonic()


def _tool_paths() -> dict:
    settings = get_settings()
    return {
        "ffmpeg": shutil.which(settings.ffmpeg_path),
        "ffprobe": shutil.which(settings.ffprobe_path),
    }


@bp.route("/health", methods=["GET"])
def health():
    """Report whether the gateway can serve and transcode.
    ---
    get:
      tags:
        - System
      summary: Gateway health
      description: >
        "degraded" means ffmpeg or ffprobe is missing, so direct streaming
        works but transcoding, media info and embedded captions do not.
      responses:
        200:
          description: Gateway is up
          content:
            application/json:
              schema:
                type: object
                properties:
                  status:
                    type: string
                    enum: [healthy, degraded]
                  version:
                    type: string
                  uptime:
                    type: number
                  tools:
                    type: object
                  active_sessions:
                    type: integer
                  cached_subtitles:
                    type: integer
                  configured_sources:
                    type: integer
    """
    paths = _tool_paths()
    tools = {name: path is not None for name, path in paths.items()}
    return jsonify({
        "status": "healthy" if all(tools.values()) else "degraded",
        "version": __version__,
        "uptime": round(time.monotonic() - _STARTED, 1),
        "tools": tools,
        "tool_paths": paths,
        **current_app.gateway.status(),
    })


@bp.route("/openapi.json", methods=["GET"])
def openapi_spec():
    """Serve this app's OpenAPI 3.0.3 document as JSON."""
    return jsonify(current_app.extensions["openapi"].to_dict())
