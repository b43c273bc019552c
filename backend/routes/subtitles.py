"""Subtitle routes: /subtitle, /external-subtitle, /parse-subtitle, /subtitles/*.

Every caption response is WebVTT. The optional `start` parameter shifts all
cue timings back by that many seconds, matching a transcoded stream that was
started at that offset.
"""

import logging

from flask import Blueprint, Response, current_app, jsonify, request

from error_handler import ConfigurationError, GatewayError
from routes.stream import float_arg, int_arg

bp = Blueprint("subtitles", __name__)
logger = logging.getLogger(__name__)

VTT_MIMETYPE = "text/vtt"


def _vtt(text: str) -> Response:
    return Response(text, mimetype=VTT_MIMETYPE, headers={"Cache-Control": "no-cache"})


def _text_error(message: str, status: int = 500) -> Response:
    return Response(message, status=status, mimetype="text/plain")


@bp.route("/subtitle", methods=["GET"])
def embedded_subtitle():
    """Serve an embedded subtitle track as WebVTT.
    ---
    get:
      tags:
        - Subtitles
      summary: Embedded subtitle track
      parameters:
        - in: query
          name: file
          required: true
          schema:
            type: string
        - in: query
          name: track
          required: true
          schema:
            type: integer
        - in: query
          name: start
          schema:
            type: number
        - in: query
          name: sourceId
          schema:
            type: string
        - in: query
          name: refresh
          description: Drop the cached extraction and extract again
          schema:
            type: boolean
      responses:
        200:
          description: WebVTT captions
          content:
            text/vtt:
              schema:
                type: string
        400:
          description: Missing or invalid parameters
        404:
          description: File or track not found
    """
    path = request.args.get("file", "")
    track = int_arg("track")
    if not path or track is None:
        return _text_error("file and track parameters are required", 400)

    try:
        text = current_app.gateway.embedded_subtitle(
            path,
            track,
            source_id=request.args.get("sourceId") or None,
            start=float_arg("start"),
            refresh=request.args.get("refresh", "").lower() in ("1", "true", "yes"),
        )
    except ConfigurationError:
        raise
    except GatewayError as e:
        return _text_error(str(e), e.http_status)
    except RuntimeError as e:
        logger.error("Subtitle extraction for %s track %d failed: %s", path, track, e)
        return _text_error(str(e), 500)
    return _vtt(text)


@bp.route("/external-subtitle", methods=["GET"])
def external_subtitle():
    """Fetch captions from a URL and serve them as WebVTT.
    ---
    get:
      tags:
        - Subtitles
      summary: External subtitle by URL
      parameters:
        - in: query
          name: url
          required: true
          schema:
            type: string
        - in: query
          name: start
          schema:
            type: number
      responses:
        200:
          description: WebVTT captions
        400:
          description: Missing or unsupported URL
        500:
          description: Fetch failed (plain text)
    """
    url = request.args.get("url", "")
    if not url:
        return _text_error("Missing url parameter", 400)
    if not url.lower().startswith(("http://", "https://")):
        return _text_error("Only http and https URLs are supported", 400)

    try:
        text = current_app.gateway.external_subtitle(url, start=float_arg("start"))
    except GatewayError as e:
        logger.warning("External subtitle %s failed: %s", url, e)
        return _text_error(str(e), 500)
    return _vtt(text)


@bp.route("/parse-subtitle", methods=["POST"])
def parse_subtitle():
    """Convert raw subtitle text (SRT, ASS, VTT, ...) to WebVTT.
    ---
    post:
      tags:
        - Subtitles
      summary: Convert pasted or uploaded captions
      parameters:
        - in: query
          name: start
          schema:
            type: number
      requestBody:
        content:
          text/plain:
            schema:
              type: string
      responses:
        200:
          description: WebVTT captions
    """
    raw = request.get_data(as_text=True)
    return _vtt(current_app.gateway.parse_subtitle(raw, start=float_arg("start")))


@bp.route("/subtitles/search", methods=["GET"])
def search_subtitles():
    """Search OpenSubtitles.
    ---
    get:
      tags:
        - Subtitles
      summary: Subtitle search
      parameters:
        - in: query
          name: query
          schema:
            type: string
        - in: query
          name: imdb_id
          schema:
            type: string
        - in: query
          name: tmdb_id
          schema:
            type: string
        - in: query
          name: languages
          schema:
            type: string
        - in: query
          name: season
          schema:
            type: integer
        - in: query
          name: episode
          schema:
            type: integer
      responses:
        200:
          description: Search results
          content:
            application/json:
              schema:
                type: object
                properties:
                  results:
                    type: array
                    items:
                      type: object
                  total:
                    type: integer
        400:
          description: No search criterion given
    """
    try:
        data = current_app.gateway.search_subtitles(
            query=request.args.get("query") or None,
            imdb_id=request.args.get("imdb_id") or None,
            tmdb_id=request.args.get("tmdb_id") or None,
            languages=request.args.get("languages") or None,
            season=int_arg("season"),
            episode=int_arg("episode"),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(data)


@bp.route("/subtitles/download", methods=["GET"])
def download_subtitle():
    """Download a search result and serve it as WebVTT.
    ---
    get:
      tags:
        - Subtitles
      summary: Subtitle download
      description: >
        Accepts one reference, used in the order zip_url, subtitle_id,
        download_url, file_id. Zipped and gzipped payloads are unpacked.
      parameters:
        - in: query
          name: zip_url
          schema:
            type: string
        - in: query
          name: subtitle_id
          schema:
            type: string
        - in: query
          name: download_url
          schema:
            type: string
        - in: query
          name: file_id
          schema:
            type: string
        - in: query
          name: start
          schema:
            type: number
      responses:
        200:
          description: WebVTT captions
        400:
          description: No reference given
    """
    try:
        text = current_app.gateway.download_subtitle(
            start=float_arg("start"),
            zip_url=request.args.get("zip_url") or None,
            subtitle_id=request.args.get("subtitle_id") or None,
            download_url=request.args.get("download_url") or None,
            file_id=request.args.get("file_id") or None,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return _vtt(text)
