"""Remote source routes: /sources, /sources/test, /sources/scan."""

import logging

from flask import Blueprint, current_app, jsonify, request

from error_handler import NotFoundError, RemoteConnectionError
from ftp_channel import FtpChannel, RemoteSourceConfig

bp = Blueprint("sources", __name__)
logger = logging.getLogger(__name__)


def _config_from_body() -> RemoteSourceConfig:
    data = request.get_json(silent=True) or {}
    return RemoteSourceConfig.from_dict(data)


@bp.route("/sources", methods=["GET"])
def list_sources():
    """List configured remote sources (passwords masked).
    ---
    get:
      tags:
        - Sources
      summary: List remote sources
      responses:
        200:
          description: Configured sources
    """
    configs = current_app.gateway.channel.list_configs()
    return jsonify({"sources": [c.to_safe_dict() for c in configs]})


@bp.route("/sources", methods=["POST"])
def add_source():
    """Register a remote source without connecting (restore on startup).
    ---
    post:
      tags:
        - Sources
      summary: Add or replace a remote source
      requestBody:
        content:
          application/json:
            schema:
              type: object
              properties:
                id:
                  type: string
                host:
                  type: string
                port:
                  type: integer
                user:
                  type: string
                password:
                  type: string
                secure:
                  type: boolean
                rejectUnauthorized:
                  type: boolean
                remotePath:
                  type: string
      responses:
        201:
          description: Source registered
        400:
          description: Invalid source config
    """
    try:
        config = _config_from_body()
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    current_app.gateway.channel.add_config(config)
    return jsonify({"source": config.to_safe_dict()}), 201


@bp.route("/sources/test", methods=["POST"])
def test_source():
    """Try to log in to a remote source without registering it.
    ---
    post:
      tags:
        - Sources
      summary: Test a remote source
      responses:
        200:
          description: Login succeeded
        502:
          description: Connection, login or TLS failure
    """
    try:
        config = _config_from_body()
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400

    trial = FtpChannel(connection_factory=current_app.gateway.channel.connection_factory)
    try:
        trial.connect(config)
    except RemoteConnectionError as e:
        logger.info("Connection test for %s failed: %s", config.host, e)
        return jsonify({"success": False, "error": str(e)}), e.http_status
    finally:
        trial.disconnect()
    return jsonify({"success": True})


@bp.route("/sources/scan", methods=["POST"])
def scan_source():
    """Connect to a source and list its video files.
    ---
    post:
      tags:
        - Sources
      summary: Scan a remote source
      description: >
        With a config in the body the source is connected (and registered)
        first; otherwise `sourceId` names an already registered source.
      parameters:
        - in: query
          name: sourceId
          schema:
            type: string
        - in: query
          name: path
          schema:
            type: string
        - in: query
          name: maxDepth
          schema:
            type: integer
      responses:
        200:
          description: Video files found
        503:
          description: No remote sources configured
    """
    channel = current_app.gateway.channel
    data = request.get_json(silent=True) or {}

    if data.get("host"):
        try:
            config = RemoteSourceConfig.from_dict(data)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        channel.connect(config)
        source_id = config.id
    else:
        source_id = request.args.get("sourceId") or data.get("sourceId") or None

    max_depth = request.args.get("maxDepth", type=int)
    files = channel.list_media(source_id, request.args.get("path") or None, max_depth)
    return jsonify({"files": files, "total": len(files)})


@bp.route("/sources/<source_id>", methods=["DELETE"])
def delete_source(source_id):
    """Remove a remote source.
    ---
    delete:
      tags:
        - Sources
      summary: Remove a remote source
      parameters:
        - in: path
          name: source_id
          required: true
          schema:
            type: string
      responses:
        204:
          description: Removed
        404:
          description: Unknown source
    """
    if not current_app.gateway.channel.remove_config(source_id):
        raise NotFoundError(f"Unknown source: {source_id}")
    return "", 204
