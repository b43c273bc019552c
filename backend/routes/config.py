"""Config routes: /config (GET, PUT)."""

import logging

from flask import Blueprint, current_app, jsonify, request

from config import Settings, get_settings, reload_settings
from error_handler import error_payload

bp = Blueprint("config", __name__)
logger = logging.getLogger(__name__)

MASKED = "***configured***"


@bp.route("/config", methods=["GET"])
def get_config():
    """Current settings with credentials masked.
    ---
    get:
      tags:
        - System
      summary: Get configuration
      responses:
        200:
          description: Settings object
          content:
            application/json:
              schema:
                type: object
                additionalProperties: true
    """
    return jsonify(get_settings().get_safe_config())


@bp.route("/config", methods=["PUT"])
def update_config():
    """Apply setting overrides from the player and reload.
    ---
    put:
      tags:
        - System
      summary: Update configuration
      description: >
        Overrides are kept for the lifetime of the gateway and layered on top
        of SCOOTY_* environment variables. Masked credential values are
        ignored. Listener address and FTP timeouts apply after a restart.
      requestBody:
        required: true
        content:
          application/json:
            schema:
              type: object
              additionalProperties: true
      responses:
        200:
          description: Settings reloaded
          content:
            application/json:
              schema:
                type: object
                properties:
                  status:
                    type: string
                  updated_keys:
                    type: array
                    items:
                      type: string
                  config:
                    type: object
        400:
          description: No known settings in the body
          content:
            application/json:
              schema:
                $ref: '#/components/schemas/Error'
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    updates = {
        key: value.strip() if isinstance(value, str) else value
        for key, value in data.items()
        if key in Settings.model_fields and value != MASKED
    }
    if not updates:
        return jsonify(error_payload("bad_request", "No known settings provided", "CFG_002")), 400

    overrides = current_app.config.setdefault("SETTINGS_OVERRIDES", {})
    before = get_settings().model_dump()
    overrides.update(updates)
    settings = reload_settings(overrides)

    after = settings.model_dump()
    changed = sorted(key for key in updates if before.get(key) != after.get(key))
    current_app.gateway.apply_settings(changed)
    logger.info("Config updated: %s", ", ".join(changed) or "no changes")

    return jsonify({
        "status": "saved",
        "updated_keys": changed,
        "config": settings.get_safe_config(),
    })
