"""OpenAPI document for the gateway's HTTP surface.

Each app gets its own APISpec, built from the YAML blocks in the view
docstrings and kept in ``app.extensions["openapi"]``. The Swagger UI at
/docs reads it back through /openapi.json.
"""

import logging

from apispec import APISpec
from apispec_webframeworks.flask import FlaskPlugin

from version import __version__

logger = logging.getLogger(__name__)

TAGS = [
    {"name": "Stream", "description": "Byte-range and transcoded video delivery"},
    {"name": "Subtitles", "description": "Embedded, external and online captions as WebVTT"},
    {"name": "Sources", "description": "Remote FTP/FTPS sources and directory browsing"},
    {"name": "System", "description": "Health and API description"},
]

ERROR_SCHEMA = {
    "type": "object",
    "properties": {
        "error": {"type": "string", "example": "not_found"},
        "message": {"type": "string"},
        "code": {"type": "string", "example": "NF_001"},
        "timestamp": {"type": "string", "format": "date-time"},
        "request_id": {"type": "string"},
        "troubleshooting": {"type": "string"},
    },
    "required": ["error", "message"],
}


def build_spec(app) -> APISpec:
    """Collect every documented view of ``app`` into a fresh APISpec.

    Call after the blueprints are registered. Views whose docstring has no
    ``---`` block stay out of the document.
    """
    spec = APISpec(
        title="Scooty Media Gateway",
        version=__version__,
        openapi_version="3.0.3",
        info={"description": "Localhost media and caption server for the Scooty player"},
        tags=TAGS,
        plugins=[FlaskPlugin()],
    )
    spec.components.schema("Error", ERROR_SCHEMA)

    documented = []
    with app.test_request_context():
        for name, view_func in sorted(app.view_functions.items()):
            if "---" not in (view_func.__doc__ or ""):
                continue
            try:
                spec.path(view=view_func, app=app)
            except Exception as exc:
                logger.warning("OpenAPI: could not document %s: %s", name, exc)
                continue
            documented.append(name)

    logger.debug("OpenAPI: documented %d views (%s)", len(documented), ", ".join(documented))
    app.extensions["openapi"] = spec
    return spec


def register_docs(app, url_prefix: str = "/docs") -> None:
    """Mount the Swagger UI pointing at this app's /openapi.json."""
    from flask_swagger_ui import get_swaggerui_blueprint

    app.register_blueprint(get_swaggerui_blueprint(
        url_prefix,
        "/openapi.json",
        config={"app_name": "Scooty Media Gateway", "layout": "BaseLayout"},
    ))
