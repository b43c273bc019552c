"""Application factory for the Scooty media gateway.

Uses the Flask Application Factory pattern: create_app() builds and
configures the application, attaches the MediaGateway and registers
blueprints. main() runs it on a free localhost port for the desktop shell.
"""

import os
import signal
import socket
import sys
import logging

from flask import Flask

from extensions import cors

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class StructuredJSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging (ELK, Loki, etc.)."""

    def format(self, record: logging.LogRecord) -> str:
        import json as _json
        from flask import g as _g

        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = getattr(_g, "request_id", None) if _has_app_context() else None
        if request_id:
            entry["request_id"] = request_id

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return _json.dumps(entry, default=str)


def _has_app_context() -> bool:
    """Check if Flask application context is active (avoids import cycle)."""
    from flask import has_app_context
    return has_app_context()


def _setup_logging(settings) -> None:
    """Configure the root logger and the optional rotating log file."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)

    use_json = getattr(settings, "log_format", "text").lower() == "json"
    if use_json:
        formatter: logging.Formatter = StructuredJSONFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT)

    log_file = settings.log_file
    if not log_file:
        return
    if any(getattr(h, "baseFilename", None) == os.path.abspath(log_file) for h in root.handlers):
        return
    try:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        from logging.handlers import RotatingFileHandler
        fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        fh.setLevel(log_level)
        fh.setFormatter(formatter)
        root.addHandler(fh)
    except OSError as e:
        logging.getLogger(__name__).warning("Could not set up log file %s: %s", log_file, e)


def create_app(testing=False, gateway=None):
    """Create and configure the Flask application.

    Args:
        testing: If True, skip the API docs UI (for tests and verification).
        gateway: MediaGateway to serve with. Defaults to the process-wide one.

    Returns:
        Configured Flask application instance.
    """
    app = Flask(__name__)
    app.config["TESTING"] = testing

    from config import get_settings
    settings = get_settings()

    _setup_logging(settings)
    logger = logging.getLogger(__name__)

    cors.init_app(app)

    # Register structured error handlers (GatewayError -> JSON, generic 500)
    from error_handler import register_error_handlers
    register_error_handlers(app)

    if gateway is None:
        from gateway import get_gateway
        gateway = get_gateway()
    app.gateway = gateway

    from routes import register_blueprints
    register_blueprints(app)

    # OpenAPI document (must be after register_blueprints)
    from openapi import build_spec, register_docs
    build_spec(app)
    if not testing:
        register_docs(app)

    logger.debug("Gateway app created (testing=%s)", testing)
    return app


def find_free_port(host: str, start: int, end: int) -> int:
    """First port in [start, end] that can be bound on host."""
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise RuntimeError(f"No free port between {start} and {end}")


def _exit_on_signal(signum, frame):
    # sys.exit runs the atexit hooks, which shut the gateway down
    sys.exit(0)


def main():
    """Run the gateway on localhost for the desktop shell."""
    from config import get_settings
    from version import __version__

    settings = get_settings()
    app = create_app()
    port = settings.port or find_free_port(settings.host, settings.port_range_start, settings.port_range_end)

    signal.signal(signal.SIGTERM, _exit_on_signal)
    logging.getLogger(__name__).info(
        "Scooty gateway %s listening on http://%s:%d", __version__, settings.host, port
    )
    # The shell reads the port from stdout
    print(f"SCOOTY_GATEWAY_PORT={port}", flush=True)
    app.run(host=settings.host, port=port, threaded=True, use_reloader=False)


if __name__ == "__main__":
    main()
