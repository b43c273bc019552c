"""Gateway version, read once from backend/VERSION.

The file is shared with packaging. A non-editable install has no file beside
the module and reports the installed distribution's version instead; a bare
checkout without either reports 0.0.0-dev.
"""

import os
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as metadata_version

DIST_NAME = "scooty-gateway"
_VERSION_FILE = os.path.join(os.path.dirname(__file__), "VERSION")


def _read_version(path: str = _VERSION_FILE, dist: str = DIST_NAME) -> str:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read().strip() or "0.0.0-dev"
    except OSError:
        pass
    try:
        return metadata_version(dist)
    except PackageNotFoundError:
        return "0.0.0-dev"


__version__ = _read_version()


def user_agent(product: str = "Scooty") -> str:
    """User-Agent for outbound HTTP, e.g. "Scooty v1.0.0"."""
    return f"{product} v{__version__}"
