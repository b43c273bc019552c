"""Shared Flask extensions: import from here to avoid circular imports.

The CORS instance is created unbound; app.py calls cors.init_app(app)
inside the create_app() factory function.
"""

from flask_cors import CORS

# The player runs on another origin (file:// or the dev server)
cors = CORS(expose_headers=["Content-Range", "Content-Length", "Accept-Ranges"])
