"""Routes package: Blueprint registration for all gateway endpoints.

Each blueprint module defines a `bp` variable. Routes live at the root
path because the player builds URLs like `<base>/stream?file=...`.
"""


def register_blueprints(app):
    """Import and register all blueprints on the Flask app."""
    from routes.stream import bp as stream_bp
    from routes.subtitles import bp as subtitles_bp
    from routes.sources import bp as sources_bp
    from routes.system import bp as system_bp
    from routes.config import bp as config_bp

    for blueprint in [
        stream_bp,
        subtitles_bp,
        sources_bp,
        system_bp,
        config_bp,
    ]:
        app.register_blueprint(blueprint)
