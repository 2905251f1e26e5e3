# backend/receipter/__init__.py
import atexit
import logging
from typing import Optional

from flask import Flask, request

from .config import Config
from .extensions import STORE_EXTENSION_KEY
from .store import Store


def create_app(config_overrides: Optional[dict] = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    logging.getLogger("receipter").setLevel(app.config["LOG_LEVEL"])

    # One Store per app: single writer, pooled readers over the same file.
    store = Store.open(
        app.config["RECEIPTER_DB_PATH"],
        write_pool_timeout=app.config["RECEIPTER_WRITE_POOL_TIMEOUT"],
        read_pool_size=app.config["RECEIPTER_READ_POOL_SIZE"],
    )
    if app.config["RECEIPTER_AUTO_MIGRATE"]:
        store.apply_migrations()
    app.extensions[STORE_EXTENSION_KEY] = store
    # Dispose both engines when the process exits
    atexit.register(store.close)

    # Import models so the mappers are configured before the first request
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.admin import admin_bp
    from .routes.projects import projects_bp
    from .routes.pallets import pallets_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(pallets_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin in app.config["CORS_ALLOWED_ORIGINS"]:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
