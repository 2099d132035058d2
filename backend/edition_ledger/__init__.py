# backend/edition_ledger/__init__.py
from __future__ import annotations

import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def configure_logging(app: Flask) -> None:
    """Service modules log through logging.getLogger(__name__); route them with the app logger."""
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    app.logger.setLevel(level)
    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(level)
    if not package_logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        package_logger.addHandler(handler)


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.ledger_service import ledger
    ledger.init_app(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.ingest import ingest_bp
    from .routes.editions import editions_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(ingest_bp)
    app.register_blueprint(editions_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
