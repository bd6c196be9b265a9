"""
Flask application factory for SPF Watch.

Creates and configures the Flask application, registers the JSON API
blueprint, and initialises the SQLAlchemy extension that backs the
persistence store (ESP classifications, monitoring baselines, change
events and flattening history).
"""

from __future__ import annotations

import logging
import sys

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

from spfwatch.config import Config

# ---------------------------------------------------------------------------
# Extension instances (created here, initialised in create_app)
# ---------------------------------------------------------------------------
db: SQLAlchemy = SQLAlchemy()


def _configure_logging(debug: bool) -> None:
    """Configure root logger for the application.

    Logging is sent to stdout so WSGI hosts and cron wrappers capture it
    without requiring file handlers.

    Format: timestamp  level  logger-name  message

    Args:
        debug: When True, sets the root level to DEBUG.  Otherwise INFO.
    """
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)-8s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
    )

    root_logger = logging.getLogger()
    # create_app() runs once per test, so only attach the handler once.
    if not root_logger.handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


def create_app(config_object: object = Config) -> Flask:
    """Application factory.

    Args:
        config_object: Configuration class or object to load settings from.

    Returns:
        A fully configured Flask application instance.
    """
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(debug=app.debug)

    db.init_app(app)

    # WAL lets the scheduled monitor write baselines while API readers run.
    with app.app_context():
        from sqlalchemy import event

        if db.engine.dialect.name == "sqlite":

            @event.listens_for(db.engine, "connect")
            def _set_sqlite_pragma(dbapi_conn, connection_record):  # noqa: ARG001
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.close()

    from spfwatch.api import bp as api_bp

    app.register_blueprint(api_bp)

    return app
