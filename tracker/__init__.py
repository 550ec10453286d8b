"""
Project Delivery Tracker: application factory.

    from tracker import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine, event as sa_event

from tracker.config import config
from tracker.models import db
from tracker.middleware.logging_config import configure_logging
from tracker.middleware.rate_limiter import init_rate_limits
from tracker.middleware.timing import init_request_timing
from tracker.services.notification import EXTENSION_KEY, LoggingDispatcher

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


@sa_event.listens_for(sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    # Subtree closure and membership revocation rely on FK checks.
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """Build the workflow API for *config_name* ("development", "testing" or "production")."""
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name or os.getenv("APP_ENV", "development")])

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _create_schema(app)
    _register_blueprints(app)
    _register_error_handlers(app)
    init_rate_limits(app, limiter)
    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = [o.strip() for o in app.config.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    if origins and origins != ["*"]:
        CORS(app, origins=origins)
    else:
        CORS(app)

    # Callers may install their own dispatcher before the first request.
    app.extensions.setdefault(EXTENSION_KEY, LoggingDispatcher())


def _create_schema(app):
    # Registers every table on db.metadata for create_all and Alembic.
    from tracker.models import audit, tenancy, tracking, variation, workflow_settings  # noqa: F401

    with app.app_context():
        uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        if uri.startswith("sqlite:///") and ":memory:" not in uri:
            db_dir = os.path.dirname(uri[len("sqlite:///"):])
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        db.create_all()
        logger.debug("Schema ready on %s", uri.split("@")[-1])


def _register_blueprints(app):
    from tracker.blueprints.access_bp import access_bp
    from tracker.blueprints.baseline_bp import baseline_bp
    from tracker.blueprints.planning_bp import planning_bp
    from tracker.blueprints.settings_bp import settings_bp
    from tracker.blueprints.variation_bp import variation_bp

    for bp in (access_bp, settings_bp, planning_bp, baseline_bp, variation_bp):
        app.register_blueprint(bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Project Delivery Tracker"}


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        cause = getattr(e, "original_exception", None) or e
        logger.error("Unhandled error on %s %s", request.method, request.path,
                     exc_info=(type(cause), cause, cause.__traceback__))
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500
