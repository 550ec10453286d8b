"""
Project Delivery Tracker
Configuration classes for the Flask app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")])

Environment:
    DATABASE_URL / TEST_DATABASE_URL   PostgreSQL in production, SQLite otherwise
    SECRET_KEY                         required in production
    CORS_ORIGINS                       comma separated; "*" outside production
    REDIS_URL                          rate limiter storage ("memory://" by default)
    WORKFLOW_RATE_LIMIT                limit on workflow write endpoints
    STALE_RETRY_ENABLED                retry an unpinned transition once on a stale read
    LOG_LEVEL                          root log level
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_LOCAL_DB = f"sqlite:///{os.path.join(basedir, 'instance', 'delivery_tracker.db')}"


def _database_url(env_var, fallback=None):
    # Hosted Postgres still hands out postgres://, which SQLAlchemy 2.0 rejects.
    raw = os.getenv(env_var, "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


def _flag(env_var, default):
    return os.getenv(env_var, default).strip().lower() in ("1", "true", "yes")


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Workflow API ─────────────────────────────────────────────────────
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    WORKFLOW_RATE_LIMIT = os.getenv("WORKFLOW_RATE_LIMIT", "120 per minute")
    STALE_RETRY_ENABLED = _flag("STALE_RETRY_ENABLED", "true")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _LOCAL_DB)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # explicit origins only

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 10,
        "pool_recycle": 300,
        # Row locks taken by baseline commits and variation implementation
        # must not be held behind a runaway query.
        "connect_args": {"options": "-c statement_timeout=15000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
