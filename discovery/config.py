"""
Workshop Discovery
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'discovery_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Session access lock: lease window and token lifetime (seconds).
    # Clients must heartbeat strictly more often than the lease.
    SESSION_LOCK_LEASE_SECONDS = int(os.getenv("SESSION_LOCK_LEASE_SECONDS", "120"))
    LOCK_TOKEN_TTL_SECONDS = int(os.getenv("LOCK_TOKEN_TTL_SECONDS", str(24 * 3600)))

    # Evidence interpreter
    INTERPRETER_MODEL = os.getenv("INTERPRETER_MODEL") or None
    INTERPRETER_MAX_RETRIES = int(os.getenv("INTERPRETER_MAX_RETRIES", "3"))
    INTERPRETER_MAX_TOKENS = int(os.getenv("INTERPRETER_MAX_TOKENS", "6000"))
    REANALYSIS_MAX_EVIDENCE_CHARS = int(os.getenv("REANALYSIS_MAX_EVIDENCE_CHARS", "80000"))

    # LLM gateway
    LLM_DEFAULT_CHAT_MODEL = os.getenv("LLM_DEFAULT_CHAT_MODEL", "claude-sonnet-4-20250514")
    LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "1.0"))

    LOG_LEVEL = os.getenv("LOG_LEVEL") or None

    # Optional YAML prompt overrides (defaults are built in)
    PROMPTS_DIR = os.getenv("PROMPTS_DIR") or None


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SECRET_KEY = "testing-secret-key-not-for-production"
    RATELIMIT_ENABLED = False
    # No real provider calls and no backoff sleeps under test
    INTERPRETER_MAX_RETRIES = 1
    INTERPRETER_MODEL = "local-stub"
    LLM_RETRY_BACKOFF_SECONDS = 0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
