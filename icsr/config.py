"""
ICSR Workflow Service
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'icsr_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Workflow engine
    # Reject a transition when the case version moved between read and write.
    WORKFLOW_OPTIMISTIC_LOCKING = _env_flag("WORKFLOW_OPTIMISTIC_LOCKING", "true")
    # Require the assignee (review edges) or owner (Rejected -> Draft) on transition.
    WORKFLOW_ENFORCE_ROLE_CHECKS = _env_flag("WORKFLOW_ENFORCE_ROLE_CHECKS", "false")
    # Optional collaboration features; a disabled one is skipped silently.
    WORKFLOW_CAPABILITIES = {
        "assignments": _env_flag("WORKFLOW_ASSIGNMENTS_ENABLED", "true"),
        "comments": _env_flag("WORKFLOW_COMMENTS_ENABLED", "true"),
        "notes": _env_flag("WORKFLOW_NOTES_ENABLED", "true"),
        "notifications": _env_flag("WORKFLOW_NOTIFICATIONS_ENABLED", "true"),
    }

    # Validation engine
    VALIDATION_SEED_SYSTEM_RULES = _env_flag("VALIDATION_SEED_SYSTEM_RULES", "true")

    # bcrypt cost for newly hashed passwords
    BCRYPT_LOG_ROUNDS = int(os.getenv("BCRYPT_LOG_ROUNDS", "12"))


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
    # Tests seed the built-in rules explicitly where they need them
    VALIDATION_SEED_SYSTEM_RULES = False
    BCRYPT_LOG_ROUNDS = 4


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        raw_db_url = os.getenv("DATABASE_URL", "")
        if not raw_db_url:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
        self.SQLALCHEMY_DATABASE_URI = raw_db_url.replace("postgres://", "postgresql://", 1)
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
