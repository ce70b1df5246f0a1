"""
ICSR Workflow Service
Flask Application Factory.

Usage:
    from icsr import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from icsr.config import config
from icsr.middleware.logging_config import configure_logging
from icsr.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Models (register tables with SQLAlchemy metadata) ────────────────
    from icsr.models import audit as _audit_models                # noqa: F401
    from icsr.models import auth as _auth_models                  # noqa: F401
    from icsr.models import case as _case_models                  # noqa: F401
    from icsr.models import notification as _notification_models  # noqa: F401
    from icsr.models import signature as _signature_models        # noqa: F401
    from icsr.models import validation as _validation_models      # noqa: F401
    from icsr.models import workflow as _workflow_models          # noqa: F401

    # ── Auto-create tables and built-in rules ────────────────────────────
    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

        if app.config.get("VALIDATION_SEED_SYSTEM_RULES"):
            from icsr.services.validation_engine import ValidationEngineService
            try:
                ValidationEngineService().initialize_system_rules()
            except Exception as e:
                db.session.rollback()
                app.logger.warning("System rule seeding failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from icsr.blueprints.validation_bp import validation_bp
    from icsr.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(validation_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-validation-rules")
    def seed_validation_rules_cmd():
        """Insert the built-in validation rules that are not stored yet."""
        from icsr.services.validation_engine import ValidationEngineService
        count = ValidationEngineService().initialize_system_rules()
        logger.info("Seeded %s new system validation rules.", count)
        click.echo(f"Seeded {count} system validation rules.")

    @app.cli.command("create-user")
    @click.argument("username")
    @click.option("--role", default="read_only", show_default=True)
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--full-name", default=None)
    def create_user_cmd(username, role, password, full_name):
        """Create a user with a hashed signature password."""
        from icsr.models.auth import USER_ROLES, User
        from icsr.utils.crypto import hash_password
        if role not in USER_ROLES:
            raise click.BadParameter(f"role must be one of {', '.join(sorted(USER_ROLES))}")
        user = User(username=username, role=role, full_name=full_name,
                    password_hash=hash_password(password))
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created user {user.username} ({user.id})")

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "ICSR Workflow Service"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    return app
