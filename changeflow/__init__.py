"""
changeflow — proposed-change approval engine.
Flask Application Factory.

Usage:
    from changeflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from changeflow.config import config
from changeflow.middleware.jwt_auth import init_jwt_middleware
from changeflow.middleware.logging_config import configure_logging
from changeflow.middleware.rate_limiter import init_rate_limits
from changeflow.models import db
from changeflow.services.email_service import SmtpMailer

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None, mailer=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        mailer: Optional mail transport; defaults to SMTP built from MAIL_* config.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    app.extensions["changeflow.mailer"] = mailer or SmtpMailer.from_config(app.config)

    # ── JWT auth middleware ──────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from changeflow.models import organization as _organization_models  # noqa: F401
    from changeflow.models import proposed_change as _proposed_change_models  # noqa: F401
    from changeflow.models import template as _template_models  # noqa: F401
    from changeflow.models import bypass as _bypass_models  # noqa: F401
    from changeflow.models import notification as _notification_models  # noqa: F401
    from changeflow.models import approver_change as _approver_change_models  # noqa: F401

    if app.config.get("SQLALCHEMY_DATABASE_URI", "").startswith("sqlite"):
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from changeflow.blueprints.approval_bp import approval_bp
    from changeflow.blueprints.approver_change_bp import approver_change_bp
    from changeflow.blueprints.health_bp import health_bp
    from changeflow.blueprints.proposed_change_bp import proposed_change_bp
    from changeflow.blueprints.template_bp import template_bp

    app.register_blueprint(proposed_change_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(template_bp)
    app.register_blueprint(approver_change_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.group("notifications")
    def notifications_cli():
        """Notification ledger maintenance."""

    @notifications_cli.command("retry-failed")
    @click.option("--limit", default=50, show_default=True, help="Maximum rows to retry.")
    @click.option("--min-age", default=300, show_default=True, help="Only rows older than this many seconds.")
    def retry_failed_cmd(limit, min_age):
        """Re-send notifications whose last delivery attempt failed."""
        from changeflow.services.context import build_context
        from changeflow.services.notification_dispatcher import NotificationDispatcher

        report = NotificationDispatcher(build_context()).retry_failed(limit=limit, min_age_seconds=min_age)
        click.echo(f"sent={len(report.sent)} skipped={len(report.skipped)} failed={len(report.failed)}")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
