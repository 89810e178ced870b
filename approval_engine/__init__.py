"""
Approval Workflow Engine
Flask Application Factory.

Usage:
    from approval_engine import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate

from approval_engine.config import config
from approval_engine.models import db
from approval_engine.middleware.logging_config import configure_logging
from approval_engine.middleware.rate_limiter import init_rate_limits, rate_limit_key

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def _import_models():
    # Registers every table on db.metadata for create_all / Alembic
    from approval_engine.models import (  # noqa: F401
        approval,
        attachment,
        auth,
        lifecycle_event,
        notification,
        project,
    )


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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    _import_models()
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Lifecycle event router & attachment store ────────────────────────
    from approval_engine.services.attachments import STORE_EXTENSION_KEY, LoggingAttachmentStore
    from approval_engine.services.lifecycle_events import set_router
    from approval_engine.services.notification import NotificationRouter

    set_router(app, NotificationRouter() if app.config.get("NOTIFICATIONS_ENABLED") else None)
    app.extensions.setdefault(STORE_EXTENSION_KEY, LoggingAttachmentStore())

    # ── Blueprints ───────────────────────────────────────────────────────
    from approval_engine.blueprints.decision_bp import decision_bp
    from approval_engine.blueprints.notification_bp import notification_bp
    from approval_engine.blueprints.proposal_bp import proposal_bp
    from approval_engine.blueprints.stage_bp import stage_bp

    app.register_blueprint(proposal_bp)
    app.register_blueprint(decision_bp)
    app.register_blueprint(stage_bp)
    app.register_blueprint(notification_bp)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Approval Workflow Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        db.session.rollback()
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    logger.info("Approval engine started (config=%s)", config_name)
    return app
