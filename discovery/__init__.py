"""
Workshop Discovery
Flask Application Factory.

Usage:
    from discovery import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from discovery.config import config
from discovery.middleware.logging_config import configure_logging
from discovery.middleware.timing import init_request_timing
from discovery.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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
    default_limits=[],                     # no global limit: apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def build_services(app, *, interpreter=None, gateway=None, clock=None):
    """
    Wire the service graph from app config.

    Any collaborator can be passed in (tests inject a scripted interpreter
    and a controllable clock).
    """
    from discovery.ai.assistants.checklist_generator import ChecklistGenerator
    from discovery.ai.gateway import LLMGateway
    from discovery.ai.interpreter import LLMEvidenceInterpreter
    from discovery.ai.prompt_registry import PromptRegistry
    from discovery.services import DiscoveryServices
    from discovery.services.checklist_state_machine import ChecklistStateMachine
    from discovery.services.reanalysis import ReanalysisCoordinator
    from discovery.services.session_lock import SessionAccessLock

    cfg = app.config
    if gateway is None:
        gateway = LLMGateway(backoff_seconds=cfg["LLM_RETRY_BACKOFF_SECONDS"])
        gateway.DEFAULT_CHAT_MODEL = cfg["LLM_DEFAULT_CHAT_MODEL"]
    registry = PromptRegistry(cfg.get("PROMPTS_DIR"))
    if interpreter is None:
        interpreter = LLMEvidenceInterpreter(
            gateway, registry,
            model=cfg.get("INTERPRETER_MODEL"),
            max_retries=cfg["INTERPRETER_MAX_RETRIES"],
            max_tokens=cfg["INTERPRETER_MAX_TOKENS"],
        )

    lock_kwargs = {
        "lease_seconds": cfg["SESSION_LOCK_LEASE_SECONDS"],
        "token_ttl_seconds": cfg["LOCK_TOKEN_TTL_SECONDS"],
    }
    if clock is not None:
        lock_kwargs["clock"] = clock

    state_machine = ChecklistStateMachine(interpreter)
    return DiscoveryServices(
        gateway=gateway,
        prompt_registry=registry,
        interpreter=interpreter,
        lock=SessionAccessLock(cfg["SECRET_KEY"], **lock_kwargs),
        state_machine=state_machine,
        reanalysis=ReanalysisCoordinator(
            state_machine, max_evidence_chars=cfg["REANALYSIS_MAX_EVIDENCE_CHARS"],
        ),
        generator=ChecklistGenerator(
            gateway, registry,
            model=cfg.get("INTERPRETER_MODEL"),
            max_retries=cfg["INTERPRETER_MAX_RETRIES"],
        ),
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
    # Instantiate so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

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

    init_request_timing(app)
    app.config.setdefault("MAX_CONTENT_LENGTH", 4 * 1024 * 1024)

    # ── Import all models so Alembic can detect them ─────────────────────
    import discovery.models.ai  # noqa: F401
    import discovery.models.audit  # noqa: F401
    import discovery.models.checklist  # noqa: F401
    import discovery.models.session_lock  # noqa: F401
    import discovery.models.workshop  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Services ─────────────────────────────────────────────────────────
    app.extensions["discovery"] = build_services(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from discovery.blueprints import register_error_handlers
    from discovery.blueprints.checklist_bp import checklist_bp
    from discovery.blueprints.health_bp import health_bp
    from discovery.blueprints.lock_bp import lock_bp
    from discovery.blueprints.workshop_bp import workshop_bp

    app.register_blueprint(workshop_bp)
    app.register_blueprint(checklist_bp)
    app.register_blueprint(lock_bp)
    app.register_blueprint(health_bp)
    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    if not app.config.get("TESTING"):
        # Model calls are expensive; heartbeats must never be throttled
        limiter.limit("30/minute")(checklist_bp)
        limiter.limit("120/minute")(workshop_bp)
        limiter.exempt(lock_bp)
        limiter.exempt(health_bp)

    return app
