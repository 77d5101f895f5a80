"""
HTTP blueprints (all under /api/v1).

Service exceptions are translated here, once, into the standard error body
built by ``api_error``.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from discovery.core.exceptions import (
    ConflictError,
    InterpreterUnavailableError,
    LockConflictError,
    MalformedInterpreterOutputError,
    NotFoundError,
    NotHolderError,
    ValidationError,
)
from discovery.models import db
from discovery.utils.errors import E, api_error

logger = logging.getLogger(__name__)

LOCK_TOKEN_HEADER = "X-Session-Lock-Token"


def register_error_handlers(app):
    """Map service exceptions to JSON error responses."""

    @app.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @app.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @app.errorhandler(LockConflictError)
    def _handle_lock_conflict(error: LockConflictError):
        return api_error(
            E.LOCK_CONFLICT,
            f"Session is in use by {error.holder_id}",
            details={
                "locked_by": error.holder_id,
                "expires_at": error.expires_at.isoformat() if error.expires_at else None,
            },
        )

    @app.errorhandler(NotHolderError)
    def _handle_not_holder(error: NotHolderError):
        return api_error(
            E.LOCK_TOKEN_REQUIRED if error.token_missing else E.LOCK_NOT_HOLDER,
            str(error),
            details={"holder_id": error.holder_id, "reason": error.reason},
        )

    @app.errorhandler(InterpreterUnavailableError)
    def _handle_interpreter_unavailable(error: InterpreterUnavailableError):
        logger.warning("Interpreter unavailable on %s: %s", request.path, error)
        return api_error(E.INTERPRETER_UNAVAILABLE, "Language model provider unavailable")

    @app.errorhandler(MalformedInterpreterOutputError)
    def _handle_interpreter_malformed(error: MalformedInterpreterOutputError):
        logger.warning("Malformed model output on %s: %s", request.path, error)
        return api_error(E.INTERPRETER_MALFORMED, str(error))

    @app.errorhandler(SQLAlchemyError)
    def _handle_database(error: SQLAlchemyError):
        db.session.rollback()
        logger.error("Database error on %s: %s", request.path, error, exc_info=True)
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.VALIDATION_INVALID, "Too many requests", status=429,
                         details={"retry_after": e.description})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
