"""Standardised API error responses.

Usage
-----
    from discovery.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Session not found")
    return api_error(E.VALIDATION_REQUIRED, "text is required")
    return api_error(E.LOCK_CONFLICT, "Session is in use", details={"locked_by": "alice"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 (malformed request) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Session access lock
    LOCK_CONFLICT = "ERR_LOCK_CONFLICT"
    LOCK_NOT_HOLDER = "ERR_LOCK_NOT_HOLDER"
    LOCK_TOKEN_REQUIRED = "ERR_LOCK_TOKEN_REQUIRED"

    # Evidence interpreter / LLM provider – HTTP 502
    INTERPRETER_UNAVAILABLE = "ERR_INTERPRETER_UNAVAILABLE"
    INTERPRETER_MALFORMED = "ERR_INTERPRETER_MALFORMED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.LOCK_CONFLICT: 423,
    E.LOCK_NOT_HOLDER: 409,
    E.LOCK_TOKEN_REQUIRED: 409,
    E.INTERPRETER_UNAVAILABLE: 502,
    E.INTERPRETER_MALFORMED: 502,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (lock holder, dropped proposals, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
