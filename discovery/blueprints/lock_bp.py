"""
Session lock blueprint.

    POST   /api/v1/sessions/<id>/lock             body {holder_id} → grant + token
    POST   /api/v1/sessions/<id>/lock/heartbeat   header X-Session-Lock-Token
    DELETE /api/v1/sessions/<id>/lock             header X-Session-Lock-Token
    GET    /api/v1/sessions/<id>/lock

A conflicting acquire answers 423 with ``locked_by`` so the UI can show who
holds the session.
"""

import jwt
from flask import Blueprint, jsonify, request

from discovery.blueprints import LOCK_TOKEN_HEADER
from discovery.core.exceptions import NotHolderError
from discovery.services import get_services
from discovery.utils.errors import E, api_error

lock_bp = Blueprint("lock", __name__, url_prefix="/api/v1")


def _token_holder(session_id: int) -> str:
    """Holder named by the presented token (signature checked, lease not)."""
    token = request.headers.get(LOCK_TOKEN_HEADER)
    if not token:
        raise NotHolderError(session_id, None, "lock token required")
    try:
        payload = get_services().lock.decode_token(token)
    except jwt.InvalidTokenError as e:
        raise NotHolderError(session_id, None, f"invalid lock token: {e}") from e
    if payload.get("sid") != session_id:
        raise NotHolderError(session_id, payload.get("sub"), "token issued for another session")
    return payload["sub"]


@lock_bp.route("/sessions/<int:session_id>/lock", methods=["POST"])
def acquire(session_id):
    data = request.get_json(silent=True) or {}
    holder_id = str(data.get("holder_id") or "").strip()
    if not holder_id:
        return api_error(E.VALIDATION_REQUIRED, "holder_id is required")
    grant = get_services().lock.acquire(session_id, holder_id[:150])
    return jsonify(grant.to_dict()), 200


@lock_bp.route("/sessions/<int:session_id>/lock/heartbeat", methods=["POST"])
def heartbeat(session_id):
    holder_id = _token_holder(session_id)
    grant = get_services().lock.heartbeat(session_id, holder_id)
    return jsonify(grant.to_dict()), 200


@lock_bp.route("/sessions/<int:session_id>/lock", methods=["DELETE"])
def release(session_id):
    holder_id = _token_holder(session_id)
    released = get_services().lock.release(session_id, holder_id)
    return jsonify({"session_id": session_id, "released": released}), 200


@lock_bp.route("/sessions/<int:session_id>/lock", methods=["GET"])
def status(session_id):
    return jsonify(get_services().lock.status(session_id))
