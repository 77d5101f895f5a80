"""
Workshop blueprint: workshops and discovery sessions.

    POST  /api/v1/workshops
    GET   /api/v1/workshops
    GET   /api/v1/workshops/<workshop_id>
    POST  /api/v1/workshops/<workshop_id>/sessions
    GET   /api/v1/workshops/<workshop_id>/sessions
    GET   /api/v1/sessions                       ?workshop_id=&status=
    GET   /api/v1/sessions/<session_id>
    PATCH /api/v1/sessions/<session_id>/status
"""

from flask import Blueprint, jsonify, request

from discovery.services import get_services
from discovery.services import workshop_service as ws
from discovery.utils.errors import E, api_error

workshop_bp = Blueprint("workshop", __name__, url_prefix="/api/v1")


@workshop_bp.route("/workshops", methods=["POST"])
def create_workshop():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON body required")
    workshop = ws.create_workshop(data)
    return jsonify(workshop.to_dict()), 201


@workshop_bp.route("/workshops", methods=["GET"])
def list_workshops():
    return jsonify([w.to_dict() for w in ws.list_workshops()])


@workshop_bp.route("/workshops/<int:workshop_id>", methods=["GET"])
def get_workshop(workshop_id):
    workshop = ws.get_workshop(workshop_id)
    return jsonify(workshop.to_dict(include_sessions=True))


@workshop_bp.route("/workshops/<int:workshop_id>/sessions", methods=["POST"])
def create_session(workshop_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON body required")
    session = ws.create_session(workshop_id, data)
    return jsonify(session.to_dict()), 201


@workshop_bp.route("/workshops/<int:workshop_id>/sessions", methods=["GET"])
def list_workshop_sessions(workshop_id):
    return jsonify(ws.list_sessions(workshop_id=workshop_id, status=request.args.get("status")))


@workshop_bp.route("/sessions", methods=["GET"])
def list_sessions():
    workshop_id = request.args.get("workshop_id", type=int)
    return jsonify(ws.list_sessions(workshop_id=workshop_id, status=request.args.get("status")))


@workshop_bp.route("/sessions/<int:session_id>", methods=["GET"])
def get_session(session_id):
    session = ws.get_session(session_id)
    svc = get_services()
    result = session.to_dict()
    result["workshop"] = session.workshop.to_dict()
    result["stats"] = svc.store.stats(session_id)
    result["lock"] = svc.lock.status(session_id)
    return jsonify(result)


@workshop_bp.route("/sessions/<int:session_id>/status", methods=["PATCH"])
def update_session_status(session_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON body required")
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    session = ws.update_session_status(session_id, status, actor=data.get("actor") or "operator")
    return jsonify(session.to_dict())
