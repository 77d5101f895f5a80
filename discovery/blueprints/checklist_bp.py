"""
Checklist blueprint: checklist, evidence, reanalysis and findings of a session.

    POST   /api/v1/sessions/<id>/checklist/generate
    PUT    /api/v1/sessions/<id>/checklist
    GET    /api/v1/sessions/<id>/checklist              ?status=missing|obtained
    GET    /api/v1/sessions/<id>/checklist/stats
    GET    /api/v1/sessions/<id>/checklist/by-category
    PATCH  /api/v1/sessions/<id>/checklist/items/<item_id>      (lock required)
    POST   /api/v1/sessions/<id>/evidence                       (lock required)
    GET    /api/v1/sessions/<id>/evidence
    POST   /api/v1/sessions/<id>/reanalyze                      (lock required)
    GET    /api/v1/sessions/<id>/reanalysis-runs
    GET    /api/v1/sessions/<id>/findings                       ?grouped=1
    DELETE /api/v1/sessions/<id>/findings/<finding_id>          (lock required)

Mutating endpoints take the lock token in the X-Session-Lock-Token header; the
token's holder becomes the audit actor.
"""

import logging

from flask import Blueprint, jsonify, request

from discovery.blueprints import LOCK_TOKEN_HEADER
from discovery.models.checklist import EVIDENCE_SOURCES, ITEM_STATUSES
from discovery.services import get_services
from discovery.services.workshop_service import get_session
from discovery.utils.errors import E, api_error

logger = logging.getLogger(__name__)

checklist_bp = Blueprint("checklist", __name__, url_prefix="/api/v1")


def _require_holder(session_id: int) -> str:
    get_session(session_id)
    return get_services().lock.require_holder(session_id, request.headers.get(LOCK_TOKEN_HEADER))


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


# ── Checklist ────────────────────────────────────────────────────────────────

@checklist_bp.route("/sessions/<int:session_id>/checklist/generate", methods=["POST"])
def generate_checklist(session_id):
    actor = _require_holder(session_id)
    items = get_services().generator.generate(session_id, actor=actor)
    return jsonify({"session_id": session_id, "count": len(items),
                    "items": [i.to_dict() for i in items]}), 201


@checklist_bp.route("/sessions/<int:session_id>/checklist", methods=["PUT"])
def replace_checklist(session_id):
    actor = _require_holder(session_id)
    data = _json_body()
    if data is None or not isinstance(data.get("items"), list):
        return api_error(E.VALIDATION_REQUIRED, "items (list) is required")
    items = get_services().store.replace_items(session_id, data["items"], actor=actor)
    return jsonify({"session_id": session_id, "count": len(items),
                    "items": [i.to_dict() for i in items]}), 200


@checklist_bp.route("/sessions/<int:session_id>/checklist", methods=["GET"])
def list_checklist(session_id):
    get_session(session_id)
    status = request.args.get("status")
    if status and status not in ITEM_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"status must be one of {sorted(ITEM_STATUSES)}")
    items = get_services().store.list_items(session_id, status=status)
    return jsonify({"session_id": session_id, "items": [i.to_dict() for i in items]})


@checklist_bp.route("/sessions/<int:session_id>/checklist/stats", methods=["GET"])
def checklist_stats(session_id):
    get_session(session_id)
    return jsonify(get_services().store.stats(session_id))


@checklist_bp.route("/sessions/<int:session_id>/checklist/by-category", methods=["GET"])
def checklist_by_category(session_id):
    get_session(session_id)
    return jsonify({"session_id": session_id,
                    "categories": get_services().store.by_category(session_id)})


@checklist_bp.route("/sessions/<int:session_id>/checklist/items/<int:item_id>", methods=["PATCH"])
def update_item(session_id, item_id):
    actor = _require_holder(session_id)
    data = _json_body()
    if data is None or not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    item = get_services().state_machine.manual_update(
        session_id, item_id,
        status=data["status"],
        obtained_text=data.get("obtained_text"),
        confidence=data.get("confidence"),
        actor=actor,
    )
    return jsonify(item.to_dict())


# ── Evidence ─────────────────────────────────────────────────────────────────

@checklist_bp.route("/sessions/<int:session_id>/evidence", methods=["POST"])
def submit_evidence(session_id):
    actor = _require_holder(session_id)
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "JSON body required")
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        return api_error(E.VALIDATION_REQUIRED, "text is required")
    source = data.get("source") or "audio"
    if source not in EVIDENCE_SOURCES:
        return api_error(E.VALIDATION_INVALID, f"source must be one of {sorted(EVIDENCE_SOURCES)}")

    outcome = get_services().state_machine.analyze_incremental(
        session_id, text, source=source, label=data.get("label"), actor=actor,
    )
    return jsonify(outcome.to_dict()), 200 if outcome.replayed else 201


@checklist_bp.route("/sessions/<int:session_id>/evidence", methods=["GET"])
def list_evidence(session_id):
    get_session(session_id)
    include_text = request.args.get("include_text", "0") in ("1", "true")
    records = get_services().evidence.list(session_id)
    return jsonify({"session_id": session_id,
                    "evidence": [r.to_dict(include_text=include_text) for r in records]})


# ── Reanalysis ───────────────────────────────────────────────────────────────

@checklist_bp.route("/sessions/<int:session_id>/reanalyze", methods=["POST"])
def reanalyze(session_id):
    actor = _require_holder(session_id)
    run = get_services().reanalysis.reanalyze_all(session_id, requested_by=actor)
    body = run.to_dict()
    body["stats"] = get_services().store.stats(session_id)
    return jsonify(body), 200


@checklist_bp.route("/sessions/<int:session_id>/reanalysis-runs", methods=["GET"])
def list_reanalysis_runs(session_id):
    runs = get_services().reanalysis.list_runs(session_id)
    return jsonify({"session_id": session_id, "runs": [r.to_dict() for r in runs]})


# ── Findings ─────────────────────────────────────────────────────────────────

@checklist_bp.route("/sessions/<int:session_id>/findings", methods=["GET"])
def list_findings(session_id):
    get_session(session_id)
    ledger = get_services().findings
    if request.args.get("grouped") in ("1", "true"):
        return jsonify(ledger.grouped(session_id))
    return jsonify({"session_id": session_id,
                    "findings": [f.to_dict() for f in ledger.list(session_id)]})


@checklist_bp.route("/sessions/<int:session_id>/findings/<int:finding_id>", methods=["DELETE"])
def delete_finding(session_id, finding_id):
    actor = _require_holder(session_id)
    get_services().findings.delete(session_id, finding_id, actor=actor)
    return "", 204
