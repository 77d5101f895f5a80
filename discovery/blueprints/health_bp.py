"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        - liveness + database probe
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from discovery.models import db
from discovery.services import get_services

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1")


@health_bp.route("/health", methods=["GET"])
def health():
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        checks["database"] = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    except SQLAlchemyError as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    checks["llm_providers"] = {"status": "ok", "available": get_services().gateway.available_providers}

    return jsonify({
        "status": "ok" if overall else "degraded",
        "app": "Workshop Discovery",
        "checks": checks,
    }), 200 if overall else 503
