"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database reachability and engine counters
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select

from app.models import db
from app.models.workflow import WorkflowInstance, WorkflowSyncLock

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with database latency and open-work counters."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Workflow engine ──────────────────────────────────────────────
    if overall:
        active = db.session.execute(
            select(func.count(WorkflowInstance.id)).where(WorkflowInstance.status == "active")
        ).scalar_one()
        locks = db.session.execute(select(func.count(WorkflowSyncLock.id))).scalar_one()
        checks["workflow"] = {"status": "ok", "active_instances": active, "held_sync_locks": locks}

    cache = current_app.extensions.get("permission_cache")
    if cache is not None:
        checks["permission_cache"] = {"status": "ok", "entries": len(cache)}

    checks["app"] = {
        "name": "Parallel Workflow Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
