# backend/edition_ledger/routes/system.py
"""
System health endpoint.

Reports database connectivity and the state of the resequence queue so a
deploy check can tell a stuck ledger from a dead one.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import func

from ..extensions import db
from ..models import LineItem, ResequenceRequest

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        line_item_count = db.session.query(LineItem).count()

        queue = dict(
            db.session.query(ResequenceRequest.status, func.count(ResequenceRequest.product_id))
            .group_by(ResequenceRequest.status)
            .all()
        )

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "line_items": line_item_count,
                "resequence_queue": queue,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health_route():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": {"database": database},
    }
    return jsonify(body), 200 if healthy else 503
