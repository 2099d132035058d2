# Overview: Flask API routes for edition lookups, audits and resequencing.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_api_token
from ..models import REQUEST_FAILED, REQUEST_NEEDS_REVIEW, REQUEST_PENDING
from ..services import audit_service
from ..services.ledger_service import (
    OUTCOME_FAILED,
    OUTCOME_REQUEUED,
    ledger,
    reassign_editions,
)

"""
Read semantics:
- edition_number may be null on any read; a unit is only numbered once its
  product's pass has committed.
- Numbers of other units can shift after a reactivation or restock, so
  callers should re-read rather than cache.
"""

editions_bp = Blueprint("editions", __name__, url_prefix="/api/editions")

QUEUE_STATUSES = {REQUEST_PENDING, REQUEST_FAILED, REQUEST_NEEDS_REVIEW}


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").lower() in ("1", "true", "yes")


@editions_bp.get("/line-items/<line_item_id>")
@require_api_token
def verify_edition_route(line_item_id: str):
    item = audit_service.verify_edition(line_item_id, request.args.get("order_id"))
    if item is None:
        return jsonify({"verified": False, "error": "Line item not found"}), 404

    body = item.to_dict()
    body["verified"] = item.is_active and item.edition_number is not None
    return jsonify(body), 200


@editions_bp.get("/line-items/<line_item_id>/history")
@require_api_token
def edition_history_route(line_item_id: str):
    events = audit_service.edition_history(line_item_id)
    return jsonify({
        "line_item_id": line_item_id,
        "events": [ev.to_dict() for ev in events],
    }), 200


@editions_bp.get("/products/<product_id>")
@require_api_token
def product_editions_route(product_id: str):
    result = audit_service.product_editions(product_id, include_history=_flag("include_history"))
    return jsonify(result), 200


@editions_bp.get("/products/<product_id>/duplicates")
@require_api_token
def check_duplicates_route(product_id: str):
    return jsonify(audit_service.check_duplicates(product_id)), 200


@editions_bp.get("/integrity")
@require_api_token
def validate_integrity_route():
    return jsonify(audit_service.validate_integrity(request.args.get("product_id"))), 200


@editions_bp.post("/products/<product_id>/resequence")
@require_api_token
def resequence_route(product_id: str):
    """
    Run a resequencing pass for one product now.

    Returns:
        200: Pass completed (or merged into one already running)
        409: Product lease busy; request queued
        503: Storage failures exhausted retries; product marked FAILED
    """
    outcome = reassign_editions(product_id)
    body = outcome.to_dict()
    if outcome.status == OUTCOME_REQUEUED:
        return jsonify({**body, "error": "Product is being resequenced elsewhere; queued"}), 409
    if outcome.status == OUTCOME_FAILED:
        current_app.logger.error("Manual resequence of %s failed: %s", product_id, outcome.error)
        return jsonify({**body, "error": "Storage unavailable"}), 503
    return jsonify(body), 200


@editions_bp.get("/queue")
@require_api_token
def resequence_queue_route():
    status = request.args.get("status")
    if status and status not in QUEUE_STATUSES:
        return jsonify({"error": f"status must be one of: {', '.join(sorted(QUEUE_STATUSES))}"}), 400
    requests = ledger.queued_requests(status)
    return jsonify({"items": [r.to_dict() for r in requests]}), 200


@editions_bp.get("/failed")
@require_api_token
def failed_products_route():
    requests = [
        r for r in ledger.queued_requests()
        if r.status in (REQUEST_FAILED, REQUEST_NEEDS_REVIEW)
    ]
    return jsonify({"items": [r.to_dict() for r in requests]}), 200


@editions_bp.post("/queue/drain")
@require_api_token
def drain_queue_route():
    outcomes = ledger.drain(include_failed=_flag("include_failed"))
    return jsonify({
        "drained": len(outcomes),
        "outcomes": {pid: o.to_dict() for pid, o in outcomes.items()},
    }), 200
