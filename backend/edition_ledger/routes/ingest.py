# Overview: Flask API routes for order ingestion; parses input and returns JSON responses.

"""
Order Ingestion API Routes

- Bulk and incremental order sync from the commerce platform or warehouse feed
- Refund webhook
- Single line item fulfillment update

Malformed orders inside a sync batch do not fail the request; they are listed
in the returned report under "skipped".
"""

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from ..decorators import require_api_token
from ..services import ingestion_service
from ..services.ingestion_service import LineItemNotFound, OrderNotFound
from ..validation import PayloadValidationError


ingest_bp = Blueprint("ingest", __name__, url_prefix="/api/ingest")

SYNC_SOURCES = {ingestion_service.SOURCE_BULK, ingestion_service.SOURCE_INCREMENTAL}


@ingest_bp.post("/orders")
@require_api_token
def sync_orders_route():
    """
    Ingest a batch of orders.

    Request body:
    {
        "orders": [ {platform order}, ... ],
        "source": "bulk" | "incremental"  (optional, default: bulk)
    }
    A bare JSON list of orders is accepted too.

    Returns:
        200: Sync report
        400: Body is not an order list
    """
    data = request.get_json(silent=True)
    source = ingestion_service.SOURCE_BULK
    if isinstance(data, dict):
        source = data.get("source") or source
        orders = data.get("orders")
    else:
        orders = data

    if not isinstance(orders, list):
        return jsonify({"error": "orders must be a list"}), 400
    if source not in SYNC_SOURCES:
        return jsonify({"error": f"source must be one of: {', '.join(sorted(SYNC_SOURCES))}"}), 400

    try:
        report = ingestion_service.sync_orders(orders, source=source)
    except SQLAlchemyError:
        current_app.logger.exception("Order sync failed")
        return jsonify({"error": "Storage unavailable"}), 503

    return jsonify(report.to_dict()), 200


@ingest_bp.post("/refunds")
@require_api_token
def refund_webhook_route():
    """
    Record a platform refund.

    Request body: the platform refund object, with "order_id".

    Returns:
        200: Refund applied (or already known)
        400: Malformed refund
        404: Order not found
    """
    data = request.get_json(silent=True)
    try:
        result = ingestion_service.apply_refund(data)
    except PayloadValidationError as e:
        return jsonify(e.to_dict()), 400
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except SQLAlchemyError:
        current_app.logger.exception("Refund webhook failed")
        return jsonify({"error": "Storage unavailable"}), 503

    return jsonify(result), 200


@ingest_bp.post("/orders/<order_id>/line-items/<line_item_id>/fulfillment")
@require_api_token
def update_fulfillment_route(order_id: str, line_item_id: str):
    """
    Set one line item's fulfillment status.

    Request body:
    {
        "fulfillment_status": "fulfilled" | null
    }
    """
    data = request.get_json(silent=True) or {}
    if "fulfillment_status" not in data:
        return jsonify({"error": "fulfillment_status required"}), 400

    status = data.get("fulfillment_status")
    if status is not None and not isinstance(status, str):
        return jsonify({"error": "fulfillment_status must be a string or null"}), 400

    try:
        result = ingestion_service.update_line_item_status(order_id, line_item_id, status)
    except LineItemNotFound as e:
        return jsonify({"error": str(e)}), 404
    except SQLAlchemyError:
        current_app.logger.exception("Fulfillment update failed")
        return jsonify({"error": "Storage unavailable"}), 503

    return jsonify(result), 200
