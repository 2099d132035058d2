# Overview: Edition event log, edition lookups, and integrity audits.

from __future__ import annotations

import json
from collections import defaultdict
from typing import Any, Optional

from ..extensions import db
from ..models import (
    EditionEvent,
    LineItem,
    Order,
    OrderRefundLine,
    STATUS_ACTIVE,
)
from .certificate_service import certificate_fields_consistent
from .payload_schemas import stored_order_payload
from .sequencer_service import find_sequence_violations
from .status_service import classify_line_item
"""
Edition Event Log Invariants

- Append-only: no updates or deletes of existing events.
- Events are added to the session of the change they describe and commit
  with it; a rolled-back pass leaves no events behind.
- created_at is system time.
"""


EVENT_STATUS_CHANGED = "status_changed"
EVENT_EDITION_ASSIGNED = "edition_assigned"
EVENT_EDITION_RENUMBERED = "edition_renumbered"
EVENT_EDITION_CLEARED = "edition_cleared"
EVENT_CERTIFICATE_ISSUED = "certificate_issued"
EVENT_ORDER_REKEYED = "order_rekeyed"

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def append_edition_event(
    *,
    event_type: str,
    product_id: str | None,
    line_item_id: str | None,
    order_id: str | None,
    before_edition_number: int | None = None,
    after_edition_number: int | None = None,
    before_status: str | None = None,
    after_status: str | None = None,
    source: str | None = None,
    payload: Optional[dict] = None,
) -> EditionEvent:
    ev = EditionEvent(
        event_type=event_type,
        product_id=product_id,
        line_item_id=line_item_id,
        order_id=order_id,
        before_edition_number=before_edition_number,
        after_edition_number=after_edition_number,
        before_status=before_status,
        after_status=after_status,
        source=source,
        payload=_json_dumps(payload) if payload is not None else None,
    )
    db.session.add(ev)
    return ev


def edition_history(line_item_id: str) -> list[EditionEvent]:
    return (
        db.session.query(EditionEvent)
        .filter(EditionEvent.line_item_id == line_item_id)
        .order_by(EditionEvent.created_at.asc(), EditionEvent.id.asc())
        .all()
    )


def verify_edition(line_item_id: str, order_id: str | None = None) -> LineItem | None:
    """
    Current state of one sold unit.

    Line item ids are only unique within an order; without order_id the most
    recently updated match wins.
    """
    q = db.session.query(LineItem).filter(LineItem.line_item_id == line_item_id)
    if order_id:
        q = q.filter(LineItem.order_id == order_id)
    return q.order_by(LineItem.updated_at.desc(), LineItem.id.desc()).first()


def product_editions(product_id: str, *, include_history: bool = False) -> dict:
    items = (
        db.session.query(LineItem)
        .filter(
            LineItem.product_id == product_id,
            LineItem.status == STATUS_ACTIVE,
            LineItem.edition_number.isnot(None),
        )
        .order_by(LineItem.edition_number.asc())
        .all()
    )
    editions = []
    for item in items:
        row = item.to_dict()
        if include_history:
            row["history"] = [ev.to_dict() for ev in edition_history(item.line_item_id)]
        editions.append(row)
    return {
        "product_id": product_id,
        "total_editions": len(editions),
        "editions": editions,
    }


def check_duplicates(product_id: str) -> dict:
    rows = (
        db.session.query(LineItem.edition_number, LineItem.line_item_id, LineItem.order_id)
        .filter(
            LineItem.product_id == product_id,
            LineItem.status == STATUS_ACTIVE,
            LineItem.edition_number.isnot(None),
        )
        .all()
    )
    by_number: dict[int, list[dict]] = defaultdict(list)
    for number, line_item_id, order_id in rows:
        by_number[number].append({"line_item_id": line_item_id, "order_id": order_id})

    duplicates = {n: items for n, items in by_number.items() if len(items) > 1}
    return {
        "product_id": product_id,
        "total_editions": len(rows),
        "unique_editions": len(by_number),
        "has_duplicates": bool(duplicates),
        "duplicate_edition_numbers": sorted(duplicates),
        "duplicate_items": [
            {"edition_number": n, **item}
            for n in sorted(duplicates)
            for item in duplicates[n]
        ],
    }


def _issue(issue_type: str, description: str, *, severity: str = SEVERITY_CRITICAL, **fields) -> dict:
    return {"type": issue_type, "severity": severity, "description": description, **fields}


def validate_integrity(product_id: str | None = None) -> dict:
    """
    Audit persisted ledger state.

    Reports restocked-but-active units, active units on voided, cancelled or
    refunded orders, active units on superseded orders, broken
    numbering per product, and half-written certificate fields.
    """
    q = db.session.query(LineItem, Order).join(Order, LineItem.order_id == Order.id)
    if product_id:
        q = q.filter(LineItem.product_id == product_id)
    rows = q.all()

    order_ids = {order.id for _, order in rows}
    refunds_by_order: dict[str, list[OrderRefundLine]] = defaultdict(list)
    if order_ids:
        for line in db.session.query(OrderRefundLine).filter(OrderRefundLine.order_id.in_(order_ids)):
            refunds_by_order[line.order_id].append(line)

    issues: list[dict] = []
    by_product: dict[str, list[LineItem]] = defaultdict(list)

    for item, order in rows:
        by_product[item.product_id].append(item)
        ref = {"product_id": item.product_id, "line_item_id": item.line_item_id, "order_id": item.order_id}

        if item.status == STATUS_ACTIVE and item.restocked:
            issues.append(_issue(
                "restocked_but_active",
                f"Line item {item.line_item_id} is active but restocked",
                **ref,
            ))

        payload = stored_order_payload(order, [item], refunds_by_order[order.id])
        expected = classify_line_item(payload, payload.line_items[0])
        if expected.status != item.status:
            issues.append(_issue(
                "status_mismatch",
                f"Line item {item.line_item_id} is {item.status} but order state "
                f"(financial_status={order.financial_status}, cancelled={order.cancelled_at is not None}) "
                f"says {expected.status}",
                **ref,
            ))
        if order.is_superseded and item.status == STATUS_ACTIVE:
            issues.append(_issue(
                "item_on_superseded_order",
                f"Line item {item.line_item_id} is active on superseded order {order.id}",
                **ref,
            ))
        if not certificate_fields_consistent(item):
            issues.append(_issue(
                "partial_certificate",
                f"Line item {item.line_item_id} has partially written certificate fields",
                **ref,
            ))
        if item.status == STATUS_ACTIVE and item.certificate_token is None and item.edition_number is not None:
            issues.append(_issue(
                "missing_certificate",
                f"Line item {item.line_item_id} is numbered but has no certificate",
                severity=SEVERITY_WARNING,
                **ref,
            ))

    for pid, items in sorted(by_product.items()):
        for problem in find_sequence_violations(items):
            issues.append(_issue("sequence_violation", problem, product_id=pid))

    return {
        "issues_found": len(issues),
        "issues": issues,
        "scope": {"product_id": product_id or "all"},
    }
