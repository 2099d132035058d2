# Overview: Order ingestion; persists platform payloads, classifies items, and hands changed products to the ledger.

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import (
    LineItem,
    Order,
    OrderRefundLine,
    ORDER_SOURCE_PLATFORM,
    ORDER_SOURCE_PROVISIONAL,
)
from ..validation import PayloadValidationError
from edition_ledger.time_utils import utcnow
from . import audit_service
from .concurrency import run_with_retry
from .dedup_service import deduplicate_orders
from .ledger_service import ledger
from .payload_schemas import (
    LineItemPayload,
    OrderPayload,
    parse_order_payload,
    is_canonical_order_id,
    parse_refund,
    refunds_from_rows,
    stored_order_payload,
)
from .status_service import StatusResult, classify_line_item, classify_order, is_financial_status_known
"""
Ingestion Invariants

- Only fields that actually differ are written; re-ingesting an identical
  payload produces no row updates, no events and no resequencing pass.
- status and restocked are always the status classifier's output; nothing
  else in ingestion decides them.
- Edition and certificate fields are never touched here.
- A line item's created_at is set once (platform order time, else ingestion
  time) and only moves earlier when a duplicate record is merged in.
- One sale has at most one live order record. Records sharing a
  name are folded into the most recently updated one, canonical first; a
  certified line item is never deleted in the process.
"""


logger = logging.getLogger(__name__)

SOURCE_BULK = "bulk"
SOURCE_INCREMENTAL = "incremental"
SOURCE_WEBHOOK = "webhook"
SOURCE_FULFILLMENT = "fulfillment"


class IngestionError(ValueError):
    """Raised when an ingestion request cannot be applied."""


class OrderNotFound(IngestionError):
    pass


class LineItemNotFound(IngestionError):
    pass


@dataclass
class _OrderChanges:
    """What persisting one order did; only counted once its commit succeeds."""
    order_created: bool = False
    order_updated: bool = False
    items_created: int = 0
    items_updated: int = 0
    status_changes: int = 0
    refund_lines_added: int = 0
    items_rekeyed: int = 0
    superseded: list[str] = field(default_factory=list)
    survivor_id: str | None = None
    discarded: bool = False
    products: set[str] = field(default_factory=set)


@dataclass
class SyncReport:
    source: str
    received: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    orders_unchanged: int = 0
    line_items_created: int = 0
    line_items_updated: int = 0
    status_changes: int = 0
    refund_lines_added: int = 0
    line_items_rekeyed: int = 0
    superseded_orders: dict[str, str] = field(default_factory=dict)
    unresolved_orders: list[str] = field(default_factory=list)
    discarded_orders: list[str] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    failed_orders: list[dict] = field(default_factory=list)
    unknown_financial_statuses: list[dict] = field(default_factory=list)
    passes: dict[str, dict] = field(default_factory=dict)

    def absorb(self, changes: _OrderChanges) -> None:
        if changes.order_created:
            self.orders_created += 1
        elif changes.order_updated:
            self.orders_updated += 1
        else:
            self.orders_unchanged += 1
        self.line_items_created += changes.items_created
        self.line_items_updated += changes.items_updated
        self.status_changes += changes.status_changes
        self.refund_lines_added += changes.refund_lines_added
        self.line_items_rekeyed += changes.items_rekeyed
        for order_id in changes.superseded:
            self.superseded_orders[order_id] = changes.survivor_id

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def _assign(row, values: dict[str, Any]) -> bool:
    """Set only attributes that differ. Returns True if anything changed."""
    changed = False
    for key, value in values.items():
        if getattr(row, key) != value:
            setattr(row, key, value)
            changed = True
    return changed


def _record_status_change(item: LineItem, before: str | None, result: StatusResult, source: str) -> None:
    audit_service.append_edition_event(
        event_type=audit_service.EVENT_STATUS_CHANGED,
        product_id=item.product_id,
        line_item_id=item.line_item_id,
        order_id=item.order_id,
        before_edition_number=item.edition_number,
        before_status=before,
        after_status=result.status,
        source=source,
        payload={"restocked": result.restocked, "fulfillment_status": item.fulfillment_status},
    )


def _apply_status(item: LineItem, result: StatusResult, source: str, now) -> bool:
    """Write classifier output onto a stored item. Returns True on a status transition."""
    before = item.status
    if not _assign(item, {"status": result.status, "restocked": result.restocked}):
        return False
    item.updated_at = now
    if before == result.status:
        return False
    _record_status_change(item, before, result, source)
    return True


def _order_values(order: OrderPayload) -> dict[str, Any]:
    return {
        "order_name": order.order_name,
        "normalized_name": order.normalized_name,
        "financial_status": order.financial_status,
        "fulfillment_status": order.fulfillment_status,
        "cancelled_at": order.cancelled_at,
        "platform_created_at": order.created_at,
        "platform_updated_at": order.updated_at,
    }


def _line_item_values(item: LineItemPayload) -> dict[str, Any]:
    return {
        "product_id": item.product_id,
        "variant_id": item.variant_id,
        "title": item.title,
        "vendor_name": item.vendor_name,
        "price_cents": item.price_cents,
        "fulfillment_status": item.fulfillment_status,
    }


def _stamp(updated_at, created_at):
    return updated_at or created_at


def _stored_recency(row: Order) -> tuple:
    stamp = _stamp(row.platform_updated_at, row.platform_created_at)
    return (stamp is not None, stamp or datetime.min, row.id)


def _outranks(order: OrderPayload, stored: Order) -> bool:
    """True when the incoming record was updated after the stored one. Ties keep the stored record."""
    incoming = _stamp(order.updated_at, order.created_at)
    existing = _stamp(stored.platform_updated_at, stored.platform_created_at)
    if incoming is None:
        return False
    if existing is None:
        return True
    return incoming > existing


def _live_order(order: Order) -> Order:
    """Follow superseded_by links to the record that currently stands for the sale."""
    seen = set()
    while order.is_superseded and order.id not in seen:
        seen.add(order.id)
        order = db.session.get(Order, order.superseded_by_order_id)
    return order


def _find_canonical_order(normalized_name: str) -> Order | None:
    return (
        db.session.query(Order)
        .filter(
            Order.normalized_name == normalized_name,
            Order.source == ORDER_SOURCE_PLATFORM,
            Order.superseded_by_order_id.is_(None),
        )
        .order_by(Order.platform_updated_at.desc())
        .first()
    )


def _open_provisional_orders(normalized_name: str) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(
            Order.normalized_name == normalized_name,
            Order.source == ORDER_SOURCE_PROVISIONAL,
            Order.superseded_by_order_id.is_(None),
        )
        .order_by(Order.id.asc())
        .all()
    )


def _live_rivals(order: OrderPayload) -> list[Order]:
    """Other unsuperseded records of the same kind for the same sale, most recent first."""
    rivals = (
        db.session.query(Order)
        .filter(
            Order.normalized_name == order.normalized_name,
            Order.source == (ORDER_SOURCE_PLATFORM if order.is_canonical else ORDER_SOURCE_PROVISIONAL),
            Order.superseded_by_order_id.is_(None),
            Order.id != order.order_id,
        )
        .all()
    )
    return sorted(rivals, key=_stored_recency, reverse=True)


# ---------------------------------------------------------------------------
# Folding duplicate records of one sale together
# ---------------------------------------------------------------------------

def _match_payload_item(
    item: LineItem,
    candidates: list[LineItemPayload],
) -> LineItemPayload | None:
    """Same line item id, else same product+variant, else same product."""
    for test in (
        lambda c: c.line_item_id == item.line_item_id,
        lambda c: c.product_id == item.product_id and c.variant_id == item.variant_id,
        lambda c: c.product_id == item.product_id,
    ):
        for candidate in candidates:
            if test(candidate):
                return candidate
    return None


def _merge_into(survivor: LineItem, duplicate: LineItem) -> None:
    """Keep survivor with the earlier of the two created_at values; delete duplicate."""
    if duplicate.created_at and (survivor.created_at is None or duplicate.created_at < survivor.created_at):
        survivor.created_at = duplicate.created_at
    db.session.delete(duplicate)
    # Free the unique key before the survivor can take it
    db.session.flush()


def _retire_item(item: LineItem, superseded: Order, source: str, now) -> bool:
    """Leave a unit on its superseded order, where it classifies inactive. Certificate fields stay."""
    payload = stored_order_payload(superseded, [item], superseded.refund_lines)
    return _apply_status(item, classify_line_item(payload, payload.line_items[0]), source, now)


def _rekey_order(loser: Order, survivor: Order, payload: OrderPayload, source: str) -> _OrderChanges:
    """
    Fold a superseded order's line items into the surviving order.

    Each loser item is matched to at most one line item of the survivor's
    payload. When the survivor already holds that row the two are merged,
    keeping the earlier created_at and whichever row carries a certificate.
    A row with a certificate is never deleted: an unmatched unit, or a second
    certified copy of a unit, stays on the loser and drops out of numbering.
    """
    changes = _OrderChanges(survivor_id=survivor.id)
    now = utcnow()
    # Set first so units left behind classify as inactive
    loser.superseded_by_order_id = survivor.id

    unmatched = list(payload.line_items)
    existing = {
        i.line_item_id: i
        for i in db.session.query(LineItem).filter(LineItem.order_id == survivor.id)
    }

    items = (
        db.session.query(LineItem)
        .filter(LineItem.order_id == loser.id)
        .order_by(LineItem.created_at.asc(), LineItem.id.asc())
        .all()
    )
    for item in items:
        match = _match_payload_item(item, unmatched)
        target = existing.get(match.line_item_id) if match is not None else None

        if match is None or (target is not None and target.certificate_token and item.certificate_token):
            if item.certificate_token:
                logger.warning(
                    "Certified line item %s stays on superseded order %s and leaves numbering",
                    item.line_item_id, loser.id,
                )
            if _retire_item(item, loser, source, now):
                changes.status_changes += 1
            changes.products.add(item.product_id)
            continue

        unmatched.remove(match)
        old_key = (item.line_item_id, item.order_id)
        if target is not None:
            if target.certificate_token is None and item.certificate_token is not None:
                # Keep the certificate a collector may already hold
                _merge_into(item, target)
            else:
                _merge_into(target, item)
                item = target

        item.line_item_id = match.line_item_id
        item.order_id = survivor.id
        if payload.created_at is not None and payload.created_at < item.created_at:
            item.created_at = payload.created_at
        item.updated_at = now
        existing[match.line_item_id] = item

        changes.items_rekeyed += 1
        changes.products.add(item.product_id)
        audit_service.append_edition_event(
            event_type=audit_service.EVENT_ORDER_REKEYED,
            product_id=item.product_id,
            line_item_id=item.line_item_id,
            order_id=survivor.id,
            before_edition_number=item.edition_number,
            after_status=item.status,
            source=source,
            payload={
                "from_order_id": old_key[1],
                "from_line_item_id": old_key[0],
                "merged": target is not None,
            },
        )

    changes.superseded.append(loser.id)
    logger.info(
        "Order %s superseded by order %s (%d line items re-keyed)",
        loser.id, survivor.id, changes.items_rekeyed,
    )
    return changes


def _fold_incoming(order: OrderPayload, survivor: Order, source: str) -> _OrderChanges:
    """The incoming record lost to a stored one; fold its stored copy, if any, into the survivor."""
    stored = db.session.get(Order, order.order_id)
    if stored is not None and not stored.is_superseded:
        survivor_payload = stored_order_payload(survivor, survivor.line_items, [])
        changes = _rekey_order(stored, survivor, survivor_payload, source)
    else:
        changes = _OrderChanges(survivor_id=survivor.id)
        if stored is None and order.is_canonical:
            changes.discarded = True
        else:
            changes.superseded.append(order.order_id)
    db.session.commit()
    return changes


# ---------------------------------------------------------------------------
# Order upsert
# ---------------------------------------------------------------------------

def _ingest_order(order: OrderPayload, source: str) -> _OrderChanges:
    now = utcnow()

    if not order.is_canonical:
        canonical = _find_canonical_order(order.normalized_name)
        if canonical is not None:
            # Canonical record already seen: this one is dropped from processing
            return _fold_incoming(order, canonical, source)

    rivals = _live_rivals(order)
    if rivals and not _outranks(order, rivals[0]):
        return _fold_incoming(order, rivals[0], source)

    changes = _OrderChanges()
    row = db.session.get(Order, order.order_id)
    if row is None:
        row = Order(
            id=order.order_id,
            source=ORDER_SOURCE_PLATFORM if order.is_canonical else ORDER_SOURCE_PROVISIONAL,
            **_order_values(order),
        )
        db.session.add(row)
        db.session.flush()
        changes.order_created = True
    elif row.is_superseded:
        # Folded into another record earlier; that stays final
        changes.superseded.append(row.id)
        changes.survivor_id = _live_order(row).id
        db.session.rollback()
        return changes
    else:
        changes.order_updated = _assign(row, _order_values(order))

    changes.survivor_id = row.id
    losers = list(rivals)
    if order.is_canonical:
        losers.extend(_open_provisional_orders(order.normalized_name))
    for loser in losers:
        folded = _rekey_order(loser, row, order, source)
        changes.items_rekeyed += folded.items_rekeyed
        changes.status_changes += folded.status_changes
        changes.superseded.extend(folded.superseded)
        changes.products |= folded.products

    stored_refunds = {
        (line.refund_id, line.line_item_id)
        for line in db.session.query(OrderRefundLine).filter(OrderRefundLine.order_id == row.id)
    }
    for refund in order.refunds:
        for line in refund.lines:
            if (refund.refund_id, line.line_item_id) in stored_refunds:
                continue
            db.session.add(OrderRefundLine(
                order_id=row.id,
                refund_id=refund.refund_id,
                line_item_id=line.line_item_id,
                restock=line.restock,
            ))
            stored_refunds.add((refund.refund_id, line.line_item_id))
            changes.refund_lines_added += 1
    db.session.flush()

    # Classify against every refund we hold, not only those in this payload
    all_refunds = db.session.query(OrderRefundLine).filter(OrderRefundLine.order_id == row.id).all()
    statuses = classify_order(dataclasses.replace(order, refunds=refunds_from_rows(all_refunds)))

    existing = {
        i.line_item_id: i
        for i in db.session.query(LineItem).filter(LineItem.order_id == row.id)
    }
    for payload_item in order.line_items:
        result = statuses[payload_item.line_item_id]
        item = existing.get(payload_item.line_item_id)

        if item is None:
            item = LineItem(
                line_item_id=payload_item.line_item_id,
                order_id=row.id,
                status=result.status,
                restocked=result.restocked,
                created_at=order.created_at or now,
                updated_at=now,
                **_line_item_values(payload_item),
            )
            db.session.add(item)
            _record_status_change(item, None, result, source)
            changes.items_created += 1
            changes.products.add(item.product_id)
            continue

        previous_product = item.product_id
        details_changed = _assign(item, _line_item_values(payload_item))
        if details_changed:
            item.updated_at = now
        status_changed = _apply_status(item, result, source, now)

        if details_changed or status_changed:
            changes.items_updated += 1
        if status_changed:
            changes.status_changes += 1
            changes.products.add(item.product_id)
        if previous_product != item.product_id:
            changes.products.update({previous_product, item.product_id})

    db.session.commit()
    return changes


def sync_orders(raw_orders: Iterable[Any], *, source: str = SOURCE_BULK, run_passes: bool = True) -> SyncReport:
    """
    Ingest a batch of platform or warehouse orders.

    Malformed orders and line items are skipped and reported; the rest of the
    batch continues. Each order commits on its own. Products whose active set
    changed get one resequencing pass each after the batch is stored.
    """
    report = SyncReport(source=source)
    parsed: list[OrderPayload] = []

    for raw in raw_orders:
        report.received += 1
        try:
            order = parse_order_payload(raw)
        except PayloadValidationError as exc:
            logger.warning("Skipping malformed order (%s): %s", exc.order_id or "no id", exc)
            report.skipped.append(exc.to_dict())
            continue
        for exc in order.skipped_line_items:
            logger.warning(
                "Skipping malformed line item %s on order %s: %s",
                exc.line_item_id or "(no id)", exc.order_id, exc,
            )
            report.skipped.append(exc.to_dict())
        parsed.append(order)

    deduped = deduplicate_orders(parsed)
    report.superseded_orders.update(deduped.superseded)
    report.discarded_orders.extend(deduped.discarded)

    affected: set[str] = set()
    for order in deduped.orders:
        if not is_financial_status_known(order.financial_status):
            logger.warning(
                "Order %s has unrecognized financial_status %r; its items are treated as not actionable",
                order.order_id, order.financial_status,
            )
            report.unknown_financial_statuses.append(
                {"order_id": order.order_id, "financial_status": order.financial_status}
            )

        try:
            changes = run_with_retry(
                lambda: _ingest_order(order, source),
                attempts=ledger.max_attempts,
                backoff_base=ledger.retry_backoff,
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Failed to store order %s", order.order_id)
            report.failed_orders.append({"order_id": order.order_id, "error": str(exc)})
            continue

        report.absorb(changes)
        affected |= changes.products

        if changes.discarded:
            report.discarded_orders.append(order.order_id)
        if not is_canonical_order_id(changes.survivor_id or order.order_id):
            report.unresolved_orders.append(order.normalized_name)

    for name in report.unresolved_orders:
        logger.warning("Order %s has no canonical platform record yet; using provisional record", name)

    if run_passes and affected:
        outcomes = ledger.request_passes(affected, source=source)
        report.passes = {pid: outcome.to_dict() for pid, outcome in outcomes.items()}

    logger.info(
        "Synced %d orders (%s): %d created, %d updated, %d skipped, %d products resequenced",
        report.received, source, report.orders_created, report.orders_updated,
        len(report.skipped), len(report.passes),
    )
    return report


def apply_refund(raw: Any, *, order_id: str | None = None, source: str = SOURCE_WEBHOOK, run_passes: bool = True) -> dict:
    """
    Record one refund event (platform refund webhook) and reclassify the
    order's line items against it. Replays are no-ops.
    """
    if not isinstance(raw, dict):
        raise PayloadValidationError("refund payload must be an object")
    order_id = order_id or (str(raw.get("order_id")).strip() if raw.get("order_id") is not None else None)
    if not order_id:
        raise PayloadValidationError("refund order_id is required")

    def _store():
        order = db.session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        order = _live_order(order)

        stored = db.session.query(OrderRefundLine).filter(OrderRefundLine.order_id == order.id).all()
        position = len({line.refund_id for line in stored})
        refund = parse_refund(raw, order.id, position)

        known = {(line.refund_id, line.line_item_id) for line in stored}
        added = 0
        for line in refund.lines:
            if (refund.refund_id, line.line_item_id) in known:
                continue
            new_line = OrderRefundLine(
                order_id=order.id,
                refund_id=refund.refund_id,
                line_item_id=line.line_item_id,
                restock=line.restock,
            )
            db.session.add(new_line)
            stored.append(new_line)
            known.add((refund.refund_id, line.line_item_id))
            added += 1

        now = utcnow()
        items = db.session.query(LineItem).filter(LineItem.order_id == order.id).all()
        statuses = classify_order(stored_order_payload(order, items, stored))
        affected: set[str] = set()
        for item in items:
            if _apply_status(item, statuses[item.line_item_id], source, now):
                affected.add(item.product_id)

        stored_order_id = order.id
        db.session.commit()
        return stored_order_id, refund.refund_id, added, affected

    stored_order_id, refund_id, added, affected = run_with_retry(
        _store,
        attempts=ledger.max_attempts,
        backoff_base=ledger.retry_backoff,
    )

    passes = {}
    if run_passes and affected:
        passes = {pid: o.to_dict() for pid, o in ledger.request_passes(affected, source=source).items()}

    logger.info("Refund %s on order %s: %d new lines, %d products affected",
                refund_id, stored_order_id, added, len(affected))
    return {
        "order_id": stored_order_id,
        "refund_id": refund_id,
        "refund_lines_added": added,
        "affected_products": sorted(affected),
        "passes": passes,
    }


def update_line_item_status(
    order_id: str,
    line_item_id: str,
    fulfillment_status: str | None,
    *,
    source: str = SOURCE_FULFILLMENT,
    run_passes: bool = True,
) -> dict:
    """Change one unit's fulfillment status and reclassify it."""
    fulfillment = fulfillment_status.strip().lower() if fulfillment_status else None

    def _store():
        item = (
            db.session.query(LineItem)
            .filter(LineItem.order_id == order_id, LineItem.line_item_id == line_item_id)
            .first()
        )
        if item is None:
            raise LineItemNotFound(f"Line item {line_item_id} on order {order_id} not found")

        now = utcnow()
        if _assign(item, {"fulfillment_status": fulfillment or None}):
            item.updated_at = now

        order = item.order
        payload = stored_order_payload(order, [item], order.refund_lines)
        result = classify_line_item(payload, payload.line_items[0])
        status_changed = _apply_status(item, result, source, now)
        db.session.commit()
        return item, status_changed

    item, status_changed = run_with_retry(
        _store,
        attempts=ledger.max_attempts,
        backoff_base=ledger.retry_backoff,
    )

    outcome = None
    if run_passes and status_changed:
        outcome = ledger.request_pass(item.product_id, source=source).to_dict()
        db.session.refresh(item)

    return {
        "line_item": item.to_dict(),
        "status_changed": status_changed,
        "pass": outcome,
    }
