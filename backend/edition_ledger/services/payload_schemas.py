# Overview: Typed input boundary for commerce platform order payloads.

"""
Normalizes raw platform JSON into small frozen dataclasses.

Only the fields the edition ledger needs are kept. A malformed order raises
PayloadValidationError; a malformed line item inside an otherwise valid order
is dropped and reported in OrderPayload.skipped_line_items so the rest of the
order still syncs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from edition_ledger.time_utils import coerce_datetime
from ..validation import PayloadValidationError


# Platform restock_type values that put the unit back into stock
RESTOCK_TYPES = {"return", "cancel", "legacy_restock"}

# price_cents is a 64-bit integer column
MAX_PRICE = Decimal(2 ** 63 - 1).scaleb(-2)


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _to_lower(value: Any) -> str | None:
    text = _to_text(value)
    return text.lower() if text else None


def _to_cents(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("price must be numeric")
    text = str(value).strip().replace("$", "").replace(",", "")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"price {value!r} is not a number")
    # inf, nan and JSON numbers that overflowed a float
    if not amount.is_finite():
        raise ValueError(f"price {value!r} is not finite")
    if amount.copy_abs() > MAX_PRICE:
        raise ValueError(f"price {value!r} is out of range")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_datetime(value: Any, field_name: str, order_id: str | None) -> datetime | None:
    try:
        return coerce_datetime(value)
    except ValueError:
        raise PayloadValidationError(f"{field_name} must be an ISO-8601 datetime", order_id=order_id)


def normalize_order_name(name: str) -> str:
    """'#1174 ' -> '1174'. Warehouse and platform records share this form."""
    return name.strip().lstrip("#").strip().upper()


def is_canonical_order_id(order_id: str) -> bool:
    """Platform order ids are numeric; anything else came from another feed."""
    return order_id.isdigit()


@dataclass(frozen=True)
class LineItemPayload:
    line_item_id: str
    product_id: str
    variant_id: str | None = None
    title: str | None = None
    vendor_name: str | None = None
    price_cents: int | None = None
    fulfillment_status: str | None = None


@dataclass(frozen=True)
class RefundLinePayload:
    line_item_id: str
    restock: bool = False


@dataclass(frozen=True)
class RefundPayload:
    refund_id: str
    lines: tuple[RefundLinePayload, ...] = ()


@dataclass(frozen=True)
class OrderPayload:
    order_id: str
    order_name: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    financial_status: str | None = None
    fulfillment_status: str | None = None
    cancelled_at: datetime | None = None
    refunds: tuple[RefundPayload, ...] = ()
    line_items: tuple[LineItemPayload, ...] = ()
    # Only set on payloads rebuilt from an order folded into another
    superseded: bool = False
    skipped_line_items: tuple[PayloadValidationError, ...] = field(default=(), compare=False)

    @property
    def normalized_name(self) -> str:
        return normalize_order_name(self.order_name)

    @property
    def is_canonical(self) -> bool:
        return is_canonical_order_id(self.order_id)


def parse_line_item(raw: Any, order_id: str) -> LineItemPayload:
    if not isinstance(raw, dict):
        raise PayloadValidationError("line item must be an object", order_id=order_id)

    line_item_id = _to_text(raw.get("id"))
    if not line_item_id:
        raise PayloadValidationError("line item id is required", order_id=order_id)

    product_id = _to_text(raw.get("product_id"))
    if not product_id:
        # Custom / deleted products have no numbering namespace
        raise PayloadValidationError(
            "line item product_id is required", order_id=order_id, line_item_id=line_item_id
        )

    try:
        price_cents = _to_cents(raw.get("price"))
    except ValueError:
        raise PayloadValidationError(
            "line item price must be numeric", order_id=order_id, line_item_id=line_item_id
        )

    return LineItemPayload(
        line_item_id=line_item_id,
        product_id=product_id,
        variant_id=_to_text(raw.get("variant_id")),
        title=_to_text(raw.get("title")),
        vendor_name=_to_text(raw.get("vendor")),
        price_cents=price_cents,
        fulfillment_status=_to_lower(raw.get("fulfillment_status")),
    )


def parse_refund_line(raw: Any, order_id: str) -> RefundLinePayload:
    if not isinstance(raw, dict):
        raise PayloadValidationError("refund line must be an object", order_id=order_id)
    line_item_id = _to_text(raw.get("line_item_id"))
    if not line_item_id:
        raise PayloadValidationError("refund line line_item_id is required", order_id=order_id)
    restock = raw.get("restock") is True or _to_lower(raw.get("restock_type")) in RESTOCK_TYPES
    return RefundLinePayload(line_item_id=line_item_id, restock=restock)


def parse_refund(raw: Any, order_id: str, position: int) -> RefundPayload:
    if not isinstance(raw, dict):
        raise PayloadValidationError("refund must be an object", order_id=order_id)
    # Refunds are append-only on the platform, so list position is stable
    refund_id = _to_text(raw.get("id")) or f"{order_id}:{position}"
    lines = tuple(
        parse_refund_line(line, order_id)
        for line in (raw.get("refund_line_items") or [])
    )
    return RefundPayload(refund_id=refund_id, lines=lines)


def parse_order_payload(raw: Any) -> OrderPayload:
    """
    Validate and normalize one platform order.

    Raises PayloadValidationError when the order itself is unusable; bad line
    items are collected in skipped_line_items instead.
    """
    if not isinstance(raw, dict):
        raise PayloadValidationError("order payload must be an object")

    order_id = _to_text(raw.get("id"))
    if not order_id:
        raise PayloadValidationError("order id is required")

    order_name = _to_text(raw.get("name"))
    if not order_name:
        raise PayloadValidationError("order name is required", order_id=order_id)

    raw_items = raw.get("line_items")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise PayloadValidationError("line_items must be a list", order_id=order_id)

    raw_refunds = raw.get("refunds") or []
    if not isinstance(raw_refunds, list):
        raise PayloadValidationError("refunds must be a list", order_id=order_id)

    line_items: list[LineItemPayload] = []
    skipped: list[PayloadValidationError] = []
    seen: set[str] = set()
    for item in raw_items:
        try:
            parsed = parse_line_item(item, order_id)
        except PayloadValidationError as exc:
            skipped.append(exc)
            continue
        if parsed.line_item_id in seen:
            skipped.append(PayloadValidationError(
                "duplicate line item id in order", order_id=order_id, line_item_id=parsed.line_item_id
            ))
            continue
        seen.add(parsed.line_item_id)
        line_items.append(parsed)

    refunds = tuple(parse_refund(refund, order_id, idx) for idx, refund in enumerate(raw_refunds))

    return OrderPayload(
        order_id=order_id,
        order_name=order_name,
        created_at=_to_datetime(raw.get("created_at"), "created_at", order_id),
        updated_at=_to_datetime(raw.get("updated_at"), "updated_at", order_id),
        financial_status=_to_lower(raw.get("financial_status")),
        fulfillment_status=_to_lower(raw.get("fulfillment_status")),
        cancelled_at=_to_datetime(raw.get("cancelled_at"), "cancelled_at", order_id),
        refunds=refunds,
        line_items=tuple(line_items),
        skipped_line_items=tuple(skipped),
    )


def refunds_from_rows(refund_lines) -> tuple[RefundPayload, ...]:
    """Group persisted refund lines back into refunds by refund_id."""
    grouped: dict[str, list[RefundLinePayload]] = {}
    for line in sorted(refund_lines, key=lambda r: (r.refund_id, r.line_item_id)):
        grouped.setdefault(line.refund_id, []).append(
            RefundLinePayload(line_item_id=line.line_item_id, restock=bool(line.restock))
        )
    return tuple(RefundPayload(refund_id=rid, lines=tuple(lines)) for rid, lines in grouped.items())


def stored_order_payload(order, line_items, refund_lines) -> OrderPayload:
    """
    Rebuild an OrderPayload from persisted rows so stored state can be
    reclassified without the platform (single-item updates, refund
    webhooks, audits).
    """
    return OrderPayload(
        order_id=order.id,
        order_name=order.order_name,
        created_at=order.platform_created_at,
        updated_at=order.platform_updated_at,
        financial_status=order.financial_status,
        fulfillment_status=order.fulfillment_status,
        cancelled_at=order.cancelled_at,
        refunds=refunds_from_rows(refund_lines),
        superseded=order.is_superseded,
        line_items=tuple(
            LineItemPayload(
                line_item_id=item.line_item_id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                title=item.title,
                vendor_name=item.vendor_name,
                price_cents=item.price_cents,
                fulfillment_status=item.fulfillment_status,
            )
            for item in line_items
        ),
    )
