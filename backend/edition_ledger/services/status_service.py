# Overview: Line item status classification from order and refund state.

"""
Status Classifier

A line item counts toward its product's edition numbering ("active") when
its order is paid or in progress, or the unit itself has shipped, and it has
not been restocked by a refund or cancelled with its order. Units left on an
order that was folded into another record of the same sale never count.

This module is pure: no database or network access. The same order and line
item always classify the same way, which is what makes re-ingesting a payload
a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..models import STATUS_ACTIVE, STATUS_INACTIVE
from .payload_schemas import LineItemPayload, OrderPayload


ACTIONABLE_FINANCIAL_STATUSES = frozenset({"paid", "authorized", "pending", "partially_paid"})

# Statuses we know about and deliberately treat as not actionable.
# Anything outside both sets is flagged for review.
NON_ACTIONABLE_FINANCIAL_STATUSES = frozenset({
    "voided",
    "refunded",
    "partially_refunded",
    "expired",
})

FULFILLED = "fulfilled"
VOIDED = "voided"


@dataclass(frozen=True)
class StatusResult:
    status: str
    restocked: bool
    unknown_financial_status: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


def restocked_line_item_ids(order: OrderPayload) -> frozenset[str]:
    return frozenset(
        line.line_item_id
        for refund in order.refunds
        for line in refund.lines
        if line.restock
    )


def is_order_cancelled(order: OrderPayload) -> bool:
    return order.financial_status == VOIDED or order.cancelled_at is not None


def is_financial_status_known(financial_status: str | None) -> bool:
    return (
        financial_status in ACTIONABLE_FINANCIAL_STATUSES
        or financial_status in NON_ACTIONABLE_FINANCIAL_STATUSES
    )


def classify_line_item(order: OrderPayload, line_item: LineItemPayload) -> StatusResult:
    """
    Derive {status, restocked} for one line item.

    inactive if restocked, cancelled or left on a superseded order;
    otherwise active if the order is actionable or the item is fulfilled;
    otherwise inactive. Unknown financial statuses are never actionable.
    """
    is_restocked = line_item.line_item_id in restocked_line_item_ids(order)
    is_cancelled = is_order_cancelled(order)
    is_fulfilled = line_item.fulfillment_status == FULFILLED
    is_actionable = order.financial_status in ACTIONABLE_FINANCIAL_STATUSES

    if is_restocked or is_cancelled or order.superseded:
        status = STATUS_INACTIVE
    elif is_actionable or is_fulfilled:
        status = STATUS_ACTIVE
    else:
        status = STATUS_INACTIVE

    return StatusResult(
        status=status,
        restocked=is_restocked,
        unknown_financial_status=not is_financial_status_known(order.financial_status),
    )


def classify_order(order: OrderPayload) -> dict[str, StatusResult]:
    """Classify every line item of an order, keyed by line_item_id."""
    return {item.line_item_id: classify_line_item(order, item) for item in order.line_items}
