# Overview: Collapses several records of the same commercial order into one.

"""
Order Deduplicator

Orders reach us from two feeds: the commerce platform (numeric ids, the
canonical record) and the warehouse (provisional "WH-..." ids). Both carry the
same human-facing order name, which is what we group on.

Rules per normalized order name:
- a canonical record always beats a provisional one
- between canonical records, the most recently updated wins; the same id
  seen twice in one batch keeps its latest copy
- with no canonical record yet, the provisional one is used as-is and the
  name is reported as unresolved (never an error)

Pure: works on OrderPayload values only. Re-keying stored line items onto the
winning order happens in the ingestion service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .payload_schemas import OrderPayload


@dataclass
class DedupResult:
    orders: list[OrderPayload] = field(default_factory=list)
    # provisional order id -> canonical order id that replaces it
    superseded: dict[str, str] = field(default_factory=dict)
    # normalized names that only have a provisional record so far
    unresolved: list[str] = field(default_factory=list)
    # order ids dropped in favor of another record of the same name
    discarded: list[str] = field(default_factory=list)


def _recency(order: OrderPayload, position: int) -> tuple:
    stamp = order.updated_at or order.created_at
    # Undated records lose to dated ones; later batch position breaks ties
    return (stamp is not None, stamp or datetime.min, position)


def deduplicate_orders(orders: Iterable[OrderPayload]) -> DedupResult:
    groups: dict[str, list[tuple[int, OrderPayload]]] = {}
    for position, order in enumerate(orders):
        groups.setdefault(order.normalized_name, []).append((position, order))

    result = DedupResult()
    winners: list[tuple[int, OrderPayload]] = []

    for name, members in groups.items():
        canonical = [(p, o) for p, o in members if o.is_canonical]
        candidates = canonical or members
        win_pos, winner = max(candidates, key=lambda m: _recency(m[1], m[0]))
        winners.append((win_pos, winner))

        if not canonical:
            result.unresolved.append(name)

        for _, order in members:
            if order.order_id == winner.order_id:
                continue
            if canonical and not order.is_canonical:
                result.superseded[order.order_id] = winner.order_id
            elif order.order_id not in result.discarded:
                result.discarded.append(order.order_id)

    result.orders = [order for _, order in sorted(winners, key=lambda w: w[0])]
    return result
