# Overview: Pure edition numbering for one product snapshot.

"""
Edition Sequencer

Numbering is recomputed from the full current item set of a product every
time; there is no stored counter. Running it twice on the same snapshot
gives the same plan, so a pass can always be rerun after any failure.

Rules:
- only active items are numbered, 1..N by created_at
  (ties: line_item_id, then order_id)
- inactive items get edition_number = None and edition_total = None
- every active item carries edition_total = N

Reactivating an earlier-created unit puts it back at its chronological
position, which shifts every later unit up by one.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

from ..models import STATUS_ACTIVE


class SequencedItem(Protocol):
    line_item_id: str
    order_id: str
    status: str
    created_at: datetime
    edition_number: int | None
    edition_total: int | None


def _natural(value: str) -> tuple:
    return (0, int(value), "") if value.isdigit() else (1, 0, value)


def sequence_key(item: SequencedItem) -> tuple:
    return (item.created_at, _natural(item.line_item_id), item.order_id)


@dataclass(frozen=True)
class EditionAssignment:
    line_item_id: str
    order_id: str
    edition_number: int | None
    edition_total: int | None
    previous_number: int | None
    previous_total: int | None

    @property
    def key(self) -> tuple[str, str]:
        return (self.line_item_id, self.order_id)

    @property
    def changed(self) -> bool:
        return (
            self.edition_number != self.previous_number
            or self.edition_total != self.previous_total
        )


@dataclass(frozen=True)
class EditionPlan:
    product_id: str
    total: int
    assignments: tuple[EditionAssignment, ...]

    @property
    def changes(self) -> tuple[EditionAssignment, ...]:
        """Minimal set of writes needed to reach the canonical numbering."""
        return tuple(a for a in self.assignments if a.changed)

    def for_item(self, line_item_id: str, order_id: str) -> EditionAssignment | None:
        for assignment in self.assignments:
            if assignment.key == (line_item_id, order_id):
                return assignment
        return None


def compute_edition_plan(product_id: str, items: Iterable[SequencedItem]) -> EditionPlan:
    items = list(items)
    active = sorted((i for i in items if i.status == STATUS_ACTIVE), key=sequence_key)
    total = len(active)

    assignments: list[EditionAssignment] = []
    for number, item in enumerate(active, start=1):
        assignments.append(EditionAssignment(
            line_item_id=item.line_item_id,
            order_id=item.order_id,
            edition_number=number,
            edition_total=total,
            previous_number=item.edition_number,
            previous_total=item.edition_total,
        ))

    inactive = sorted((i for i in items if i.status != STATUS_ACTIVE), key=sequence_key)
    for item in inactive:
        assignments.append(EditionAssignment(
            line_item_id=item.line_item_id,
            order_id=item.order_id,
            edition_number=None,
            edition_total=None,
            previous_number=item.edition_number,
            previous_total=item.edition_total,
        ))

    return EditionPlan(product_id=product_id, total=total, assignments=tuple(assignments))


def find_sequence_violations(items: Iterable[SequencedItem]) -> list[str]:
    """
    Describe every way a persisted product sequence breaks the numbering rules.

    Empty list means the sequence is gapless, chronological and has no
    numbered inactive items.
    """
    items = list(items)
    problems: list[str] = []

    active = [i for i in items if i.status == STATUS_ACTIVE]
    numbers = [i.edition_number for i in active]

    unnumbered = [i.line_item_id for i in active if i.edition_number is None]
    if unnumbered:
        problems.append(f"active items without edition number: {', '.join(unnumbered)}")

    counts = Counter(n for n in numbers if n is not None)
    duplicates = sorted(n for n, c in counts.items() if c > 1)
    if duplicates:
        problems.append(f"duplicate edition numbers: {duplicates}")

    expected = set(range(1, len(active) + 1))
    present = set(counts)
    missing = sorted(expected - present)
    extra = sorted(present - expected)
    if missing:
        problems.append(f"missing edition numbers: {missing}")
    if extra:
        problems.append(f"edition numbers out of range: {extra}")

    wrong_total = [i.line_item_id for i in active if i.edition_total != len(active)]
    if wrong_total:
        problems.append(f"stale edition_total on: {', '.join(wrong_total)}")

    numbered_inactive = [
        i.line_item_id for i in items
        if i.status != STATUS_ACTIVE and i.edition_number is not None
    ]
    if numbered_inactive:
        problems.append(f"inactive items with edition number: {', '.join(numbered_inactive)}")

    if not problems:
        by_number = sorted(active, key=lambda i: i.edition_number)
        if by_number != sorted(active, key=sequence_key):
            problems.append("edition numbers do not follow created_at order")

    return problems
