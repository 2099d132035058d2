"""
Edition sequencer tests.

Pure function tests on lightweight item snapshots; no database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from edition_ledger.models import STATUS_ACTIVE, STATUS_INACTIVE
from edition_ledger.services.sequencer_service import compute_edition_plan, find_sequence_violations


BASE = datetime(2026, 3, 1, 12, 0)


@dataclass
class Item:
    line_item_id: str
    order_id: str
    status: str
    created_at: datetime
    edition_number: int | None = None
    edition_total: int | None = None


def _item(line_item_id, minutes, status=STATUS_ACTIVE, number=None, total=None, order_id=None):
    return Item(
        line_item_id=line_item_id,
        order_id=order_id or f"O{line_item_id}",
        status=status,
        created_at=BASE + timedelta(minutes=minutes),
        edition_number=number,
        edition_total=total,
    )


def _apply(plan, items):
    by_key = {(i.line_item_id, i.order_id): i for i in items}
    for a in plan.assignments:
        by_key[a.key].edition_number = a.edition_number
        by_key[a.key].edition_total = a.edition_total


def _numbers(items):
    return {i.line_item_id: i.edition_number for i in items}


class TestComputeEditionPlan:
    def test_active_items_numbered_gapless_by_created_at(self):
        items = [_item("c", 3), _item("a", 1), _item("b", 2)]
        plan = compute_edition_plan("P1", items)
        _apply(plan, items)

        assert plan.total == 3
        assert _numbers(items) == {"a": 1, "b": 2, "c": 3}
        assert {i.edition_total for i in items} == {3}
        assert find_sequence_violations(items) == []

    def test_inactive_items_get_no_number_or_total(self):
        items = [_item("a", 1), _item("b", 2, status=STATUS_INACTIVE, number=2, total=2)]
        plan = compute_edition_plan("P1", items)
        _apply(plan, items)

        assert items[1].edition_number is None
        assert items[1].edition_total is None
        assert items[0].edition_total == 1

    def test_reactivation_reflows_later_editions(self):
        a = _item("a", 1, status=STATUS_INACTIVE)
        b = _item("b", 2, number=1, total=2)
        c = _item("c", 3, number=2, total=2)
        items = [a, b, c]

        a.status = STATUS_ACTIVE
        plan = compute_edition_plan("P1", items)
        _apply(plan, items)

        assert _numbers(items) == {"a": 1, "b": 2, "c": 3}

    def test_restock_contracts_without_gap(self):
        a = _item("a", 1, number=1, total=3)
        b = _item("b", 2, number=2, total=3)
        c = _item("c", 3, number=3, total=3)
        items = [a, b, c]

        b.status = STATUS_INACTIVE
        plan = compute_edition_plan("P1", items)
        _apply(plan, items)

        assert _numbers(items) == {"a": 1, "b": None, "c": 2}
        assert a.edition_total == 2 and c.edition_total == 2

    def test_plan_is_deterministic_and_second_run_has_no_changes(self):
        items = [_item("b", 2), _item("a", 1), _item("c", 2)]
        first = compute_edition_plan("P1", items)
        second = compute_edition_plan("P1", items)
        assert first == second

        _apply(first, items)
        assert compute_edition_plan("P1", items).changes == ()

    def test_only_changed_items_are_in_changes(self):
        items = [_item("a", 1, number=1, total=2), _item("b", 2, number=2, total=2), _item("c", 3)]
        plan = compute_edition_plan("P1", items)

        changed = {a.line_item_id for a in plan.changes}
        # New arrival at the tail bumps everyone's total, but only c's number
        assert changed == {"a", "b", "c"}
        assert plan.for_item("c", "Oc").edition_number == 3
        assert plan.for_item("a", "Oa").changed

    def test_created_at_ties_break_on_numeric_line_item_id(self):
        items = [_item("10", 0), _item("9", 0), _item("100", 0)]
        plan = compute_edition_plan("P1", items)
        _apply(plan, items)
        assert _numbers(items) == {"9": 1, "10": 2, "100": 3}

    def test_created_at_and_line_item_ties_break_on_order_id(self):
        items = [_item("1", 0, order_id="B"), _item("1", 0, order_id="A")]
        plan = compute_edition_plan("P1", items)
        assert [(a.order_id, a.edition_number) for a in plan.assignments] == [("A", 1), ("B", 2)]

    def test_empty_product(self):
        plan = compute_edition_plan("P1", [])
        assert plan.total == 0
        assert plan.assignments == ()


class TestFindSequenceViolations:
    def test_clean_sequence(self):
        items = [_item("a", 1, number=1, total=2), _item("b", 2, number=2, total=2)]
        assert find_sequence_violations(items) == []

    def test_duplicates_and_gaps_reported(self):
        items = [
            _item("a", 1, number=1, total=3),
            _item("b", 2, number=1, total=3),
            _item("c", 3, number=3, total=3),
        ]
        problems = find_sequence_violations(items)
        assert any("duplicate edition numbers: [1]" in p for p in problems)
        assert any("missing edition numbers: [2]" in p for p in problems)

    def test_numbered_inactive_item_reported(self):
        items = [_item("a", 1, number=1, total=1), _item("b", 2, status=STATUS_INACTIVE, number=2)]
        problems = find_sequence_violations(items)
        assert problems == ["inactive items with edition number: b"]

    def test_unnumbered_active_item_reported(self):
        items = [_item("a", 1, number=1, total=2), _item("b", 2, total=2)]
        problems = find_sequence_violations(items)
        assert "active items without edition number: b" in problems

    def test_out_of_chronological_order_reported(self):
        items = [_item("a", 1, number=2, total=2), _item("b", 2, number=1, total=2)]
        assert find_sequence_violations(items) == ["edition numbers do not follow created_at order"]

    def test_stale_total_reported(self):
        items = [_item("a", 1, number=1, total=1), _item("b", 2, number=2, total=2)]
        assert find_sequence_violations(items) == ["stale edition_total on: a"]
