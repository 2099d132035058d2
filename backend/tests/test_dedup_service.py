from edition_ledger.services.dedup_service import deduplicate_orders
from edition_ledger.services.payload_schemas import parse_order_payload


def _order(order_id, name, updated_at=None, created_at="2026-03-01T10:00:00Z"):
    raw = {"id": order_id, "name": name, "created_at": created_at, "line_items": []}
    if updated_at:
        raw["updated_at"] = updated_at
    return parse_order_payload(raw)


class TestDeduplicateOrders:
    def test_canonical_beats_provisional_regardless_of_arrival_order(self):
        for batch in (
            [_order("WH-1174", "#1174"), _order("5001", "#1174")],
            [_order("5001", "1174"), _order("WH-1174", "#1174 ")],
        ):
            result = deduplicate_orders(batch)
            assert [o.order_id for o in result.orders] == ["5001"]
            assert result.superseded == {"WH-1174": "5001"}
            assert result.unresolved == []

    def test_provisional_alone_is_kept_and_marked_unresolved(self):
        result = deduplicate_orders([_order("WH-2000", "#2000")])
        assert [o.order_id for o in result.orders] == ["WH-2000"]
        assert result.unresolved == ["2000"]
        assert result.superseded == {}

    def test_most_recently_updated_canonical_wins(self):
        older = _order("5001", "#1174", updated_at="2026-03-01T12:00:00Z")
        newer = _order("5002", "#1174", updated_at="2026-03-02T12:00:00Z")
        result = deduplicate_orders([newer, older])
        assert [o.order_id for o in result.orders] == ["5002"]
        assert result.discarded == ["5001"]

    def test_same_order_twice_keeps_latest_copy(self):
        first = _order("5001", "#1174", updated_at="2026-03-01T12:00:00Z")
        second = _order("5001", "#1174", updated_at="2026-03-01T13:00:00Z")
        result = deduplicate_orders([second, first])
        assert len(result.orders) == 1
        assert result.orders[0].updated_at == second.updated_at
        assert result.discarded == []

    def test_identical_timestamps_fall_back_to_batch_position(self):
        a = _order("5001", "#1174")
        b = _order("5002", "#1174")
        result = deduplicate_orders([a, b])
        assert [o.order_id for o in result.orders] == ["5002"]

    def test_distinct_orders_pass_through_in_batch_order(self):
        batch = [_order("5003", "#3"), _order("WH-1", "#1"), _order("5002", "#2")]
        result = deduplicate_orders(batch)
        assert [o.order_id for o in result.orders] == ["5003", "WH-1", "5002"]
        assert result.unresolved == ["1"]
