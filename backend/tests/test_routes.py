"""
API route tests: ingestion, edition reads, resequencing and the token guard.
"""

from datetime import timedelta

import pytest

from edition_ledger.extensions import db
from edition_ledger.models import ProductSequenceLock
from edition_ledger.time_utils import utcnow


@pytest.fixture
def seeded(client, db_session, make_order, make_line_item):
    resp = client.post("/api/ingest/orders", json={
        "orders": [
            make_order("5001", created_at="2026-03-01T10:00:00Z", line_items=[make_line_item("a")]),
            make_order("5002", created_at="2026-03-02T10:00:00Z", line_items=[make_line_item("b")]),
        ],
    })
    assert resp.status_code == 200
    return resp.get_json()


@pytest.fixture
def api_token(app):
    app.config["LEDGER_API_TOKEN"] = "s3cret"
    yield "s3cret"
    app.config["LEDGER_API_TOKEN"] = None


class TestIngestRoutes:
    def test_sync_returns_report(self, seeded):
        assert seeded["received"] == 2
        assert seeded["orders_created"] == 2
        assert seeded["passes"]["P1"]["status"] == "completed"

    def test_sync_accepts_bare_list(self, client, db_session, make_order, make_line_item):
        resp = client.post("/api/ingest/orders", json=[make_order("5001", line_items=[make_line_item("a")])])
        assert resp.status_code == 200
        assert resp.get_json()["source"] == "bulk"

    def test_sync_rejects_non_list(self, client, db_session):
        resp = client.post("/api/ingest/orders", json={"orders": "nope"})
        assert resp.status_code == 400

    def test_sync_rejects_unknown_source(self, client, db_session):
        resp = client.post("/api/ingest/orders", json={"orders": [], "source": "carrier-pigeon"})
        assert resp.status_code == 400

    def test_refund_webhook(self, client, seeded):
        resp = client.post("/api/ingest/refunds", json={
            "id": "r1", "order_id": "5001",
            "refund_line_items": [{"line_item_id": "a", "restock_type": "return"}],
        })
        assert resp.status_code == 200
        assert resp.get_json()["affected_products"] == ["P1"]

        resp = client.get("/api/editions/line-items/b")
        assert resp.get_json()["edition_number"] == 1

    def test_refund_webhook_errors(self, client, db_session):
        assert client.post("/api/ingest/refunds", json={"refund_line_items": []}).status_code == 400
        assert client.post("/api/ingest/refunds", json={"order_id": "404"}).status_code == 404

    def test_fulfillment_update(self, client, seeded):
        resp = client.post("/api/ingest/orders/5001/line-items/a/fulfillment", json={"fulfillment_status": "fulfilled"})
        assert resp.status_code == 200
        assert resp.get_json()["line_item"]["fulfillment_status"] == "fulfilled"

    def test_fulfillment_update_errors(self, client, seeded):
        url = "/api/ingest/orders/5001/line-items/zzz/fulfillment"
        assert client.post(url, json={"fulfillment_status": "fulfilled"}).status_code == 404
        assert client.post(url, json={}).status_code == 400
        assert client.post(url, json={"fulfillment_status": 5}).status_code == 400


class TestEditionRoutes:
    def test_verify_edition(self, client, seeded):
        resp = client.get("/api/editions/line-items/b?order_id=5002")
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["verified"] is True
        assert body["edition_number"] == 2
        assert body["certificate_url"] == "https://certs.example.com/certificate/b"

    def test_verify_missing_edition(self, client, db_session):
        resp = client.get("/api/editions/line-items/nope")
        assert resp.status_code == 404
        assert resp.get_json()["verified"] is False

    def test_history_and_product_listing(self, client, seeded):
        history = client.get("/api/editions/line-items/a/history").get_json()
        assert history["events"][0]["event_type"] == "status_changed"

        product = client.get("/api/editions/products/P1?include_history=true").get_json()
        assert product["total_editions"] == 2
        assert "history" in product["editions"][0]

    def test_duplicates_and_integrity(self, client, seeded):
        assert client.get("/api/editions/products/P1/duplicates").get_json()["has_duplicates"] is False
        assert client.get("/api/editions/integrity?product_id=P1").get_json()["issues_found"] == 0

    def test_resequence(self, client, seeded):
        resp = client.post("/api/editions/products/P1/resequence")
        assert resp.status_code == 200
        assert resp.get_json()["edition_total"] == 2

    def test_resequence_busy_product_is_queued(self, client, seeded):
        db.session.add(ProductSequenceLock(product_id="P2", owner="elsewhere", expires_at=utcnow() + timedelta(hours=1)))
        db.session.commit()

        resp = client.post("/api/editions/products/P2/resequence")

        assert resp.status_code == 409
        queue = client.get("/api/editions/queue?status=PENDING").get_json()["items"]
        assert [r["product_id"] for r in queue] == ["P2"]
        assert client.get("/api/editions/failed").get_json()["items"] == []

    def test_queue_rejects_unknown_status(self, client, db_session):
        assert client.get("/api/editions/queue?status=LOST").status_code == 400

    def test_drain_empty_queue(self, client, db_session):
        resp = client.post("/api/editions/queue/drain")
        assert resp.get_json() == {"drained": 0, "outcomes": {}}


class TestSystemRoutes:
    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["checks"]["database"]["status"] == "healthy"


class TestApiToken:
    def test_missing_token_rejected(self, client, db_session, api_token):
        resp = client.get("/api/editions/integrity")
        assert resp.status_code == 401

    def test_wrong_token_rejected(self, client, db_session, api_token):
        resp = client.get("/api/editions/integrity", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_valid_token_accepted(self, client, db_session, api_token):
        resp = client.get("/api/editions/integrity", headers={"Authorization": f"Bearer {api_token}"})
        assert resp.status_code == 200

    def test_health_is_open(self, client, db_session, api_token):
        assert client.get("/health").status_code == 200
