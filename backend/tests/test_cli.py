import json
from datetime import timedelta

from edition_ledger.extensions import db
from edition_ledger.models import LineItem, ProductSequenceLock, ResequenceRequest, REQUEST_FAILED
from edition_ledger.services import ingestion_service
from edition_ledger.time_utils import utcnow


def _seed(make_order, make_line_item, run_passes=True):
    ingestion_service.sync_orders([
        make_order("5001", created_at="2026-03-01T10:00:00Z", line_items=[make_line_item("a")]),
        make_order("5002", created_at="2026-03-02T10:00:00Z", line_items=[make_line_item("b", "P2")]),
    ], run_passes=run_passes)


class TestLedgerCommands:
    def test_resequence(self, app, db_session, make_order, make_line_item):
        _seed(make_order, make_line_item, run_passes=False)
        result = app.test_cli_runner().invoke(args=["ledger", "resequence", "P1"])

        assert result.exit_code == 0
        assert "PASS P1: 1 active" in result.output
        db.session.expire_all()
        assert db.session.query(LineItem).filter_by(line_item_id="a").one().edition_number == 1

    def test_resequence_busy_product_exits_nonzero(self, app, db_session):
        db.session.add(ProductSequenceLock(product_id="P1", owner="elsewhere", expires_at=utcnow() + timedelta(hours=1)))
        db.session.commit()

        result = app.test_cli_runner().invoke(args=["ledger", "resequence", "P1"])

        assert result.exit_code == 1
        assert "FAIL P1: requeued" in result.output

    def test_resequence_all(self, app, db_session, make_order, make_line_item):
        _seed(make_order, make_line_item, run_passes=False)
        result = app.test_cli_runner().invoke(args=["ledger", "resequence-all"])

        assert result.exit_code == 0
        assert "DONE 2 completed, 0 failed" in result.output

    def test_resequence_all_on_several_workers(self, file_app, make_order, make_line_item):
        products = ["P1", "P2", "P3", "P4"]
        with file_app.app_context():
            ingestion_service.sync_orders([
                make_order(
                    str(7001 + n),
                    created_at=f"2026-03-{n + 1:02d}T10:00:00Z",
                    line_items=[make_line_item(f"{pid}-{n + 1}", pid) for pid in products],
                )
                for n in range(3)
            ], run_passes=False)

            result = file_app.test_cli_runner().invoke(args=["ledger", "resequence-all", "--workers", "3"])

            assert result.exit_code == 0
            assert "DONE 4 completed, 0 failed" in result.output
            db.session.expire_all()
            for pid in products:
                numbers = {
                    i.line_item_id: i.edition_number
                    for i in db.session.query(LineItem).filter_by(product_id=pid)
                }
                assert numbers == {f"{pid}-1": 1, f"{pid}-2": 2, f"{pid}-3": 3}

    def test_drain_and_failed(self, app, db_session):
        db.session.add(ResequenceRequest(
            product_id="P9", status=REQUEST_FAILED, attempts=3, last_error="database is locked",
            requested_at=utcnow(), updated_at=utcnow(),
        ))
        db.session.commit()
        runner = app.test_cli_runner()

        listing = runner.invoke(args=["ledger", "failed"])
        assert "P9" in listing.output
        assert "database is locked" in listing.output

        assert "Queue is empty." in runner.invoke(args=["ledger", "drain"]).output

        drained = runner.invoke(args=["ledger", "drain", "--include-failed"])
        assert drained.exit_code == 0
        assert "PASS P9" in drained.output
        assert "No failed products." in runner.invoke(args=["ledger", "failed"]).output

    def test_check(self, app, db_session, make_order, make_line_item):
        _seed(make_order, make_line_item)
        runner = app.test_cli_runner()
        assert "PASS No integrity issues found." in runner.invoke(args=["ledger", "check"]).output

        db.session.query(LineItem).filter_by(line_item_id="a").one().edition_number = 5
        db.session.commit()

        result = runner.invoke(args=["ledger", "check", "--product-id", "P1"])
        assert result.exit_code == 1
        assert "[sequence_violation]" in result.output

    def test_sync_file(self, app, db_session, make_order, make_line_item, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text(json.dumps({"orders": [
            make_order("5001", line_items=[make_line_item("a")]),
            make_order("WH-77", "#77", line_items=[make_line_item("w1")]),
        ]}))

        result = app.test_cli_runner().invoke(args=["ledger", "sync-file", str(path), "--source", "incremental"])

        assert result.exit_code == 0
        assert "Received 2 orders" in result.output
        assert "order 77 has no canonical record yet" in result.output
        assert db.session.query(LineItem).count() == 2

    def test_sync_file_rejects_bad_json(self, app, db_session, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text("{not json")

        result = app.test_cli_runner().invoke(args=["ledger", "sync-file", str(path)])

        assert result.exit_code == 1
        assert "is not valid JSON" in result.output
