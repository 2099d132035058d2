from datetime import datetime

from edition_ledger.models import LineItem
from edition_ledger.services.certificate_service import (
    certificate_fields_consistent,
    certificate_url,
    issue_certificate,
)


def _item(line_item_id="9001"):
    return LineItem(line_item_id=line_item_id, order_id="5001", product_id="P1")


class TestCertificateIssuer:
    def test_url_is_derived_from_line_item_id(self):
        assert certificate_url("https://certs.example.com/", "9001") == "https://certs.example.com/certificate/9001"
        assert certificate_url("https://certs.example.com", "wh/1 2") == "https://certs.example.com/certificate/wh%2F1%202"

    def test_issue_sets_all_fields_once(self):
        item = _item()
        now = datetime(2026, 3, 1, 12, 0)
        identity = issue_certificate(item, base_url="https://certs.example.com", now=now, token_factory=lambda: "tok-1")

        assert identity.token == "tok-1"
        assert item.certificate_token == "tok-1"
        assert item.certificate_url == "https://certs.example.com/certificate/9001"
        assert item.certificate_issued_at == now
        assert certificate_fields_consistent(item)

    def test_issue_never_overwrites(self):
        item = _item()
        issue_certificate(item, base_url="https://a.example.com", token_factory=lambda: "first")
        issued_at = item.certificate_issued_at

        again = issue_certificate(item, base_url="https://b.example.com", token_factory=lambda: "second")

        assert again is None
        assert item.certificate_token == "first"
        assert item.certificate_url == "https://a.example.com/certificate/9001"
        assert item.certificate_issued_at == issued_at

    def test_default_tokens_are_unique(self):
        a, b = _item("1"), _item("2")
        issue_certificate(a, base_url="https://certs.example.com")
        issue_certificate(b, base_url="https://certs.example.com")
        assert a.certificate_token and b.certificate_token
        assert a.certificate_token != b.certificate_token

    def test_partial_fields_are_inconsistent(self):
        item = _item()
        assert certificate_fields_consistent(item)
        item.certificate_token = "orphan"
        assert not certificate_fields_consistent(item)
