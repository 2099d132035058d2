# Overview: Write-once certificate identity for sold units.

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from urllib.parse import quote

from ..models import LineItem
from edition_ledger.time_utils import utcnow


@dataclass(frozen=True)
class CertificateIdentity:
    token: str
    url: str
    issued_at: datetime


def certificate_url(base_url: str, line_item_id: str) -> str:
    """Deterministic: the same line item always maps to the same page."""
    return f"{base_url.rstrip('/')}/certificate/{quote(line_item_id, safe='')}"


def new_certificate_token() -> str:
    return str(uuid.uuid4())


def issue_certificate(
    item: LineItem,
    *,
    base_url: str,
    now: datetime | None = None,
    token_factory: Callable[[], str] = new_certificate_token,
) -> CertificateIdentity | None:
    """
    Stamp a certificate identity on the item if it has none.

    Returns the new identity, or None when the item already carries one
    (issuing is idempotent and never overwrites). Only the ledger
    coordinator calls this, inside the same pass that numbers the item.
    """
    if item.certificate_token is not None:
        return None

    identity = CertificateIdentity(
        token=token_factory(),
        url=certificate_url(base_url, item.line_item_id),
        issued_at=now or utcnow(),
    )
    item.certificate_token = identity.token
    item.certificate_url = identity.url
    item.certificate_issued_at = identity.issued_at
    return identity


def certificate_fields_consistent(item: LineItem) -> bool:
    """All three certificate fields are set, or none are."""
    fields = (item.certificate_token, item.certificate_url, item.certificate_issued_at)
    return all(f is None for f in fields) or all(f is not None for f in fields)
