# Overview: Locking and retry primitives shared by the ledger services.

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import ProductSequenceLock
from edition_ledger.time_utils import utcnow


logger = logging.getLogger(__name__)

# Failures worth re-reading and trying again: lock waits, deadlocks, dropped
# connections and optimistic-lock conflicts on version_id.
TRANSIENT_ERRORS = (OperationalError, StaleDataError)


class LedgerLockTimeout(TimeoutError):
    """The product lease could not be taken within the configured wait."""

    def __init__(self, product_id: str, waited_seconds: float):
        super().__init__(f"Timed out after {waited_seconds:.2f}s waiting for product {product_id}")
        self.product_id = product_id
        self.waited_seconds = waited_seconds


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The product lease below is what serializes passes on every backend.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, on_retry=None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Each retry starts from a rolled-back session, so func must re-read
    whatever it needs. on_retry(attempt, exc) is called before sleeping.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError, DBAPIError) as exc:
            db.session.rollback()
            if not is_transient(exc) or attempt >= attempts - 1:
                raise
            if on_retry is not None:
                on_retry(attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))


def new_lease_owner() -> str:
    """Lease owner id for one pass, unique across hosts and threads."""
    owner = f"{socket.gethostname()[:24]}:{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"
    return owner[-64:]


def try_acquire_product_lease(product_id: str, owner: str, *, lease_seconds: int) -> bool:
    """
    Take the product lease if it is free or expired. Commits immediately so
    other workers see it.

    Uses a conditional UPDATE so two workers racing for the same row cannot
    both win; the first-ever lease for a product is created with an INSERT
    that loses cleanly on IntegrityError.
    """
    now = utcnow()
    expires_at = now + timedelta(seconds=lease_seconds)

    stmt = (
        update(ProductSequenceLock)
        .where(
            ProductSequenceLock.product_id == product_id,
            or_(
                ProductSequenceLock.owner.is_(None),
                ProductSequenceLock.expires_at < now,
            ),
        )
        .values(owner=owner, expires_at=expires_at, acquired_at=now)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount:
        db.session.commit()
        return True

    exists = (
        db.session.query(ProductSequenceLock.product_id)
        .filter_by(product_id=product_id)
        .scalar()
    )
    if exists is not None:
        db.session.rollback()
        return False

    db.session.add(ProductSequenceLock(
        product_id=product_id,
        owner=owner,
        expires_at=expires_at,
        acquired_at=now,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def acquire_product_lease(
    product_id: str,
    owner: str,
    *,
    lease_seconds: int,
    timeout: float,
    poll_interval: float = 0.05,
) -> None:
    """Block until the lease is ours or raise LedgerLockTimeout."""
    started = time.monotonic()
    delay = poll_interval
    while True:
        if try_acquire_product_lease(product_id, owner, lease_seconds=lease_seconds):
            return
        waited = time.monotonic() - started
        if waited >= timeout:
            raise LedgerLockTimeout(product_id, waited)
        time.sleep(min(delay, max(timeout - waited, 0)))
        delay = min(delay * 2, 1.0)


def release_product_lease(product_id: str, owner: str) -> None:
    stmt = (
        update(ProductSequenceLock)
        .where(
            ProductSequenceLock.product_id == product_id,
            ProductSequenceLock.owner == owner,
        )
        .values(owner=None, expires_at=None)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.commit()
    if not result.rowcount:
        # Lease expired mid-pass and someone else took it
        logger.warning("Lease for product %s was no longer held by %s at release", product_id, owner)
