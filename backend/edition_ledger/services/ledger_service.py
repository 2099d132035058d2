# Overview: Ledger coordinator; serializes and coalesces per-product resequencing passes.

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import (
    LineItem,
    ResequenceRequest,
    REQUEST_FAILED,
    REQUEST_NEEDS_REVIEW,
    REQUEST_PENDING,
)
from edition_ledger.time_utils import utcnow
from . import audit_service
from .certificate_service import issue_certificate
from .concurrency import (
    LedgerLockTimeout,
    acquire_product_lease,
    lock_for_update,
    new_lease_owner,
    release_product_lease,
    run_with_retry,
)
from .sequencer_service import compute_edition_plan, find_sequence_violations
"""
Ledger Coordinator Invariants (authoritative)

- The coordinator is the only writer of edition_number, edition_total and
  certificate fields.
- At most one pass per product is in flight: in-process through the state
  map below, across processes through the product lease.
- Events for a product that arrive while its pass runs are coalesced into
  exactly one follow-up pass.
- A pass reads the full item set, computes the plan, and commits every
  changed row in one transaction. Readers never see half a sequence.
- A pass that cannot take the lease is re-queued in resequence_requests,
  never dropped.
"""


logger = logging.getLogger(__name__)


OUTCOME_COMPLETED = "completed"
OUTCOME_COALESCED = "coalesced"
OUTCOME_REQUEUED = "requeued"
OUTCOME_FAILED = "failed"

SOURCE_OPERATOR = "operator"


@dataclass
class PassOutcome:
    product_id: str
    status: str
    passes: int = 0
    writes: int = 0
    certificates_issued: int = 0
    edition_total: int | None = None
    error: str | None = None
    violations: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (OUTCOME_COMPLETED, OUTCOME_COALESCED)

    def absorb(self, other: "PassOutcome") -> None:
        self.status = other.status
        self.passes += other.passes
        self.writes += other.writes
        self.certificates_issued += other.certificates_issued
        self.edition_total = other.edition_total
        self.error = other.error
        self.violations = list(other.violations)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "status": self.status,
            "passes": self.passes,
            "writes": self.writes,
            "certificates_issued": self.certificates_issued,
            "edition_total": self.edition_total,
            "error": self.error,
            "violations": self.violations,
        }


class _ProductState:
    """Running marker for one product; pending is set by coalesced events."""

    __slots__ = ("pending",)

    def __init__(self):
        self.pending = False


class EditionLedger:
    """
    Per-product state machine: Idle -> Running -> Idle.

    request_pass() on an idle product runs passes in the calling thread until
    no event arrived during the last one. On a running product it only marks
    the product pending and returns OUTCOME_COALESCED.
    """

    def __init__(self, app=None):
        self._mutex = threading.Lock()
        self._running: dict[str, _ProductState] = {}

        self.certificate_base_url = "http://localhost:3000"
        self.max_attempts = 3
        self.retry_backoff = 0.1
        self.lock_timeout = 5.0
        self.lease_seconds = 60

        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.certificate_base_url = app.config["CERTIFICATE_BASE_URL"]
        self.max_attempts = max(1, int(app.config["LEDGER_MAX_PASS_ATTEMPTS"]))
        self.retry_backoff = float(app.config["LEDGER_RETRY_BACKOFF_SECONDS"])
        self.lock_timeout = float(app.config["LEDGER_LOCK_TIMEOUT_SECONDS"])
        self.lease_seconds = int(app.config["LEDGER_LOCK_LEASE_SECONDS"])
        app.extensions["edition_ledger"] = self

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def is_running(self, product_id: str) -> bool:
        with self._mutex:
            return product_id in self._running

    def request_pass(self, product_id: str, *, source: str = "sync") -> PassOutcome:
        with self._mutex:
            state = self._running.get(product_id)
            if state is not None:
                state.pending = True
                logger.debug("Product %s is mid-pass; coalescing %s event", product_id, source)
                return PassOutcome(product_id, OUTCOME_COALESCED)
            state = _ProductState()
            self._running[product_id] = state

        outcome = PassOutcome(product_id, OUTCOME_COMPLETED)
        rerun_after_violation = True
        try:
            while True:
                with self._mutex:
                    state.pending = False

                result = self._run_locked_pass(product_id, source)
                outcome.absorb(result)

                if result.violations and rerun_after_violation:
                    # A fresh pass from a clean read is the only automatic repair
                    rerun_after_violation = False
                    continue

                with self._mutex:
                    if result.status == OUTCOME_COMPLETED and state.pending:
                        continue
                    del self._running[product_id]
                    break
        except BaseException:
            with self._mutex:
                self._running.pop(product_id, None)
            raise

        return outcome

    def request_passes(
        self,
        product_ids: Iterable[str],
        *,
        source: str = "sync",
        max_workers: int = 1,
    ) -> dict[str, PassOutcome]:
        """
        Run passes for several products. Products are independent, so with
        max_workers > 1 they run concurrently, each thread in its own app
        context and session.
        """
        ordered = sorted({pid for pid in product_ids if pid})
        if max_workers <= 1 or len(ordered) <= 1:
            return {pid: self.request_pass(pid, source=source) for pid in ordered}

        app = current_app._get_current_object()

        def _worker(pid: str) -> PassOutcome:
            with app.app_context():
                try:
                    return self.request_pass(pid, source=source)
                finally:
                    db.session.remove()

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(_worker, ordered))
        return dict(zip(ordered, results))

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def drain(self, *, include_failed: bool = False) -> dict[str, PassOutcome]:
        """Run a pass for every product left in the resequence queue."""
        statuses = [REQUEST_PENDING]
        if include_failed:
            statuses.append(REQUEST_FAILED)
        product_ids = [
            pid for (pid,) in db.session.query(ResequenceRequest.product_id)
            .filter(ResequenceRequest.status.in_(statuses))
            .order_by(ResequenceRequest.requested_at.asc())
            .all()
        ]
        db.session.rollback()
        return self.request_passes(product_ids, source="drain")

    def queued_requests(self, status: str | None = None) -> list[ResequenceRequest]:
        q = db.session.query(ResequenceRequest)
        if status:
            q = q.filter(ResequenceRequest.status == status)
        return q.order_by(ResequenceRequest.requested_at.asc()).all()

    def _enqueue(self, product_id: str, status: str, *, error: str | None = None) -> None:
        def _write():
            now = utcnow()
            req = db.session.get(ResequenceRequest, product_id)
            new_status = status
            if req is None:
                req = ResequenceRequest(product_id=product_id, attempts=0, requested_at=now)
                db.session.add(req)
            elif status == REQUEST_PENDING and req.status == REQUEST_NEEDS_REVIEW:
                # Keep the operator flag; the next pass still picks it up
                new_status = REQUEST_NEEDS_REVIEW
            req.status = new_status
            req.attempts = (req.attempts or 0) + 1
            req.last_error = error
            req.requested_at = now
            req.updated_at = now
            db.session.commit()

        run_with_retry(_write, attempts=self.max_attempts, backoff_base=self.retry_backoff)

    def _clear_requests(self, product_id: str, read_started_at: datetime, source: str) -> None:
        """Drop queue rows this pass has covered; NEEDS_REVIEW needs an operator pass."""
        q = db.session.query(ResequenceRequest).filter(
            ResequenceRequest.product_id == product_id,
            ResequenceRequest.requested_at <= read_started_at,
        )
        if source != SOURCE_OPERATOR:
            q = q.filter(ResequenceRequest.status != REQUEST_NEEDS_REVIEW)
        q.delete(synchronize_session=False)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _run_locked_pass(self, product_id: str, source: str) -> PassOutcome:
        owner = new_lease_owner()
        try:
            acquire_product_lease(
                product_id,
                owner,
                lease_seconds=self.lease_seconds,
                timeout=self.lock_timeout,
            )
        except LedgerLockTimeout as exc:
            logger.warning("Re-queueing product %s: %s", product_id, exc)
            self._enqueue(product_id, REQUEST_PENDING, error=str(exc))
            return PassOutcome(product_id, OUTCOME_REQUEUED, error=str(exc))

        try:
            return self._run_pass_with_retry(product_id, source)
        finally:
            try:
                release_product_lease(product_id, owner)
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception("Could not release lease for product %s; it expires in %ss",
                                 product_id, self.lease_seconds)

    def _run_pass_with_retry(self, product_id: str, source: str) -> PassOutcome:
        def _on_retry(attempt: int, exc: Exception) -> None:
            logger.warning(
                "Pass for product %s failed (attempt %d/%d), retrying from a fresh read: %s",
                product_id, attempt, self.max_attempts, exc,
            )

        try:
            return run_with_retry(
                lambda: self._run_pass(product_id, source),
                attempts=self.max_attempts,
                backoff_base=self.retry_backoff,
                on_retry=_on_retry,
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error(
                "Resequencing product %s failed after %d attempts; marked for operator attention: %s",
                product_id, self.max_attempts, exc,
            )
            self._enqueue(product_id, REQUEST_FAILED, error=str(exc))
            return PassOutcome(product_id, OUTCOME_FAILED, passes=1, error=str(exc))

    def _load_items(self, product_id: str) -> list[LineItem]:
        q = db.session.query(LineItem).filter(LineItem.product_id == product_id)
        return lock_for_update(q).all()

    def _run_pass(self, product_id: str, source: str) -> PassOutcome:
        read_started_at = utcnow()
        items = self._load_items(product_id)
        plan = compute_edition_plan(product_id, items)
        by_key = {(i.line_item_id, i.order_id): i for i in items}

        seen_status = {key: item.status for key, item in by_key.items()}
        seen_tokens = {key: item.certificate_token for key, item in by_key.items() if item.certificate_token}

        now = utcnow()
        pass_source = f"pass:{source}"
        changed: set[tuple[str, str]] = set()

        for assignment in plan.changes:
            item = by_key[assignment.key]
            before = item.edition_number
            item.edition_number = assignment.edition_number
            item.edition_total = assignment.edition_total
            changed.add(assignment.key)

            if before == assignment.edition_number:
                continue
            if before is None:
                event_type = audit_service.EVENT_EDITION_ASSIGNED
            elif assignment.edition_number is None:
                event_type = audit_service.EVENT_EDITION_CLEARED
            else:
                event_type = audit_service.EVENT_EDITION_RENUMBERED
            audit_service.append_edition_event(
                event_type=event_type,
                product_id=product_id,
                line_item_id=item.line_item_id,
                order_id=item.order_id,
                before_edition_number=before,
                after_edition_number=assignment.edition_number,
                after_status=item.status,
                source=pass_source,
                payload={"edition_total": plan.total},
            )

        certificates = 0
        for item in items:
            if not item.is_active:
                continue
            identity = issue_certificate(item, base_url=self.certificate_base_url, now=now)
            if identity is None:
                continue
            certificates += 1
            changed.add((item.line_item_id, item.order_id))
            audit_service.append_edition_event(
                event_type=audit_service.EVENT_CERTIFICATE_ISSUED,
                product_id=product_id,
                line_item_id=item.line_item_id,
                order_id=item.order_id,
                after_edition_number=item.edition_number,
                after_status=item.status,
                source=pass_source,
                payload={"certificate_url": identity.url},
            )

        for key in changed:
            by_key[key].updated_at = now

        self._clear_requests(product_id, read_started_at, source)
        db.session.commit()

        if changed:
            logger.info(
                "Resequenced product %s: %d active, %d rows written, %d certificates issued",
                product_id, plan.total, len(changed), certificates,
            )

        violations = self._verify(product_id, seen_status, seen_tokens)
        if violations:
            logger.critical(
                "Edition sequence for product %s is broken after commit: %s",
                product_id, "; ".join(violations),
            )
            self._enqueue(product_id, REQUEST_NEEDS_REVIEW, error="; ".join(violations))

        return PassOutcome(
            product_id,
            OUTCOME_COMPLETED,
            passes=1,
            writes=len(changed),
            certificates_issued=certificates,
            edition_total=plan.total,
            violations=violations,
        )

    def _verify(
        self,
        product_id: str,
        seen_status: dict[tuple[str, str], str],
        seen_tokens: dict[tuple[str, str], str],
    ) -> list[str]:
        """
        Re-read the product after commit and check the numbering rules.

        Ingestion may legitimately change statuses between our commit and
        this read; that product already has a pass coming, so the gapless
        check only runs when the item set is exactly what this pass saw.
        """
        db.session.expire_all()
        fresh = db.session.query(LineItem).filter(LineItem.product_id == product_id).all()
        db.session.rollback()

        problems: list[str] = []
        for item in fresh:
            key = (item.line_item_id, item.order_id)
            token = seen_tokens.get(key)
            if token is not None and item.certificate_token != token:
                problems.append(f"certificate token changed on {item.line_item_id}")

        current_status = {(i.line_item_id, i.order_id): i.status for i in fresh}
        if current_status != seen_status:
            logger.debug("Product %s changed during pass; skipping sequence check", product_id)
            return problems

        problems.extend(find_sequence_violations(fresh))
        return problems


ledger = EditionLedger()


def reassign_editions(product_id: str) -> PassOutcome:
    """Operator-triggered pass; also clears a NEEDS_REVIEW flag when clean."""
    return ledger.request_pass(product_id, source=SOURCE_OPERATOR)
