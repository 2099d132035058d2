from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

REQUEST_PENDING = "PENDING"
REQUEST_FAILED = "FAILED"
REQUEST_NEEDS_REVIEW = "NEEDS_REVIEW"


class LineItem(db.Model):
    """
    One sold unit of one product within one order.

    INVARIANTS (after every completed resequencing pass):
    - edition_number is non-null iff status == "active"
    - active items of a product are numbered 1..N by created_at
    - certificate_token / certificate_url / certificate_issued_at are
      all-null or all-set, and never change once set

    status is derived by the status classifier; nothing else sets it.
    Only the ledger coordinator writes edition and certificate fields.
    """
    __tablename__ = "order_line_items"
    __table_args__ = (
        db.UniqueConstraint("line_item_id", "order_id", name="uq_line_items_item_order"),
        db.Index("ix_line_items_product_status_created", "product_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    line_item_id = db.Column(db.String(64), nullable=False, index=True)
    order_id = db.Column(db.String(64), db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.String(64), nullable=False, index=True)
    variant_id = db.Column(db.String(64), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    vendor_name = db.Column(db.String(255), nullable=True)
    price_cents = db.Column(db.Integer, nullable=True)

    fulfillment_status = db.Column(db.String(32), nullable=True)
    restocked = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(16), nullable=False, default=STATUS_INACTIVE, index=True)

    edition_number = db.Column(db.Integer, nullable=True)
    edition_total = db.Column(db.Integer, nullable=True)

    certificate_token = db.Column(db.String(64), nullable=True, unique=True)
    certificate_url = db.Column(db.String(512), nullable=True)
    certificate_issued_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Ordering key for numbering: when the unit entered the system
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", back_populates="line_items")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def has_certificate(self) -> bool:
        return self.certificate_token is not None

    def __repr__(self) -> str:
        return (
            f"<LineItem {self.order_id}/{self.line_item_id} product={self.product_id} "
            f"status={self.status} edition={self.edition_number}>"
        )

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "vendor_name": self.vendor_name,
            "price_cents": self.price_cents,
            "fulfillment_status": self.fulfillment_status,
            "restocked": self.restocked,
            "status": self.status,
            "edition_number": self.edition_number,
            "edition_total": self.edition_total,
            "certificate_token": self.certificate_token,
            "certificate_url": self.certificate_url,
            "certificate_issued_at": to_utc_z(self.certificate_issued_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class EditionEvent(db.Model):
    """
    Append-only history of everything that happened to an edition.

    - No updates or deletes of existing events.
    - Written inside the same transaction as the change it records.
    """
    __tablename__ = "edition_events"
    __table_args__ = (
        db.Index("ix_edition_events_line_item_created", "line_item_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(32), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=True, index=True)
    line_item_id = db.Column(db.String(64), nullable=True)
    order_id = db.Column(db.String(64), nullable=True)

    before_edition_number = db.Column(db.Integer, nullable=True)
    after_edition_number = db.Column(db.Integer, nullable=True)
    before_status = db.Column(db.String(16), nullable=True)
    after_status = db.Column(db.String(16), nullable=True)

    source = db.Column(db.String(32), nullable=True)
    payload = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "product_id": self.product_id,
            "line_item_id": self.line_item_id,
            "order_id": self.order_id,
            "before_edition_number": self.before_edition_number,
            "after_edition_number": self.after_edition_number,
            "before_status": self.before_status,
            "after_status": self.after_status,
            "source": self.source,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
        }


class ProductSequenceLock(db.Model):
    """
    Cross-process lease guarding resequencing passes for one product.

    Acquired with a conditional UPDATE (free or expired -> owned by caller),
    so it works the same on SQLite and Postgres.
    """
    __tablename__ = "product_sequence_locks"

    product_id = db.Column(db.String(64), primary_key=True)
    owner = db.Column(db.String(64), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acquired_at = db.Column(db.DateTime(timezone=True), nullable=True)


class ResequenceRequest(db.Model):
    """
    Durable queue of products that still need a pass.

    Rows are written when a pass could not take the product lease in time
    (PENDING), exhausted its retries (FAILED), or found a broken sequence
    after writing (NEEDS_REVIEW). A completed pass removes rows requested
    before it read the product.
    """
    __tablename__ = "resequence_requests"

    product_id = db.Column(db.String(64), primary_key=True)
    status = db.Column(db.String(16), nullable=False, default=REQUEST_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "requested_at": to_utc_z(self.requested_at),
            "updated_at": to_utc_z(self.updated_at),
        }
