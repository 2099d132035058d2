from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


ORDER_SOURCE_PLATFORM = "platform"
ORDER_SOURCE_PROVISIONAL = "provisional"


class Order(db.Model):
    """
    One commercial transaction as last reported by the commerce platform.

    The platform's numeric id is canonical. Orders that reach us first through
    the warehouse feed are stored under a provisional id ("WH-...") and are
    superseded once the platform record with the same order name arrives.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_normalized_name_source", "normalized_name", "source"),
    )

    id = db.Column(db.String(64), primary_key=True)

    # Human-facing name, e.g. "#1174"
    order_name = db.Column(db.String(64), nullable=False)
    normalized_name = db.Column(db.String(64), nullable=False, index=True)

    source = db.Column(db.String(16), nullable=False, default=ORDER_SOURCE_PLATFORM)

    financial_status = db.Column(db.String(32), nullable=True)
    fulfillment_status = db.Column(db.String(32), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Platform-reported timestamps (business time)
    platform_created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    platform_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Set on provisional orders once the canonical order has been observed
    superseded_by_order_id = db.Column(db.String(64), db.ForeignKey("orders.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    line_items = db.relationship("LineItem", back_populates="order", lazy=True)
    refund_lines = db.relationship("OrderRefundLine", back_populates="order", lazy=True)

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by_order_id is not None

    def __repr__(self) -> str:
        return f"<Order id={self.id!r} name={self.order_name!r} source={self.source}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_name": self.order_name,
            "source": self.source,
            "financial_status": self.financial_status,
            "fulfillment_status": self.fulfillment_status,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "platform_created_at": to_utc_z(self.platform_created_at),
            "platform_updated_at": to_utc_z(self.platform_updated_at),
            "superseded_by_order_id": self.superseded_by_order_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderRefundLine(db.Model):
    """
    One refunded line item inside one refund event.

    Replaying the same refund (webhook retry, re-sync) hits the unique
    constraint and is skipped by the ingestion layer.
    """
    __tablename__ = "order_refund_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "refund_id", "line_item_id", name="uq_refund_lines_order_refund_item"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), db.ForeignKey("orders.id"), nullable=False, index=True)
    refund_id = db.Column(db.String(64), nullable=False)
    line_item_id = db.Column(db.String(64), nullable=False, index=True)
    restock = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="refund_lines")

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "refund_id": self.refund_id,
            "line_item_id": self.line_item_id,
            "restock": self.restock,
            "created_at": to_utc_z(self.created_at),
        }
