from __future__ import annotations


class ValidationError(ValueError):
    """400-level input problem."""


class PayloadValidationError(ValidationError):
    """
    A commerce platform payload (order, line item, refund) is missing a
    required field or carries a value we cannot interpret.

    Raised per order or per line item; callers skip that unit and keep going.
    """

    def __init__(self, message: str, *, order_id: str | None = None, line_item_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id
        self.line_item_id = line_item_id

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "order_id": self.order_id,
            "line_item_id": self.line_item_id,
        }
