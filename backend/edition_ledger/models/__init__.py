from .orders import Order, OrderRefundLine, ORDER_SOURCE_PLATFORM, ORDER_SOURCE_PROVISIONAL
from .editions import (
    LineItem,
    EditionEvent,
    ProductSequenceLock,
    ResequenceRequest,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    REQUEST_PENDING,
    REQUEST_FAILED,
    REQUEST_NEEDS_REVIEW,
)

__all__ = [
    'Order', 'OrderRefundLine', 'ORDER_SOURCE_PLATFORM', 'ORDER_SOURCE_PROVISIONAL',
    'LineItem', 'EditionEvent', 'ProductSequenceLock', 'ResequenceRequest',
    'STATUS_ACTIVE', 'STATUS_INACTIVE',
    'REQUEST_PENDING', 'REQUEST_FAILED', 'REQUEST_NEEDS_REVIEW',
]
