# orders/__init__.py
from orders.errors import (
    PrintDeskError,
    ExhaustedIdentifierSpace,
    DuplicateIdentifier,
    StorageFailure,
    StorageTimeout,
    GatewayError,
    GatewayTimeout,
    PaymentNotCompleted,
    InvalidSignature,
    InvalidWebhookPayload,
    OrderNotFound,
)
from orders.models import (
    Order,
    OrderStatus,
    PayMethod,
    PrintOptions,
    TrackingId,
    RedemptionCode,
    IncomingFile,
)

__all__ = [
    "PrintDeskError",
    "ExhaustedIdentifierSpace",
    "DuplicateIdentifier",
    "StorageFailure",
    "StorageTimeout",
    "GatewayError",
    "GatewayTimeout",
    "PaymentNotCompleted",
    "InvalidSignature",
    "InvalidWebhookPayload",
    "OrderNotFound",
    "Order",
    "OrderStatus",
    "PayMethod",
    "PrintOptions",
    "TrackingId",
    "RedemptionCode",
    "IncomingFile",
]
