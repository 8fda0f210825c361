"""
Order Lifecycle Errors
======================
Exception taxonomy shared by the lifecycle controller and its adapters.

Adapters translate library failures (OSError, httpx, asyncpg) into these
at the boundary so the controller and the HTTP layer only ever see
domain errors.

    PrintDeskError
    ├── ExhaustedIdentifierSpace   fatal, alert
    ├── DuplicateIdentifier        retried once internally
    ├── StorageFailure             abort, no partial order persisted
    │   └── StorageTimeout         caller may retry
    ├── GatewayError               degrade prepaid submission
    │   └── GatewayTimeout         caller may retry
    ├── PaymentNotCompleted        expected, poll again later
    ├── InvalidSignature           reject webhook, no state change
    ├── InvalidWebhookPayload
    └── OrderNotFound
"""

from typing import Optional


class PrintDeskError(Exception):
    """Base class for every error raised by the order core."""


class ExhaustedIdentifierSpace(PrintDeskError):
    """No unused redemption code found within the attempt budget."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"No free redemption code after {attempts} attempts")


class DuplicateIdentifier(PrintDeskError):
    """The store already holds an order (or reservation) under this key."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Identifier already in use: {identifier}")


class StorageFailure(PrintDeskError):
    """Filesystem or persistent store operation failed."""


class StorageTimeout(StorageFailure):
    """Persistent store did not answer in time."""


class GatewayError(PrintDeskError):
    """Payment gateway returned an unusable response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class GatewayTimeout(GatewayError):
    """Payment gateway did not answer in time."""


class PaymentNotCompleted(PrintDeskError):
    """Gateway reports the order as not yet paid."""

    def __init__(self, tracking_id: str, remote_status: Optional[str] = None):
        self.tracking_id = tracking_id
        self.remote_status = remote_status
        super().__init__(f"Payment not completed for {tracking_id}")


class InvalidSignature(PrintDeskError):
    """Webhook signature does not match the shared-secret HMAC."""


class InvalidWebhookPayload(PrintDeskError):
    """Webhook body passed signature checks but is not a usable event."""


class OrderNotFound(PrintDeskError):
    """No order is stored under the given identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Order not found: {identifier}")
