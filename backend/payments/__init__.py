# payments/__init__.py
from payments.cashfree_client import (
    CashfreeClient,
    CashfreeConfig,
    IPaymentGateway,
    RemoteOrder,
    RemoteStatus,
    compute_webhook_signature,
)

__all__ = [
    "CashfreeClient",
    "CashfreeConfig",
    "IPaymentGateway",
    "RemoteOrder",
    "RemoteStatus",
    "compute_webhook_signature",
]
