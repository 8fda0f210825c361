"""
Shared fixtures: an in-memory store, a tmp_path upload root and a fake
payment gateway that signs webhooks with a known secret.
"""

import hmac
import json
from pathlib import Path
from typing import Optional

import pytest

from orders.audit import InMemoryAuditLog
from orders.errors import GatewayError
from orders.lifecycle import LifecycleSettings, OrderLifecycleController
from orders.models import CustomerDetails, IncomingFile
from payments.cashfree_client import (
    IPaymentGateway,
    RemoteOrder,
    RemoteStatus,
    compute_webhook_signature,
)
from storage import FilePlacementManager, InMemoryOrderStore

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(IPaymentGateway):
    """Scriptable stand-in for the Cashfree client"""

    def __init__(self, secret: str = WEBHOOK_SECRET):
        self.secret = secret
        self.remote_status: dict[str, str] = {}
        self.created: list[str] = []
        self.status_calls: list[str] = []
        self.create_error: Optional[GatewayError] = None
        self.status_error: Optional[GatewayError] = None

    async def create_remote_order(self, identifier, amount, currency, customer: CustomerDetails):
        if self.create_error:
            raise self.create_error
        self.created.append(identifier)
        self.remote_status.setdefault(identifier, "ACTIVE")
        return RemoteOrder(order_id=identifier, session_handle=f"session_{identifier}", remote_status="ACTIVE")

    async def fetch_remote_status(self, identifier):
        self.status_calls.append(identifier)
        if self.status_error:
            raise self.status_error
        status = self.remote_status.get(identifier, "ACTIVE")
        return RemoteStatus(order_id=identifier, paid=status == "PAID", remote_status=status)

    def verify_webhook_signature(self, raw_body, timestamp, signature):
        if not (timestamp and signature):
            return False
        expected = compute_webhook_signature(self.secret, raw_body, timestamp)
        return hmac.compare_digest(expected, signature)

    def mark_paid(self, identifier: str):
        self.remote_status[identifier] = "PAID"


def signed_webhook(payload: dict, timestamp: str = "1700000000", secret: str = WEBHOOK_SECRET):
    """(raw body, timestamp, signature) for a webhook delivery"""
    raw_body = json.dumps(payload).encode()
    return raw_body, timestamp, compute_webhook_signature(secret, raw_body, timestamp)


def payment_success_event(tracking_id: str, event_type: str = "PAYMENT_SUCCESS_WEBHOOK") -> dict:
    return {
        "type": event_type,
        "data": {
            "order": {"order_id": tracking_id, "order_amount": 20.0},
            "payment": {"payment_status": "SUCCESS"},
        },
    }


@pytest.fixture
def upload_root(tmp_path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture
def staging_dir(tmp_path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def make_uploads(staging_dir):
    """Factory writing staged documents and returning IncomingFile entries"""
    counter = {"n": 0}

    def _make(*names: str) -> list[IncomingFile]:
        incoming = []
        for name in names:
            counter["n"] += 1
            path = staging_dir / f"upload_{counter['n']}"
            path.write_bytes(f"%PDF-1.4 {name}".encode())
            incoming.append(IncomingFile(path=path, filename=name))
        return incoming

    return _make


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def files(upload_root) -> FilePlacementManager:
    return FilePlacementManager(upload_root)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def controller(store, files, gateway, audit_log) -> OrderLifecycleController:
    return OrderLifecycleController(
        store=store,
        files=files,
        gateway=gateway,
        audit_log=audit_log,
        settings=LifecycleSettings(store_timeout_seconds=1.0),
    )
