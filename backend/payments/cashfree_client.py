# payments/cashfree_client.py
# ============================================================================
# PRINTDESK v1.0 - CASHFREE PAYMENT GATEWAY CLIENT
# ============================================================================
# Wraps the three things the lifecycle needs from the gateway:
# - create a remote order and get a checkout session handle
# - fetch the remote order's payment status
# - verify webhook signatures
#
# FAILURE HANDLING:
# - Any non-2xx response or a missing session handle raises GatewayError
#   with the provider's status code and body attached
# - Transport timeouts raise GatewayTimeout
# ============================================================================

import base64
import hashlib
import hmac
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from orders.errors import GatewayError, GatewayTimeout
from orders.models import CustomerDetails

logger = structlog.get_logger().bind(component="cashfree_client")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

@dataclass
class CashfreeConfig:
    """Configuration for the Cashfree PG connection."""
    app_id: str
    secret: str
    base_url: str = "https://api.cashfree.com"
    api_version: str = "2023-08-01"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "CashfreeConfig":
        return cls(
            app_id=os.getenv("CASHFREE_APP_ID", ""),
            secret=os.getenv("CASHFREE_SECRET", ""),
            base_url=os.getenv("CASHFREE_BASE_URL", "https://api.cashfree.com"),
            api_version=os.getenv("CASHFREE_API_VERSION", "2023-08-01"),
            timeout_seconds=float(os.getenv("CASHFREE_TIMEOUT", "10.0")),
        )

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.secret)


# ============================================================================
# SECTION 2: RESULTS & INTERFACE
# ============================================================================

class RemoteOrder(BaseModel):
    order_id: str
    session_handle: str
    remote_status: Optional[str] = None


class RemoteStatus(BaseModel):
    order_id: str
    paid: bool
    remote_status: Optional[str] = None


class IPaymentGateway(ABC):
    """What the lifecycle controller consumes from a payment provider"""

    @abstractmethod
    async def create_remote_order(
        self,
        identifier: str,
        amount: float,
        currency: str,
        customer: CustomerDetails,
    ) -> RemoteOrder:
        pass

    @abstractmethod
    async def fetch_remote_status(self, identifier: str) -> RemoteStatus:
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, timestamp: str, signature: str) -> bool:
        pass


# ============================================================================
# SECTION 3: SIGNATURES
# ============================================================================

def compute_webhook_signature(secret: str, raw_body: bytes, timestamp: str) -> str:
    """base64(HMAC-SHA256(secret, timestamp + raw body))"""
    digest = hmac.new(
        secret.encode(),
        timestamp.encode() + raw_body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode()


# ============================================================================
# SECTION 4: CLIENT
# ============================================================================

class CashfreeClient(IPaymentGateway):
    """
    Cashfree PG order API over httpx.

    Example:
        client = CashfreeClient(CashfreeConfig.from_env())
        remote = await client.create_remote_order("cf_17...", 20.0, "INR", CustomerDetails())
        # Storefront opens checkout with remote.session_handle
        status = await client.fetch_remote_status("cf_17...")
    """

    def __init__(
        self,
        config: Optional[CashfreeConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or CashfreeConfig.from_env()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
                headers={
                    "x-client-id": self.config.app_id,
                    "x-client-secret": self.config.secret,
                    "x-api-version": self.config.api_version,
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("gateway_timeout", method=method, path=path)
            raise GatewayTimeout(f"Gateway timed out on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.error("gateway_transport_error", method=method, path=path, error=str(e))
            raise GatewayError(f"Gateway unreachable on {method} {path}: {e}") from e

        if not response.is_success:
            logger.error("gateway_error_response",
                         method=method,
                         path=path,
                         status_code=response.status_code,
                         body=response.text[:500])
            raise GatewayError(
                f"Gateway returned {response.status_code} on {method} {path}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"Gateway returned a non-JSON body on {method} {path}",
                status_code=response.status_code,
                body=response.text,
            ) from e

    async def create_remote_order(
        self,
        identifier: str,
        amount: float,
        currency: str,
        customer: CustomerDetails,
    ) -> RemoteOrder:
        payload = {
            "order_id": identifier,
            "order_amount": amount,
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id or identifier,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone,
            },
            "order_note": "Print order",
        }

        data = await self._request("POST", "/pg/orders", json=payload)

        session_handle = data.get("payment_session_id")
        if not session_handle:
            logger.error("gateway_missing_session", order_id=identifier, response=data)
            raise GatewayError(
                "No payment session id returned by gateway",
                status_code=200,
                body=str(data),
            )

        logger.info("remote_order_created", order_id=identifier, amount=amount, currency=currency)
        return RemoteOrder(
            order_id=data.get("order_id", identifier),
            session_handle=session_handle,
            remote_status=data.get("order_status"),
        )

    async def fetch_remote_status(self, identifier: str) -> RemoteStatus:
        data = await self._request("GET", f"/pg/orders/{identifier}")
        remote_status = data.get("order_status")
        logger.info("remote_status_fetched", order_id=identifier, order_status=remote_status)
        return RemoteStatus(
            order_id=identifier,
            paid=remote_status == "PAID",
            remote_status=remote_status,
        )

    def verify_webhook_signature(self, raw_body: bytes, timestamp: str, signature: str) -> bool:
        if not (self.config.secret and timestamp and signature):
            return False
        expected = compute_webhook_signature(self.config.secret, raw_body, timestamp)
        return hmac.compare_digest(expected.encode(), signature.encode())
