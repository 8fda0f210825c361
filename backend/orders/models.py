"""
Order Domain Models
===================
Pydantic models for print orders, their identifiers and the results the
lifecycle controller hands back to the HTTP layer.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PayMethod(str, Enum):
    DEFERRED = "deferred"
    PREPAID = "prepaid"

    @classmethod
    def parse(cls, raw: str) -> "PayMethod":
        """Accept both the enum values and the storefront's payLater/payNow."""
        aliases = {"paylater": cls.DEFERRED, "paynow": cls.PREPAID}
        key = (raw or "").strip().lower()
        if key in aliases:
            return aliases[key]
        return cls(key)


class ColorMode(str, Enum):
    BW = "bw"
    COLOR = "color"


class Orientation(str, Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


# =============================================================================
# IDENTIFIERS
# =============================================================================

class TrackingId(BaseModel):
    """Temporary key of a prepaid order awaiting payment confirmation."""
    kind: Literal["tracking"] = "tracking"
    value: str = Field(..., min_length=1, max_length=64)


class RedemptionCode(BaseModel):
    """Six-digit code the customer presents at the counter."""
    kind: Literal["redemption"] = "redemption"
    value: str = Field(..., pattern=r"^\d{6}$")


Identifier = Annotated[Union[TrackingId, RedemptionCode], Field(discriminator="kind")]


# =============================================================================
# ORDER
# =============================================================================

class PrintOptions(BaseModel):
    """Print job settings chosen in the storefront"""
    copies: int = Field(default=1, ge=1)
    page_selection: str = "All Pages"
    color_mode: ColorMode = ColorMode.BW
    orientation: Orientation = Orientation.PORTRAIT
    pages_per_sheet: int = Field(default=1, ge=1)


class CustomerDetails(BaseModel):
    """Customer block sent to the gateway with a remote order"""
    customer_id: Optional[str] = None
    name: str = "Guest"
    email: str = "guest@example.com"
    phone: str = "9999999999"


class Order(BaseModel):
    """Core order entity, keyed by the value of its current identifier"""
    identifier: Identifier
    pay_method: PayMethod
    tracking_id: Optional[str] = None
    reserved_code: Optional[str] = None

    file_paths: list[str] = Field(default_factory=list)
    options: PrintOptions
    price: float = Field(..., ge=0)
    currency: str = "INR"

    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: Optional[datetime] = None

    @computed_field
    @property
    def key(self) -> str:
        return self.identifier.value

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.PAID

    def redeem(self, code: str, file_paths: list[str]) -> "Order":
        """
        The single allowed identifier mutation: tracking id -> redemption code.
        Returns a new Order; the receiver is left untouched.
        """
        if not isinstance(self.identifier, TrackingId) or self.is_paid:
            raise ValueError(f"Order {self.key} cannot be redeemed from state {self.status.value}")
        return self.model_copy(update={
            "identifier": RedemptionCode(value=code),
            "reserved_code": code,
            "file_paths": list(file_paths),
            "status": OrderStatus.PAID,
            "paid_at": datetime.utcnow(),
        })


@dataclass
class IncomingFile:
    """An uploaded document sitting in the staging area."""
    path: Path
    filename: str


# =============================================================================
# RESULTS
# =============================================================================

class SubmissionResult(BaseModel):
    """Outcome of a submission; which fields are set depends on the path"""
    code: Optional[str] = None
    tracking_id: Optional[str] = None
    session_handle: Optional[str] = None
    degraded: bool = False


class RedemptionResult(BaseModel):
    code: str
    tracking_id: str
    already_paid: bool = False


class WebhookResult(BaseModel):
    status: str
    event_type: Optional[str] = None
    tracking_id: Optional[str] = None
    code: Optional[str] = None
