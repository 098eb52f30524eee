"""Pydantic schemas for billing payloads and API responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventEnvelope(BaseModel):
    """Verified provider event: id, type and the event's data object."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: Optional[int] = None
    livemode: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.get("object") or {}


class IngestResult(BaseModel):
    event_id: str
    status: str  # processed | duplicate | in_flight
    attempt: int
    outcome: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    status: str
    outcome: Optional[str] = None


# ── Checkout ──


class ConfirmCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=255)


class ConfirmCheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    customer_id: str = Field(..., alias="customerId")
    tier: str


class CheckoutSessionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(..., alias="priceId", min_length=1)
    business_id: Optional[str] = Field(None, alias="businessId")
    mode: str = Field("subscription", pattern="^(subscription|payment)$")
    trial_period_days: Optional[int] = Field(None, alias="trialPeriodDays", ge=1, le=730)
    success_url: Optional[str] = Field(None, alias="successUrl")
    cancel_url: Optional[str] = Field(None, alias="cancelUrl")
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    url: Optional[str] = None


class PortalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: Optional[str] = Field(None, alias="businessId")
    return_url: Optional[str] = Field(None, alias="returnUrl")


class PortalResponse(BaseModel):
    url: str


# ── Catalog ──


class PriceResponse(BaseModel):
    provider_price_id: str
    lookup_key: str
    amount: int
    currency: str
    interval: Optional[str] = None
    interval_count: Optional[int] = None

    model_config = {"from_attributes": True}


class ProductResponse(BaseModel):
    provider_product_id: str
    lookup_key: str
    name: str
    description: str
    type: str
    tier: Optional[str] = None
    features: list[str] = []
    prices: list[PriceResponse] = []


class ProductListResponse(BaseModel):
    products: list[ProductResponse]


class BootstrapResult(BaseModel):
    products: int = 0
    prices: int = 0


# ── Ledger ──


class WebhookEventResponse(BaseModel):
    event_id: str
    event_type: str
    processed: bool
    attempts: int
    outcome: Optional[str] = None
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
