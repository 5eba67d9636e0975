from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class CheckoutRequest(BaseModel):
    plan_id: str = ""
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None


class CheckoutPrefill(BaseModel):
    email: str = ""
    name: str = ""


class CheckoutResponse(BaseModel):
    order_id: Optional[str] = None
    provider_key: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    prefill: Optional[CheckoutPrefill] = None
    subscription_id: Optional[str] = None
    checkout_url: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    payment_id: str = ""
    order_id: str = ""
    signature: Optional[str] = None


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    already_processed: bool = Field(default=False, alias="alreadyProcessed")
    message: Optional[str] = None
    status: Optional[str] = None
    subscription_end: Optional[datetime] = None

    class Config:
        populate_by_name = True


class EntitlementResponse(BaseModel):
    email: str
    subscribed: bool
    subscription_tier: Optional[str] = None
    subscription_end: Optional[datetime] = None


class PlanResponse(BaseModel):
    id: str
    name: str
    price: int
    period_days: int
    is_recurring: bool

    class Config:
        from_attributes = True


# Gateway payloads, validated at the boundary.


class GatewayOrder(BaseModel):
    id: str
    amount: int = 0
    currency: str = "INR"
    status: Optional[str] = None
    receipt: Optional[str] = None


class GatewaySubscription(BaseModel):
    id: str
    plan_id: Optional[str] = None
    status: Optional[str] = None
    short_url: Optional[str] = None


class GatewayPayment(BaseModel):
    id: str
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: str = ""
    amount: int = 0
    currency: str = "INR"
    method: Optional[str] = None
    email: Optional[str] = None
    captured: bool = False
    error_description: Optional[str] = None


class WebhookEvent(BaseModel):
    event: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)

    def entity(self, kind: str) -> Optional[Dict[str, Any]]:
        container = self.payload.get(kind) or {}
        if not isinstance(container, dict):
            return None
        entity = container.get("entity")
        return entity if isinstance(entity, dict) else None
