from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base

PAYMENT_CREATED = "created"
PAYMENT_AUTHORIZED = "authorized"
PAYMENT_PAID = "paid"
PAYMENT_CAPTURED = "captured"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"

PAYMENT_STATUSES = (
    PAYMENT_CREATED,
    PAYMENT_AUTHORIZED,
    PAYMENT_PAID,
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
)
# Statuses that close the idempotency gate on the calling paths.
TERMINAL_SUCCESS_STATUSES = frozenset({PAYMENT_PAID, PAYMENT_CAPTURED})
# Statuses good enough to grant entitlement.
ENTITLING_STATUSES = frozenset({PAYMENT_AUTHORIZED, PAYMENT_PAID, PAYMENT_CAPTURED})


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # whole currency units; checkout multiplies by 100
    period_days = Column(Integer, nullable=False)
    provider_plan_id = Column(String, nullable=True)  # recurring plan id on the gateway
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_recurring(self) -> bool:
        return bool((self.provider_plan_id or "").strip())


class PaymentProvider(Base):
    __tablename__ = "payment_providers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, index=True)
    api_key = Column(String, nullable=True)
    api_secret = Column(String, nullable=True)
    webhook_secret = Column(String, nullable=True)
    is_primary = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    payments = relationship("Payment", back_populates="provider")

    @property
    def has_credentials(self) -> bool:
        return bool((self.api_key or "").strip() and (self.api_secret or "").strip())


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("payment_providers.id"), nullable=True, index=True)
    provider_order_id = Column(String, unique=True, index=True, nullable=False)
    provider_payment_id = Column(String, nullable=True, index=True)
    provider_signature = Column(String, nullable=True)
    user_email = Column(String, nullable=True, index=True)
    plan_id = Column(String, ForeignKey("plans.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String, nullable=False, default=PAYMENT_CREATED, index=True)
    payment_method = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    provider = relationship("PaymentProvider", back_populates="payments")
    plan = relationship("Plan")


class Subscriber(Base):
    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    subscribed = Column(Boolean, default=False, nullable=False)
    subscription_tier = Column(String, nullable=True)
    subscription_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AppliedPayment(Base):
    """One row per provider payment id that has already extended an entitlement."""

    __tablename__ = "applied_payments"

    payment_id = Column(String, primary_key=True)
    email = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    period_days = Column(Integer, nullable=False)
    applied_at = Column(DateTime(timezone=True), server_default=func.now())
