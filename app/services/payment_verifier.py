"""
Client-initiated payment verification.

Runs right after the gateway's client-side checkout reports success. The
payment status is always re-fetched from the gateway; the client only tells
us which payment to look at. This path races the webhook on the same
payments row and relies on the same gates to stay idempotent.
"""
import logging
import os
from typing import Optional

from sqlalchemy.orm import Session

from app import models, payment_ledger, registry, schemas
from app.entitlements import get_entitlement, reconcile_payment
from app.exceptions import (
    ConfigurationError,
    InvalidRequest,
    OrderMismatch,
    PaymentNotCompleted,
    PaymentNotFound,
    ProviderError,
)
from app.utils.payment_gateway import GatewayFactory, build_gateway

logger = logging.getLogger(__name__)


def _env_provider() -> Optional[models.PaymentProvider]:
    key_id = os.getenv("RAZORPAY_KEY_ID", "").strip()
    key_secret = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
    if not key_id or not key_secret:
        return None
    # Transient row, never added to the session.
    return models.PaymentProvider(name="razorpay-env", type="razorpay", api_key=key_id, api_secret=key_secret)


def resolve_verification_provider(db: Session, payment_row: models.Payment) -> models.PaymentProvider:
    candidates = (
        registry.provider_by_id(db, payment_row.provider_id),
        _env_provider(),
        registry.primary_provider(db),
    )
    for provider in candidates:
        if provider is not None and provider.has_credentials:
            return provider
    raise ConfigurationError("Payment verification is not configured.")


def _current_subscription_end(db: Session, email: Optional[str]):
    if not email:
        return None
    subscriber = get_entitlement(db, email)
    return subscriber.subscription_end if subscriber else None


def _settle_status(gateway, gateway_payment: schemas.GatewayPayment) -> str:
    status = (gateway_payment.status or "").strip().lower()
    if status != models.PAYMENT_AUTHORIZED:
        return status
    try:
        captured = gateway.capture_payment(gateway_payment.id, gateway_payment.amount, gateway_payment.currency)
    except ProviderError as exc:
        # Still authorized; the webhook will settle it later.
        logger.warning("Capture of payment %s failed, keeping authorized: %s", gateway_payment.id, exc.message)
        return status
    logger.info("Captured authorized payment %s: %s", gateway_payment.id, captured.status)
    return (captured.status or status).strip().lower()


def verify_payment(
    db: Session,
    payload: schemas.VerifyPaymentRequest,
    gateway_factory: GatewayFactory = build_gateway,
) -> schemas.VerifyPaymentResponse:
    payment_id = (payload.payment_id or "").strip()
    order_id = (payload.order_id or "").strip()
    if not payment_id or not order_id:
        raise InvalidRequest("Missing required payment details")

    payment_row = payment_ledger.find_by_order_id(db, order_id, for_update=True)
    if not payment_row:
        raise PaymentNotFound("Payment order not found.")

    provider = resolve_verification_provider(db, payment_row)
    gateway = gateway_factory(provider)

    if payload.signature and not gateway.checkout_signature_valid(order_id, payment_id, payload.signature):
        raise InvalidRequest("Invalid payment signature.")

    gateway_payment = gateway.fetch_payment(payment_id)
    if gateway_payment.id != payment_id:
        raise OrderMismatch("Gateway returned a different payment.")
    linked_ids = {gateway_payment.order_id or "", gateway_payment.subscription_id or ""}
    if payment_row.provider_order_id not in linked_ids:
        raise OrderMismatch("Payment order ID mismatch.")

    status = _settle_status(gateway, gateway_payment)

    if status not in models.ENTITLING_STATUSES:
        raise PaymentNotCompleted("Payment not completed", provider_status=status)

    email = payment_ledger.resolve_customer_email(payment_row, gateway_payment.email)

    if payment_ledger.is_terminal_success(payment_row):
        logger.info("Order %s already processed; short-circuiting verification", order_id)
        return schemas.VerifyPaymentResponse(
            success=True,
            already_processed=True,
            message="Payment already processed",
            status=payment_row.status,
            subscription_end=_current_subscription_end(db, email),
        )

    if not email:
        # Nothing is recorded, so the webhook can still settle this payment.
        raise InvalidRequest("Payment has no customer email to activate.")

    payment_row.user_email = email
    target_status = models.PAYMENT_AUTHORIZED if status == models.PAYMENT_AUTHORIZED else models.PAYMENT_PAID
    payment_ledger.record_success(
        payment_row,
        target_status=target_status,
        provider_payment_id=payment_id,
        payment_method=gateway_payment.method,
        signature=payload.signature,
    )

    plan = registry.plan_by_id(db, payment_row.plan_id)
    subscriber = reconcile_payment(
        db,
        email=email,
        plan_id=plan.id,
        period_days=plan.period_days,
        payment_id=payment_id,
    )
    if subscriber is None:
        return schemas.VerifyPaymentResponse(
            success=True,
            already_processed=True,
            message="Payment already processed",
            status=payment_row.status,
            subscription_end=_current_subscription_end(db, email),
        )

    logger.info("Verified payment %s for order %s", payment_id, order_id)
    return schemas.VerifyPaymentResponse(
        success=True,
        message="Payment verified and subscription activated",
        status=payment_row.status,
        subscription_end=subscriber.subscription_end,
    )
