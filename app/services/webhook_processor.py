"""
Signed payment-gateway webhook handling.

Every outcome other than a bad signature, a malformed body or a processing
failure is acknowledged with a small status dict so the gateway stops
retrying. Processing failures propagate so the caller can answer 500 and
let the gateway redeliver.
"""
import json
import logging
import os
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app import models, payment_ledger, registry, schemas
from app.entitlements import reconcile_payment
from app.exceptions import InvalidRequest, InvalidSignature
from app.utils.payment_gateway import signature_matches

logger = logging.getLogger(__name__)

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"


def resolve_webhook_secret(db: Session) -> str:
    env_secret = os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip()
    if env_secret:
        return env_secret
    provider = registry.primary_provider(db)
    if provider and (provider.webhook_secret or "").strip():
        return provider.webhook_secret.strip()
    return ""


def verify_webhook_signature(db: Session, body: bytes, signature: Optional[str]) -> bool:
    """True when the body was verified, False when no secret is configured at all."""
    secret = resolve_webhook_secret(db)
    if not secret:
        logger.warning("No webhook secret configured; accepting unverified webhook. Not safe for production.")
        return False
    if not signature_matches(secret, body, signature):
        logger.warning("Rejected webhook with invalid signature")
        raise InvalidSignature("Invalid webhook signature.")
    logger.debug("Webhook signature verified")
    return True


def _parse_event(body: bytes) -> schemas.WebhookEvent:
    try:
        raw = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise InvalidRequest("Invalid webhook payload.")
    if not isinstance(raw, dict):
        raise InvalidRequest("Invalid webhook payload.")
    try:
        return schemas.WebhookEvent.model_validate(raw)
    except ValidationError:
        raise InvalidRequest("Invalid webhook payload.")


def _handle_payment_captured(
    db: Session,
    payment_entity: schemas.GatewayPayment,
    signature: Optional[str],
) -> Dict[str, Any]:
    payment_row = payment_ledger.find_for_gateway_payment(
        db,
        order_id=payment_entity.order_id,
        subscription_id=payment_entity.subscription_id,
        for_update=True,
    )
    if not payment_row:
        logger.warning(
            "Captured payment %s for unknown order %s; acknowledging",
            payment_entity.id,
            payment_entity.order_id or payment_entity.subscription_id,
        )
        return {"status": "ignored", "reason": "order_not_found"}

    if payment_ledger.is_terminal_success(payment_row):
        logger.info("Order %s already marked %s; skipping", payment_row.provider_order_id, payment_row.status)
        return {"status": "ok", "idempotent": True}

    email = payment_ledger.resolve_customer_email(payment_row, payment_entity.email)
    if not email:
        # Left pending: a terminal status here would close the gate with nothing granted.
        logger.warning("Order %s has no customer email; leaving it pending", payment_row.provider_order_id)
        return {"status": "ignored", "reason": "customer_unknown"}

    payment_row.user_email = email
    payment_ledger.record_success(
        payment_row,
        target_status=models.PAYMENT_PAID,
        provider_payment_id=payment_entity.id,
        payment_method=payment_entity.method,
        signature=signature,
    )

    plan = registry.plan_by_id(db, payment_row.plan_id)
    subscriber = reconcile_payment(
        db,
        email=email,
        plan_id=plan.id,
        period_days=plan.period_days,
        payment_id=payment_entity.id,
    )
    logger.info("Processed captured payment %s for order %s", payment_entity.id, payment_row.provider_order_id)
    if subscriber is None:
        return {"status": "ok", "idempotent": True}
    return {"status": "ok"}


def _handle_payment_failed(db: Session, payment_entity: schemas.GatewayPayment) -> Dict[str, Any]:
    payment_row = payment_ledger.find_for_gateway_payment(
        db,
        order_id=payment_entity.order_id,
        subscription_id=payment_entity.subscription_id,
    )
    if not payment_row:
        return {"status": "ignored", "reason": "order_not_found"}

    if payment_ledger.mark_failed(payment_row, payment_entity.error_description or "provider_payment_failed"):
        db.commit()
        logger.info("Order %s marked failed by payment %s", payment_row.provider_order_id, payment_entity.id)
        return {"status": "ok"}
    return {"status": "ignored", "reason": "status_not_regressed"}


def process_webhook(db: Session, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    verify_webhook_signature(db, body, signature)
    event = _parse_event(body)

    raw_entity = event.entity("payment") or event.entity("subscription")
    if not raw_entity:
        logger.info("Event %s has no entity; acknowledging", event.event)
        return {"status": "ignored", "reason": "no_entity", "event": event.event}

    if event.event in (EVENT_PAYMENT_CAPTURED, EVENT_PAYMENT_FAILED):
        try:
            payment_entity = schemas.GatewayPayment.model_validate(event.entity("payment") or {})
        except ValidationError:
            logger.warning("Event %s carries a malformed payment entity; acknowledging", event.event)
            return {"status": "ignored", "reason": "invalid_entity", "event": event.event}
        if event.event == EVENT_PAYMENT_CAPTURED:
            return _handle_payment_captured(db, payment_entity, signature)
        return _handle_payment_failed(db, payment_entity)

    if event.event.startswith("subscription."):
        # TODO: drive pause/resume/halt from a subscription lifecycle handler.
        logger.info("Subscription event %s for %s acknowledged", event.event, raw_entity.get("id"))
        return {"status": "ignored", "event": event.event}

    logger.info("Event %s not handled; acknowledging", event.event)
    return {"status": "ignored", "event": event.event}
