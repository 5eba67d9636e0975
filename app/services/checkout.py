"""
Checkout session creation with provider failover.

Providers are tried in registry order. A provider that is unsupported or has
incomplete credentials is skipped; one whose gateway call fails is recorded
and the next provider is tried. Exactly one payments row is written per
successful call and none when every provider fails.
"""
import logging
import os
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from app import models, registry, schemas
from app.entitlements import normalize_email
from app.exceptions import AllProvidersFailed, ConfigurationError, InvalidRequest, ProviderError
from app.utils.payment_gateway import (
    GatewayFactory,
    build_gateway,
    is_supported_provider,
    normalize_currency,
)

logger = logging.getLogger(__name__)


def _checkout_currency() -> str:
    return normalize_currency(os.getenv("PAYMENT_CURRENCY", "INR"))


def _brand_name() -> str:
    return os.getenv("CHECKOUT_BRAND_NAME", "ReelPass").strip() or "ReelPass"


def _recurring_total_count() -> int:
    raw = os.getenv("RECURRING_TOTAL_COUNT", "12").strip()
    try:
        count = int(raw)
        if count <= 0:
            raise ValueError
        return count
    except ValueError:
        return 12


def _create_receipt(plan_id: str) -> str:
    brand = _brand_name().lower().replace(" ", "")
    return f"{brand}_{plan_id}_{secrets.token_hex(8)}"[:40]


def _amount_minor_units(plan: models.Plan) -> int:
    return int(plan.price) * 100


def _start_order(
    db: Session,
    gateway,
    provider: models.PaymentProvider,
    plan: models.Plan,
    customer_name: Optional[str],
    customer_email: str,
) -> schemas.CheckoutResponse:
    amount = _amount_minor_units(plan)
    currency = _checkout_currency()
    receipt = _create_receipt(plan.id)
    order = gateway.create_order(
        amount=amount,
        currency=currency,
        receipt=receipt,
        notes={
            "plan_id": plan.id,
            "plan_name": plan.name,
            "user_email": customer_email or "unknown",
        },
    )
    logger.info("Order %s created with provider %s for plan %s", order.id, provider.name, plan.id)

    db.add(
        models.Payment(
            provider_id=provider.id,
            provider_order_id=order.id,
            user_email=customer_email or None,
            plan_id=plan.id,
            amount=amount,
            currency=currency,
            status=models.PAYMENT_CREATED,
            metadata_json={
                "plan_name": plan.name,
                "customer_name": customer_name,
                "receipt": receipt,
            },
        )
    )
    db.commit()

    return schemas.CheckoutResponse(
        order_id=order.id,
        provider_key=gateway.publishable_key,
        amount=amount,
        currency=currency,
        name=_brand_name(),
        description=f"{plan.name} Plan",
        prefill=schemas.CheckoutPrefill(email=customer_email or "", name=customer_name or ""),
    )


def _start_recurring(
    db: Session,
    gateway,
    provider: models.PaymentProvider,
    plan: models.Plan,
    customer_name: Optional[str],
    customer_email: str,
) -> schemas.CheckoutResponse:
    subscription = gateway.create_subscription(
        plan_id=plan.provider_plan_id.strip(),
        total_count=_recurring_total_count(),
        customer_name=customer_name,
        customer_email=customer_email or None,
        notes={"plan_id": plan.id, "user_email": customer_email or "unknown"},
    )
    logger.info("Recurring subscription %s created with provider %s for plan %s", subscription.id, provider.name, plan.id)

    db.add(
        models.Payment(
            provider_id=provider.id,
            provider_order_id=subscription.id,
            user_email=customer_email or None,
            plan_id=plan.id,
            amount=_amount_minor_units(plan),
            currency=_checkout_currency(),
            status=models.PAYMENT_CREATED,
            metadata_json={
                "plan_name": plan.name,
                "customer_name": customer_name,
                "provider_plan_id": plan.provider_plan_id,
            },
        )
    )
    db.commit()

    return schemas.CheckoutResponse(subscription_id=subscription.id, checkout_url=subscription.short_url)


def create_checkout_session(
    db: Session,
    payload: schemas.CheckoutRequest,
    gateway_factory: GatewayFactory = build_gateway,
) -> schemas.CheckoutResponse:
    plan_id = (payload.plan_id or "").strip()
    if not plan_id:
        raise InvalidRequest("plan_id is required")
    try:
        plan = registry.plan_by_id(db, plan_id)
    except ConfigurationError as exc:
        raise InvalidRequest(exc.message)

    customer_email = normalize_email(payload.customer_email)
    customer_name = (payload.customer_name or "").strip() or None

    attempted = False
    last_error: Optional[str] = None
    for provider in registry.active_providers(db):
        if not is_supported_provider(provider):
            logger.info("Provider %s of type %s not supported, skipping", provider.name, provider.type)
            continue
        if not provider.has_credentials:
            logger.warning("Provider %s is missing credentials, skipping", provider.name)
            continue

        attempted = True
        gateway = gateway_factory(provider)
        try:
            if plan.is_recurring:
                return _start_recurring(db, gateway, provider, plan, customer_name, customer_email)
            return _start_order(db, gateway, provider, plan, customer_name, customer_email)
        except ProviderError as exc:
            db.rollback()
            last_error = exc.message
            logger.error("Provider %s failed during checkout: %s", provider.name, exc.message)

    if not attempted:
        raise ConfigurationError("No active payment provider has usable credentials.")
    raise AllProvidersFailed(last_error or "All payment providers failed")
