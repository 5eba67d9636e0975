import logging
from typing import Optional

from sqlalchemy.orm import Session

from app import models
from app.entitlements import normalize_email, utcnow

logger = logging.getLogger(__name__)

# Forward-only ordering; failed/cancelled are reachable only from created.
_STATUS_RANK = {
    models.PAYMENT_CREATED: 0,
    models.PAYMENT_FAILED: 1,
    models.PAYMENT_CANCELLED: 1,
    models.PAYMENT_AUTHORIZED: 2,
    models.PAYMENT_PAID: 3,
    models.PAYMENT_CAPTURED: 3,
}


def can_transition(current: Optional[str], target: str) -> bool:
    current = (current or models.PAYMENT_CREATED).strip().lower()
    if target not in _STATUS_RANK:
        return False
    if current == target:
        return True
    if current in (models.PAYMENT_FAILED, models.PAYMENT_CANCELLED):
        # A late capture still wins over a recorded failure.
        return target in models.ENTITLING_STATUSES
    return _STATUS_RANK[target] > _STATUS_RANK.get(current, 0)


def advance_status(payment: models.Payment, target: str) -> bool:
    if not can_transition(payment.status, target):
        logger.debug(
            "Ignoring status regression for order %s: %s -> %s",
            payment.provider_order_id,
            payment.status,
            target,
        )
        return False
    payment.status = target
    payment.updated_at = utcnow()
    return True


def is_terminal_success(payment: models.Payment) -> bool:
    return (payment.status or "").strip().lower() in models.TERMINAL_SUCCESS_STATUSES


def find_by_order_id(db: Session, order_id: str, for_update: bool = False) -> Optional[models.Payment]:
    order_id = (order_id or "").strip()
    if not order_id:
        return None
    query = db.query(models.Payment).filter(models.Payment.provider_order_id == order_id)
    if for_update and db.bind and db.bind.dialect.name != "sqlite":
        query = query.with_for_update()
    return query.first()


def find_for_gateway_payment(
    db: Session,
    order_id: Optional[str],
    subscription_id: Optional[str],
    for_update: bool = False,
) -> Optional[models.Payment]:
    payment = find_by_order_id(db, order_id or "", for_update=for_update)
    if payment is None and subscription_id:
        # Recurring intents are recorded under the gateway subscription id.
        payment = find_by_order_id(db, subscription_id, for_update=for_update)
    return payment


def resolve_customer_email(payment: models.Payment, gateway_email: Optional[str]) -> str:
    """Email to entitle: the one captured at checkout, else the one the gateway collected."""
    return normalize_email(payment.user_email) or normalize_email(gateway_email)


def record_success(
    payment: models.Payment,
    target_status: str,
    provider_payment_id: str,
    payment_method: Optional[str] = None,
    signature: Optional[str] = None,
) -> bool:
    if not advance_status(payment, target_status):
        return False
    payment.provider_payment_id = provider_payment_id
    if payment_method:
        payment.payment_method = payment_method
    if signature:
        payment.provider_signature = signature
    payment.error_message = None
    return True


def mark_failed(payment: models.Payment, message: str) -> bool:
    if not advance_status(payment, models.PAYMENT_FAILED):
        return False
    payment.error_message = (message or "")[:1000]
    return True
