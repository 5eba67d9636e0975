import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import models

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _find_subscriber(db: Session, email: str) -> Optional[models.Subscriber]:
    return db.query(models.Subscriber).filter(models.Subscriber.email == email).first()


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_entitled(subscriber: Optional[models.Subscriber], now: Optional[datetime] = None) -> bool:
    if subscriber is None or not subscriber.subscribed:
        return False
    ends_at = _normalize_datetime(subscriber.subscription_end)
    if ends_at is None:
        return False
    return ends_at > (now or utcnow())


def _stacking_base(subscriber: Optional[models.Subscriber], now: datetime) -> datetime:
    if subscriber is None or not subscriber.subscribed:
        return now
    existing_end = _normalize_datetime(subscriber.subscription_end)
    if existing_end and existing_end > now:
        return existing_end
    return now


def _claim_payment(
    db: Session,
    payment_id: str,
    email: str,
    plan_id: str,
    period_days: int,
) -> bool:
    """Insert the applied-payment marker; False when another caller already holds it."""
    if db.get(models.AppliedPayment, payment_id) is not None:
        return False
    db.add(
        models.AppliedPayment(
            payment_id=payment_id,
            email=email,
            plan_id=plan_id,
            period_days=period_days,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        # Lost the insert race: the winning transaction applies this payment.
        db.rollback()
        return False
    return True


def _upsert_subscriber(db: Session, email: str) -> models.Subscriber:
    subscriber = _find_subscriber(db, email)
    if subscriber is None:
        # A concurrent first insert for the same email fails on commit and rolls
        # back the claim above, so a redelivery can apply the payment again.
        subscriber = models.Subscriber(email=email, subscribed=False)
        db.add(subscriber)
    return subscriber


def reconcile_payment(
    db: Session,
    email: str,
    plan_id: str,
    period_days: int,
    payment_id: str,
    now: Optional[datetime] = None,
) -> Optional[models.Subscriber]:
    """
    Extend the subscriber's entitlement for one confirmed payment.

    The extension stacks on top of any time still remaining, using the
    current moment as the floor. Each payment_id is applied at most once; a
    repeated or concurrent call for the same payment_id returns None and
    leaves the entitlement untouched.
    """
    email = normalize_email(email)
    payment_id = (payment_id or "").strip()
    if not email or not plan_id or not period_days or period_days <= 0 or not payment_id:
        raise ValueError("email, plan_id, positive period_days and payment_id are required")

    if not _claim_payment(db, payment_id, email, plan_id, period_days):
        logger.info("Payment %s already applied to %s; skipping", payment_id, email)
        db.commit()
        return None

    now = now or utcnow()
    subscriber = _upsert_subscriber(db, email)
    start_from = _stacking_base(subscriber, now)
    if start_from > now:
        logger.info("Stacking payment %s for %s on existing end %s", payment_id, email, start_from.isoformat())

    subscriber.subscribed = True
    subscriber.subscription_tier = plan_id
    subscriber.subscription_end = start_from + timedelta(days=period_days)
    subscriber.updated_at = utcnow()

    db.commit()
    db.refresh(subscriber)

    logger.info(
        "Granted %s days of %s to %s via payment %s; ends %s",
        period_days,
        plan_id,
        email,
        payment_id,
        _normalize_datetime(subscriber.subscription_end).isoformat(),
    )
    return subscriber


def _apply_expiry(db: Session, subscriber: models.Subscriber, now: datetime) -> None:
    if not subscriber.subscribed or is_entitled(subscriber, now):
        return
    try:
        subscriber.subscribed = False
        db.commit()
        db.refresh(subscriber)
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Could not persist expiry for %s", subscriber.email, exc_info=True)


def _latest_entitling_payment(db: Session, email: str) -> Optional[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(
            models.Payment.user_email == email,
            models.Payment.status.in_(sorted(models.ENTITLING_STATUSES)),
        )
        .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
        .first()
    )


def applied_payment_key(payment: models.Payment) -> str:
    if payment.provider_payment_id:
        return payment.provider_payment_id
    return f"order:{payment.provider_order_id}"


def _reconcile_from_ledger(db: Session, email: str, now: datetime) -> Optional[models.Subscriber]:
    payment = _latest_entitling_payment(db, email)
    if payment is None or payment.plan is None or not payment.plan.period_days:
        return None
    # The period runs from when the payment was made, not from this read.
    paid_at = _normalize_datetime(payment.created_at) or now
    if paid_at + timedelta(days=payment.plan.period_days) <= now:
        logger.info("Latest payment %s for %s has already lapsed; not reconciling", payment.provider_order_id, email)
        return None
    logger.info("No subscriber row for %s; reconciling from payment %s", email, payment.provider_order_id)
    reconcile_payment(
        db,
        email=email,
        plan_id=payment.plan_id,
        period_days=payment.plan.period_days,
        payment_id=applied_payment_key(payment),
        now=paid_at,
    )
    return _find_subscriber(db, email)


def get_entitlement(db: Session, email: str, now: Optional[datetime] = None) -> Optional[models.Subscriber]:
    """Current subscriber row for an email, with lazy reconciliation and expiry correction."""
    email = normalize_email(email)
    if not email:
        return None
    now = now or utcnow()

    subscriber = _find_subscriber(db, email)
    if subscriber is None:
        subscriber = _reconcile_from_ledger(db, email, now)
    if subscriber is not None:
        _apply_expiry(db, subscriber, now)
    return subscriber


def is_subscribed(db: Session, email: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return is_entitled(get_entitlement(db, email, now=now), now)
