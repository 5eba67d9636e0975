from datetime import datetime, timedelta

import pytest

from app import models
from app.database import SessionLocal
from app.entitlements import get_entitlement, is_subscribed, reconcile_payment

from conftest import add_payment, add_provider

T0 = datetime(2026, 3, 1, 12, 0, 0)
EMAIL = "viewer@example.com"


def _subscriber(db, email=EMAIL):
    db.expire_all()
    return db.query(models.Subscriber).filter(models.Subscriber.email == email).first()


def test_first_payment_creates_subscriber(db, weekly_plan):
    subscriber = reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)

    assert subscriber.subscribed is True
    assert subscriber.subscription_tier == "trial"
    assert subscriber.subscription_end == T0 + timedelta(days=7)


def test_renewal_stacks_on_remaining_time(db, weekly_plan):
    reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)
    reconcile_payment(db, EMAIL, "trial", 7, "pay_2", now=T0 + timedelta(days=3))

    assert _subscriber(db).subscription_end == T0 + timedelta(days=14)


def test_same_payment_applied_once(db, weekly_plan):
    first = reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)
    first_end = first.subscription_end

    second = reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0 + timedelta(days=1))

    assert second is None
    assert _subscriber(db).subscription_end == first_end
    assert db.query(models.AppliedPayment).count() == 1


def test_expired_entitlement_restarts_from_now(db, weekly_plan):
    reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)
    later = T0 + timedelta(days=20)

    reconcile_payment(db, EMAIL, "trial", 7, "pay_2", now=later)

    assert _subscriber(db).subscription_end == later + timedelta(days=7)


def test_unsubscribed_row_does_not_stack(db, weekly_plan):
    db.add(models.Subscriber(email=EMAIL, subscribed=False, subscription_end=T0 + timedelta(days=30)))
    db.commit()

    reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)

    assert _subscriber(db).subscription_end == T0 + timedelta(days=7)


def test_tier_follows_latest_payment(db, weekly_plan, plan):
    reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)
    reconcile_payment(db, EMAIL, "starter", 30, "pay_2", now=T0 + timedelta(days=1))

    subscriber = _subscriber(db)
    assert subscriber.subscription_tier == "starter"
    assert subscriber.subscription_end == T0 + timedelta(days=37)


def test_email_is_normalized(db, weekly_plan):
    reconcile_payment(db, "  Viewer@Example.COM ", "trial", 7, "pay_1", now=T0)

    assert _subscriber(db) is not None


@pytest.mark.parametrize(
    "email,plan_id,period_days,payment_id",
    [
        ("", "trial", 7, "pay_1"),
        (EMAIL, "", 7, "pay_1"),
        (EMAIL, "trial", 0, "pay_1"),
        (EMAIL, "trial", 7, ""),
    ],
)
def test_reconcile_rejects_incomplete_input(db, email, plan_id, period_days, payment_id):
    with pytest.raises(ValueError):
        reconcile_payment(db, email, plan_id, period_days, payment_id, now=T0)


def test_expired_row_reads_unsubscribed_and_is_corrected(db):
    db.add(
        models.Subscriber(
            email=EMAIL,
            subscribed=True,
            subscription_tier="trial",
            subscription_end=T0 - timedelta(minutes=1),
        )
    )
    db.commit()

    assert is_subscribed(db, EMAIL, now=T0) is False
    assert _subscriber(db).subscribed is False


def test_active_row_reads_subscribed(db, weekly_plan):
    reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0)

    assert is_subscribed(db, EMAIL, now=T0 + timedelta(days=6)) is True
    assert is_subscribed(db, EMAIL, now=T0 + timedelta(days=7)) is False


def test_unknown_email_is_not_subscribed(db):
    assert is_subscribed(db, "nobody@example.com", now=T0) is False
    assert get_entitlement(db, "", now=T0) is None


def test_reader_reconciles_from_successful_payment(db, weekly_plan):
    provider = add_provider(db)
    add_payment(db, provider, weekly_plan, status="paid", provider_payment_id="pay_9", created_at=T0)

    subscriber = get_entitlement(db, EMAIL, now=T0)

    assert subscriber.subscribed is True
    assert subscriber.subscription_end == T0 + timedelta(days=7)
    assert db.get(models.AppliedPayment, "pay_9") is not None


def test_reader_fallback_never_double_grants(db, weekly_plan):
    provider = add_provider(db)
    add_payment(db, provider, weekly_plan, status="paid", provider_payment_id="pay_9")
    reconcile_payment(db, EMAIL, "trial", 7, "pay_9", now=T0)
    db.query(models.Subscriber).delete()
    db.commit()

    assert get_entitlement(db, EMAIL, now=T0) is None


def test_reader_ignores_pending_payments(db, weekly_plan):
    provider = add_provider(db)
    add_payment(db, provider, weekly_plan, status="created")

    assert get_entitlement(db, EMAIL, now=T0) is None


def test_reader_fallback_counts_period_from_payment_time(db, weekly_plan):
    provider = add_provider(db)
    add_payment(
        db,
        provider,
        weekly_plan,
        status="paid",
        provider_payment_id="pay_9",
        created_at=T0 - timedelta(days=2),
    )

    subscriber = get_entitlement(db, EMAIL, now=T0)

    assert subscriber.subscription_end == T0 + timedelta(days=5)


def test_reader_fallback_skips_lapsed_payment(db, weekly_plan):
    provider = add_provider(db)
    add_payment(
        db,
        provider,
        weekly_plan,
        status="paid",
        provider_payment_id="pay_old",
        created_at=T0 - timedelta(days=365),
    )

    assert is_subscribed(db, EMAIL, now=T0) is False
    assert _subscriber(db) is None
    assert db.query(models.AppliedPayment).count() == 0


def test_concurrent_claim_loser_is_a_noop(db, weekly_plan, monkeypatch):
    real_get = db.get
    competitor = SessionLocal()

    def get_then_lose_race(entity, ident, **kwargs):
        found = real_get(entity, ident, **kwargs)
        if entity is models.AppliedPayment and found is None:
            # The other path commits its claim between our check and our insert.
            reconcile_payment(competitor, EMAIL, "trial", 7, ident, now=T0)
        return found

    monkeypatch.setattr(db, "get", get_then_lose_race)
    try:
        result = reconcile_payment(db, EMAIL, "trial", 7, "pay_1", now=T0 + timedelta(days=1))
    finally:
        competitor.close()

    assert result is None
    assert _subscriber(db).subscription_end == T0 + timedelta(days=7)
    assert db.query(models.AppliedPayment).count() == 1
