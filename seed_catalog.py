"""
Seed default plans and a Razorpay provider row.
Reads RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET / RAZORPAY_WEBHOOK_SECRET from the environment.
Rows that already exist are left untouched, so this is safe to re-run.
"""
import logging
import os

from dotenv import load_dotenv

from app import models
from app.database import Base, SessionLocal, engine

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PLANS = (
    {"id": "trial", "name": "Trial", "price": 99, "period_days": 7},
    {"id": "starter", "name": "Starter", "price": 149, "period_days": 30},
    {"id": "popular", "name": "Popular", "price": 199, "period_days": 90},
)


def seed_plans(db) -> int:
    created = 0
    for plan in DEFAULT_PLANS:
        if db.query(models.Plan.id).filter(models.Plan.id == plan["id"]).first():
            continue
        db.add(models.Plan(**plan))
        created += 1
    return created


def seed_provider(db) -> bool:
    key_id = os.getenv("RAZORPAY_KEY_ID", "").strip()
    key_secret = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
    if not key_id or not key_secret:
        logger.warning("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET not set; skipping provider seed")
        return False

    existing = db.query(models.PaymentProvider).filter(models.PaymentProvider.api_key == key_id).first()
    if existing:
        return False

    has_primary = db.query(models.PaymentProvider.id).filter(
        models.PaymentProvider.is_primary.is_(True)
    ).first()
    db.add(
        models.PaymentProvider(
            name="Razorpay",
            type="razorpay",
            api_key=key_id,
            api_secret=key_secret,
            webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip() or None,
            is_primary=not has_primary,
            is_active=True,
        )
    )
    return True


def seed_catalog():
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        plans_created = seed_plans(db)
        provider_created = seed_provider(db)
        db.commit()
        logger.info("Seeded %s plan(s); provider created: %s", plans_created, provider_created)
    except Exception:
        db.rollback()
        logger.exception("Catalog seed failed")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    seed_catalog()
