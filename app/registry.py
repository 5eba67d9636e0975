"""Read-only lookups for plans and payment providers."""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app import models
from app.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def active_providers(db: Session) -> List[models.PaymentProvider]:
    """Active providers, primary first, then newest first.

    Raises ConfigurationError when none is active. Credential completeness is
    left to the caller so it can log which provider it skipped.
    """
    providers = (
        db.query(models.PaymentProvider)
        .filter(models.PaymentProvider.is_active.is_(True))
        .order_by(
            models.PaymentProvider.is_primary.desc(),
            models.PaymentProvider.created_at.desc(),
            models.PaymentProvider.id.desc(),
        )
        .all()
    )
    if not providers:
        raise ConfigurationError("No active payment providers are configured.")
    return providers


def primary_provider(db: Session) -> Optional[models.PaymentProvider]:
    return (
        db.query(models.PaymentProvider)
        .filter(
            models.PaymentProvider.is_primary.is_(True),
            models.PaymentProvider.is_active.is_(True),
        )
        .order_by(models.PaymentProvider.id.desc())
        .first()
    )


def provider_by_id(db: Session, provider_id: Optional[int]) -> Optional[models.PaymentProvider]:
    if provider_id is None:
        return None
    return db.query(models.PaymentProvider).filter(models.PaymentProvider.id == provider_id).first()


def plan_by_id(db: Session, plan_id: str) -> models.Plan:
    normalized_id = (plan_id or "").strip()
    plan = None
    if normalized_id:
        plan = db.query(models.Plan).filter(models.Plan.id == normalized_id).first()
    if not plan:
        raise ConfigurationError(f"Plan {normalized_id or '<empty>'} not found.")
    if not plan.period_days or plan.period_days <= 0:
        raise ConfigurationError(f"Plan {plan.id} has no valid period_days.")
    return plan


def list_plans(db: Session) -> List[models.Plan]:
    return db.query(models.Plan).order_by(models.Plan.price.asc(), models.Plan.id.asc()).all()
