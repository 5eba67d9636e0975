from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.entitlements import get_entitlement, is_entitled, normalize_email, utcnow

router = APIRouter(prefix="/subscribers", tags=["subscribers"])


@router.get("/{email}", response_model=schemas.EntitlementResponse)
def read_entitlement(email: str, db: Session = Depends(get_db)):
    """Entitlement for one email; expired rows report subscribed=false."""
    now = utcnow()
    subscriber = get_entitlement(db, email, now=now)
    if subscriber is None:
        return schemas.EntitlementResponse(email=normalize_email(email), subscribed=False)
    return schemas.EntitlementResponse(
        email=subscriber.email,
        subscribed=is_entitled(subscriber, now),
        subscription_tier=subscriber.subscription_tier,
        subscription_end=subscriber.subscription_end,
    )
