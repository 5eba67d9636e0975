import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.exceptions import InvalidRequest, InvalidSignature, PaymentError, PaymentNotCompleted
from app.services.checkout import create_checkout_session
from app.services.payment_verifier import verify_payment
from app.services.webhook_processor import process_webhook
from app.utils.payment_gateway import GatewayFactory, get_gateway_factory

router = APIRouter(tags=["payments"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("X-Signature", "X-Razorpay-Signature")


def _http_error(exc: PaymentError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


@router.post("/checkout", response_model=schemas.CheckoutResponse, response_model_exclude_none=True)
def create_checkout(
    payload: schemas.CheckoutRequest,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
):
    try:
        return create_checkout_session(db, payload, gateway_factory=gateway_factory)
    except PaymentError as exc:
        db.rollback()
        raise _http_error(exc)


@router.post("/webhook/payments")
async def payments_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = ""
    for header in SIGNATURE_HEADERS:
        signature = (request.headers.get(header) or "").strip()
        if signature:
            break

    try:
        return process_webhook(db, body, signature or None)
    except InvalidSignature as exc:
        raise _http_error(exc)
    except InvalidRequest as exc:
        raise _http_error(exc)
    except (PaymentError, SQLAlchemyError, ValueError):
        db.rollback()
        logger.exception("Webhook processing failed; gateway will redeliver")
        raise HTTPException(status_code=500, detail="Webhook processing failed.")


@router.post("/verify-payment", response_model=schemas.VerifyPaymentResponse, response_model_exclude_none=True)
def verify_payment_endpoint(
    payload: schemas.VerifyPaymentRequest,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
):
    try:
        return verify_payment(db, payload, gateway_factory=gateway_factory)
    except PaymentNotCompleted as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail={"error": exc.message, "status": exc.provider_status})
    except PaymentError as exc:
        db.rollback()
        if exc.status_code >= 500:
            logger.error("Payment verification failed: %s", exc.message)
            raise HTTPException(status_code=500, detail=f"Payment verification failed: {exc.message}")
        raise _http_error(exc)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Database error during payment verification")
        raise HTTPException(status_code=500, detail="Payment verification failed.")
