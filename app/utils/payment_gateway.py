"""
Payment gateway REST clients.

Each gateway instance is bound to one PaymentProvider row; credentials are
passed in at construction and never stored at module level.
"""
import hashlib
import hmac
import logging
import os
import re
from typing import Any, Callable, Dict, Optional

import requests
from pydantic import ValidationError

from app import models, schemas
from app.exceptions import ProviderError

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/")


def _http_timeout_seconds() -> float:
    raw = os.getenv("PROVIDER_HTTP_TIMEOUT_SECONDS", "15").strip()
    try:
        timeout = float(raw)
        if timeout <= 0:
            raise ValueError
        return timeout
    except ValueError:
        return 15.0


def normalize_currency(raw_currency: Optional[str]) -> str:
    currency = (raw_currency or "INR").strip().upper()
    if not re.fullmatch(r"[A-Z]{3}", currency):
        return "INR"
    return currency


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: bytes, provided_signature: Optional[str]) -> bool:
    if not provided_signature:
        return False
    expected_signature = hmac_sha256_hex(secret, message)
    return hmac.compare_digest(expected_signature, provided_signature.strip())


class RazorpayGateway:
    provider_type = "razorpay"

    def __init__(self, key_id: str, key_secret: str, provider_name: str = "razorpay", api_base: Optional[str] = None):
        self.key_id = (key_id or "").strip()
        self.key_secret = (key_secret or "").strip()
        self.provider_name = provider_name
        self.api_base = (api_base or RAZORPAY_API_BASE).rstrip("/")

    @classmethod
    def from_provider(cls, provider: models.PaymentProvider) -> "RazorpayGateway":
        return cls(key_id=provider.api_key, key_secret=provider.api_secret, provider_name=provider.name)

    @property
    def publishable_key(self) -> str:
        return self.key_id

    def _request(
        self,
        method: str,
        path: str,
        json_payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method=method.upper(),
                url=url,
                auth=(self.key_id, self.key_secret),
                json=json_payload,
                timeout=_http_timeout_seconds(),
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to contact {self.provider_name}: {exc}")

        if response.status_code >= 400:
            logger.warning(
                "Gateway call failed provider=%s method=%s path=%s status=%s body=%s",
                self.provider_name,
                method.upper(),
                path,
                response.status_code,
                (response.text or "")[:500],
            )
            raise ProviderError(f"{self.provider_name} returned HTTP {response.status_code} for {path}")

        try:
            payload = response.json()
        except ValueError:
            raise ProviderError(f"Invalid response received from {self.provider_name}.")

        if not isinstance(payload, dict):
            raise ProviderError(f"Unexpected response format from {self.provider_name}.")
        return payload

    @staticmethod
    def _parse(model, payload: Dict[str, Any]):
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ProviderError(f"Malformed gateway response: {exc.errors()[:1]}")

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> schemas.GatewayOrder:
        payload = {
            "amount": int(amount),
            "currency": normalize_currency(currency),
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes or {},
        }
        return self._parse(schemas.GatewayOrder, self._request("POST", "/orders", json_payload=payload))

    def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> schemas.GatewaySubscription:
        payload: Dict[str, Any] = {
            "plan_id": plan_id,
            "total_count": int(total_count),
            "customer_notify": 1,
            "notes": notes or {},
        }
        if customer_email:
            payload["customer"] = {"name": customer_name or "", "email": customer_email}
        return self._parse(
            schemas.GatewaySubscription,
            self._request("POST", "/subscriptions", json_payload=payload),
        )

    def fetch_payment(self, payment_id: str) -> schemas.GatewayPayment:
        return self._parse(schemas.GatewayPayment, self._request("GET", f"/payments/{payment_id}"))

    def capture_payment(self, payment_id: str, amount: int, currency: str) -> schemas.GatewayPayment:
        payload = {"amount": int(amount), "currency": normalize_currency(currency)}
        return self._parse(
            schemas.GatewayPayment,
            self._request("POST", f"/payments/{payment_id}/capture", json_payload=payload),
        )

    def checkout_signature_valid(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        signed_payload = f"{order_id}|{payment_id}".encode("utf-8")
        return signature_matches(self.key_secret, signed_payload, signature)


GATEWAY_TYPES: Dict[str, Callable[[models.PaymentProvider], RazorpayGateway]] = {
    "razorpay": RazorpayGateway.from_provider,
}

GatewayFactory = Callable[[models.PaymentProvider], RazorpayGateway]


def is_supported_provider(provider: models.PaymentProvider) -> bool:
    return (provider.type or "").strip().lower() in GATEWAY_TYPES


def build_gateway(provider: models.PaymentProvider) -> RazorpayGateway:
    builder = GATEWAY_TYPES.get((provider.type or "").strip().lower())
    if builder is None:
        raise ProviderError(f"Provider type {provider.type} is not supported.")
    return builder(provider)


def get_gateway_factory() -> GatewayFactory:
    """FastAPI dependency; tests override it with a fake factory."""
    return build_gateway
