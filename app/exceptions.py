class PaymentError(Exception):
    """Base class for failures raised by the payment and entitlement services."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ConfigurationError(PaymentError):
    """No usable provider, plan or secret. Operator misconfiguration, never retried."""

    status_code = 503


class InvalidRequest(PaymentError):
    status_code = 400


class PaymentNotFound(PaymentError):
    status_code = 404


class PaymentNotCompleted(InvalidRequest):
    def __init__(self, message: str = "", provider_status: str | None = None):
        super().__init__(message)
        self.provider_status = provider_status


class OrderMismatch(InvalidRequest):
    pass


class InvalidSignature(PaymentError):
    status_code = 401


class ProviderError(PaymentError):
    """A single gateway call failed (network error, non-2xx, malformed body)."""

    status_code = 502


class AllProvidersFailed(ProviderError):
    pass
