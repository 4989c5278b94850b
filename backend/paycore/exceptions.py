"""
Payment Errors — Canonical error taxonomy shared by adapters, services and routes.

Every error carries the HTTP status it maps to, a stable error code and
whether the whole operation is safe to retry.
"""
from typing import Dict, List, Optional


class PaymentError(Exception):
    """Base class for all payment-core errors."""

    status_code: int = 500
    error_code: str = "PAYMENT_ERROR"
    retryable: bool = False

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict:
        body = {"detail": self.message, "error_code": self.error_code, "retryable": self.retryable}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(PaymentError):
    """The caller's request is malformed. Carries a field-level detail list."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFound(PaymentError):
    status_code = 404
    error_code = "NOT_FOUND"


class AlreadyTerminal(PaymentError):
    status_code = 409
    error_code = "ALREADY_TERMINAL"


class InvalidPaymentState(PaymentError):
    status_code = 409
    error_code = "INVALID_PAYMENT_STATE"


class NotRefundable(PaymentError):
    status_code = 409
    error_code = "NOT_REFUNDABLE"


class RefundInProgress(PaymentError):
    status_code = 409
    error_code = "REFUND_IN_PROGRESS"
    retryable = True


class InvalidSignature(PaymentError):
    status_code = 400
    error_code = "INVALID_SIGNATURE"


class ConcurrentUpdateError(PaymentError):
    status_code = 503
    error_code = "CONCURRENT_UPDATE"
    retryable = True


class ProviderError(PaymentError):
    """Base class for failures reported by (or talking to) a payment provider."""

    status_code = 502
    error_code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str = "", provider_code: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.provider_code = provider_code


class ProviderRejected(ProviderError):
    """The provider declined this specific request. Do not retry as-is."""

    status_code = 402
    error_code = "PROVIDER_REJECTED"


class ProviderUnavailable(ProviderError):
    """Transient network or provider fault, including timeouts."""

    status_code = 503
    error_code = "PROVIDER_UNAVAILABLE"
    retryable = True


class ProviderAuthError(ProviderError):
    """Integration credentials are missing or refused. Fatal to the deployment."""

    status_code = 502
    error_code = "PROVIDER_AUTH_ERROR"
