"""
Provider Adapter Contract — the fixed interface every payment network integration implements.

The orchestrator and reconciler only ever talk to ``PaymentAdapter``; request
signing, auth tokens, field names and native status vocabularies stay inside
the concrete adapter.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from paycore.exceptions import ProviderAuthError, ProviderRejected, ProviderUnavailable
from paycore.services.state_machine import PROCESSING

logger = logging.getLogger(__name__)


@dataclass
class IntentResult:
    external_payment_id: str
    tracking_key: Optional[str] = None
    client_secret: Optional[str] = None
    bank_reference: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class ConfirmResult:
    external_charge_id: Optional[str]
    raw_status: str
    status: str


@dataclass
class RefundResult:
    external_refund_id: str
    status: str  # pending | completed | failed


@dataclass
class WebhookEvent:
    """A verified provider event reduced to what reconciliation needs."""

    event_type: str
    status: Optional[str]
    external_payment_id: Optional[str] = None
    tracking_key: Optional[str] = None
    charge_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class PaymentAdapter(ABC):
    """One payment network behind the canonical payment lifecycle."""

    name: str = ""
    payment_methods: frozenset = frozenset()
    refundable_methods: frozenset = frozenset()

    # Native status -> canonical status. Anything missing maps to processing.
    STATUS_MAP: Dict[str, str] = {}

    @abstractmethod
    def create_intent(
        self,
        purpose: Mapping[str, str],
        amount: Decimal,
        currency: str,
        billing_details: Mapping[str, Any],
        payment_method: str,
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        raise NotImplementedError

    @abstractmethod
    def confirm(
        self, external_payment_id: str, method_details: Mapping[str, Any], payment_method: str
    ) -> ConfirmResult:
        """Confirm or capture the intent. Confirming twice returns the first result."""
        raise NotImplementedError

    @abstractmethod
    def get_status(self, external_payment_id: str, payment_method: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def refund(
        self,
        external_charge_id: str,
        amount: Decimal,
        reason: str,
        currency: str,
        payment_method: str,
    ) -> RefundResult:
        raise NotImplementedError

    @abstractmethod
    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Pure check of webhook authenticity. Must not raise on bad input."""
        raise NotImplementedError

    @abstractmethod
    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        raise NotImplementedError

    @property
    @abstractmethod
    def refund_window(self) -> timedelta:
        raise NotImplementedError

    def map_status(self, raw_status: Optional[str]) -> str:
        """Total mapping of a native status; unknown values default to processing."""
        if raw_status is None:
            return PROCESSING
        status = self.STATUS_MAP.get(str(raw_status).strip().lower())
        if status is None:
            logger.warning("[%s] Unmapped provider status %r treated as processing", self.name, raw_status)
            return PROCESSING
        return status

    def supports_refunds(self, payment_method: str) -> bool:
        return payment_method in self.refundable_methods

    def close(self) -> None:
        pass


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def load_event(raw_body: bytes) -> Dict[str, Any]:
    """Decode a webhook body; anything but a JSON object is a ValueError."""
    event = json.loads(raw_body)
    if not isinstance(event, dict):
        raise ValueError(f"Webhook body is a JSON {type(event).__name__}, not an object")
    return event


def json_object(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class HTTPProviderMixin:
    """Shared httpx plumbing: bounded timeouts and error-taxonomy mapping."""

    name: str = ""

    def _build_client(self, base_url: str, timeout: float, client: Optional[httpx.Client]) -> httpx.Client:
        if client is not None:
            return client
        return httpx.Client(base_url=base_url, timeout=httpx.Timeout(timeout))

    def _send(self, client: httpx.Client, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request and translate transport/status failures.

        Timeouts and connection problems become ``ProviderUnavailable``: the
        request may or may not have reached the provider, so callers must not
        treat them as a decline.
        """
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("[%s] %s %s timed out", self.name, method, url)
            raise ProviderUnavailable(f"{self.name} request timed out", provider=self.name) from e
        except httpx.TransportError as e:
            logger.warning("[%s] %s %s transport error: %s", self.name, method, url, e)
            raise ProviderUnavailable(f"Could not reach {self.name}", provider=self.name) from e

        if response.is_success:
            return response

        code, message = self._error_details(response)
        if response.status_code in (401, 403):
            logger.critical("[%s] Authentication refused (%s): %s", self.name, response.status_code, message)
            raise ProviderAuthError(f"{self.name} rejected the integration credentials", provider=self.name, provider_code=code)
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(message or f"{self.name} is unavailable", provider=self.name, provider_code=code)
        raise ProviderRejected(message or f"{self.name} rejected the request", provider=self.name, provider_code=code)

    def _error_details(self, response: httpx.Response) -> tuple[Optional[str], str]:
        """Extract (provider error code, message) from an error response."""
        try:
            body = response.json()
        except ValueError:
            return None, response.text[:200]
        if isinstance(body, dict):
            return body.get("code"), body.get("message", "")
        return None, ""


def format_amount(amount: Decimal) -> str:
    """Major-unit amount with exactly two decimals (e.g. "1000.00")."""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: Decimal) -> int:
    """Major-unit amount to integer cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
