"""
PayPal Adapter — wallet checkout through the Orders v2 API.

Auth is OAuth2 client-credentials; the access token is cached inside the
adapter and refreshed shortly before it expires. Webhooks are verified
offline against the pinned PayPal certificate: RSA-SHA256 over
``"<transmission id>|<transmission time>|<webhook id>|<crc32(body)>"``.
"""
import base64
import logging
import threading
import time
import zlib
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from paycore.adapters.base import (
    ConfirmResult, HTTPProviderMixin, IntentResult, PaymentAdapter, RefundResult, WebhookEvent,
    format_amount, json_object, load_event, lower_headers,
)
from paycore.config import Settings
from paycore.exceptions import NotRefundable, ProviderAuthError, ProviderRejected
from paycore.services.state_machine import (
    CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING, REFUNDED,
)

logger = logging.getLogger(__name__)

# Refresh the token this many seconds before PayPal says it expires
TOKEN_EXPIRY_MARGIN = 60


class PayPalAdapter(HTTPProviderMixin, PaymentAdapter):
    name = "paypal"
    payment_methods = frozenset({"wallet"})
    refundable_methods = frozenset({"wallet"})

    # Order and capture statuses share one vocabulary here
    STATUS_MAP = {
        "created": PENDING,
        "saved": PENDING,
        "approved": PROCESSING,
        "payer_action_required": PROCESSING,
        "pending": PROCESSING,
        "completed": COMPLETED,
        "partially_refunded": COMPLETED,
        "declined": FAILED,
        "failed": FAILED,
        "voided": CANCELLED,
        "refunded": REFUNDED,
    }

    EVENT_STATUS_MAP = {
        "CHECKOUT.ORDER.APPROVED": PROCESSING,
        "CHECKOUT.ORDER.COMPLETED": COMPLETED,
        "CHECKOUT.ORDER.VOIDED": CANCELLED,
        "PAYMENT.CAPTURE.PENDING": PROCESSING,
        "PAYMENT.CAPTURE.COMPLETED": COMPLETED,
        "PAYMENT.CAPTURE.DENIED": FAILED,
        "PAYMENT.CAPTURE.DECLINED": FAILED,
    }

    # Refund events carry the refund, not the capture, so they cannot tell a
    # partial refund from a full one. They are recorded without a status change.
    INFORMATIONAL_EVENTS = {"PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"}

    REFUND_STATUS_MAP = {
        "COMPLETED": "completed",
        "PENDING": "pending",
        "FAILED": "failed",
        "CANCELLED": "failed",
    }

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.client_id = settings.PAYPAL_CLIENT_ID
        self.client_secret = settings.PAYPAL_CLIENT_SECRET
        self.webhook_id = settings.PAYPAL_WEBHOOK_ID
        self.brand_name = settings.PAYPAL_BRAND_NAME
        self.return_url = settings.PAYPAL_RETURN_URL
        self.cancel_url = settings.PAYPAL_CANCEL_URL
        self._refund_window = timedelta(days=settings.PAYPAL_REFUND_WINDOW_DAYS)
        self._verification_key = self._load_verification_key(settings.PAYPAL_WEBHOOK_CERT)

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

        self.client = self._build_client(settings.PAYPAL_API_URL, settings.PROVIDER_TIMEOUT_SECONDS, client)

    @property
    def refund_window(self) -> timedelta:
        return self._refund_window

    @staticmethod
    def _load_verification_key(pem: str):
        if not pem:
            return None
        data = pem.encode("utf-8")
        if b"BEGIN CERTIFICATE" in data:
            return x509.load_pem_x509_certificate(data).public_key()
        return serialization.load_pem_public_key(data)

    # ── Auth ────────────────────────────────────────────────────────

    def _access_token(self) -> str:
        """Return a cached access token, fetching a new one when it is about to expire."""
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            if not self.client_id or not self.client_secret:
                logger.critical("[paypal] PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET are not configured")
                raise ProviderAuthError("PayPal credentials are not configured", provider=self.name)

            response = self._send(
                self.client, "POST", "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
            body = response.json()
            self._token = body["access_token"]
            expires_in = int(body.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            logger.debug("[paypal] Access token refreshed, valid for %ss", expires_in)
            return self._token

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None,
                 request_id: Optional[str] = None) -> Dict[str, Any]:
        for attempt in (1, 2):
            headers = {
                "Authorization": f"Bearer {self._access_token()}",
                "Content-Type": "application/json",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id
            try:
                response = self._send(self.client, method, path, json=json_body, headers=headers)
            except ProviderAuthError:
                # Token revoked early; fetch a fresh one once before giving up
                if attempt == 2:
                    raise
                self._invalidate_token()
                continue
            return response.json() if response.content else {}
        return {}

    def _error_details(self, response: httpx.Response) -> tuple[Optional[str], str]:
        try:
            body = response.json()
        except ValueError:
            return None, response.text[:200]
        details = body.get("details") or []
        issue = details[0].get("issue") if details else None
        return issue or body.get("name") or body.get("error"), body.get("message") or body.get("error_description", "")

    # ── Contract ────────────────────────────────────────────────────

    def create_intent(self, purpose, amount, currency, billing_details, payment_method, idempotency_key=None):
        value = format_amount(amount)
        order = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": idempotency_key or purpose.get("itemId"),
                "custom_id": idempotency_key,
                "description": f"Pago por {purpose.get('type')} - {purpose.get('itemId')}",
                "amount": {"currency_code": currency.upper(), "value": value},
            }],
            "application_context": {
                "brand_name": self.brand_name,
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": self.return_url or None,
                "cancel_url": self.cancel_url or None,
            },
        }
        created = self._request("POST", "/v2/checkout/orders", json_body=order, request_id=idempotency_key)
        approve_url = next(
            (link["href"] for link in created.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("[paypal] Order created: %s", created["id"])
        return IntentResult(
            external_payment_id=created["id"],
            client_secret=approve_url,
            raw_status=created.get("status"),
        )

    def confirm(self, external_payment_id, method_details, payment_method):
        try:
            order = self._request(
                "POST", f"/v2/checkout/orders/{external_payment_id}/capture",
                json_body={}, request_id=f"capture-{external_payment_id}",
            )
        except ProviderRejected as e:
            if e.provider_code != "ORDER_ALREADY_CAPTURED":
                raise
            logger.info("[paypal] Order %s already captured, returning existing capture", external_payment_id)
            order = self._request("GET", f"/v2/checkout/orders/{external_payment_id}")

        capture = self._first_capture(order)
        raw_status = (capture or {}).get("status") or order.get("status", "")
        return ConfirmResult(
            external_charge_id=(capture or {}).get("id"),
            raw_status=raw_status,
            status=self.map_status(raw_status),
        )

    @staticmethod
    def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in order.get("purchase_units", []):
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    def get_status(self, external_payment_id, payment_method):
        order = self._request("GET", f"/v2/checkout/orders/{external_payment_id}")
        capture = self._first_capture(order)
        return self.map_status((capture or {}).get("status") or order.get("status"))

    def refund(self, external_charge_id, amount, reason, currency, payment_method):
        body = {
            "amount": {"currency_code": currency.upper(), "value": format_amount(amount)},
            "note_to_payer": reason or "Reembolso solicitado",
        }
        try:
            refund = self._request("POST", f"/v2/payments/captures/{external_charge_id}/refund", json_body=body)
        except ProviderRejected as e:
            raise NotRefundable(f"PayPal refused the refund: {e.message}") from e

        logger.info("[paypal] Refund processed: %s", refund["id"])
        return RefundResult(
            external_refund_id=refund["id"],
            status=self.REFUND_STATUS_MAP.get(refund.get("status", ""), "pending"),
        )

    # ── Webhooks ────────────────────────────────────────────────────

    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        if self._verification_key is None or not self.webhook_id:
            logger.error("[paypal] Webhook certificate or webhook id not configured; rejecting webhook")
            return False

        h = lower_headers(headers)
        transmission_id = h.get("paypal-transmission-id")
        transmission_time = h.get("paypal-transmission-time")
        signature = h.get("paypal-transmission-sig")
        if not (transmission_id and transmission_time and signature):
            return False

        message = f"{transmission_id}|{transmission_time}|{self.webhook_id}|{zlib.crc32(raw_body)}"
        try:
            self._verification_key.verify(
                base64.b64decode(signature),
                message.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (CryptoInvalidSignature, ValueError):
            return False
        return True

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        event = load_event(raw_body)
        event_type = event.get("event_type", "")
        resource = json_object(event.get("resource"))
        related = json_object(json_object(resource.get("supplementary_data")).get("related_ids"))

        if event_type.startswith("CHECKOUT.ORDER."):
            external_payment_id = resource.get("id")
            charge_id = None
        else:
            external_payment_id = related.get("order_id")
            charge_id = related.get("capture_id")
            if charge_id is None and event_type.startswith("PAYMENT.CAPTURE.") \
                    and event_type not in self.INFORMATIONAL_EVENTS:
                charge_id = resource.get("id")

        if event_type in self.INFORMATIONAL_EVENTS:
            status = None
        else:
            status = self.EVENT_STATUS_MAP.get(event_type, PROCESSING)

        return WebhookEvent(
            event_type=event_type,
            status=status,
            external_payment_id=external_payment_id,
            charge_id=charge_id,
            payload=event,
        )

    def close(self) -> None:
        self.client.close()
