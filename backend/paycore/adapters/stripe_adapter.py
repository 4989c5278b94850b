"""
Stripe Adapter — card and OXXO cash-voucher payments through Stripe PaymentIntents.

Auth is a bearer secret key. Webhooks are signed with ``Stripe-Signature``
(``t=<unix>,v1=<hex hmac>``) over ``"<t>.<raw body>"``.
"""
import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from paycore.adapters.base import (
    ConfirmResult, HTTPProviderMixin, IntentResult, PaymentAdapter, RefundResult, WebhookEvent,
    json_object, load_event, lower_headers, to_minor_units,
)
from paycore.config import Settings
from paycore.exceptions import NotRefundable, ProviderAuthError, ProviderRejected
from paycore.services.state_machine import (
    CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING, REFUNDED,
)
from paycore.utils.hashing import constant_time_equals, hmac_sha256_hex

logger = logging.getLogger(__name__)

# Intents in these states were already confirmed; confirming again is a no-op.
_CONFIRMED_STATES = {"processing", "requires_capture", "succeeded", "canceled"}


class StripeAdapter(HTTPProviderMixin, PaymentAdapter):
    name = "stripe"
    payment_methods = frozenset({"card", "cash-voucher"})
    refundable_methods = frozenset({"card"})

    STATUS_MAP = {
        "requires_payment_method": PENDING,
        "requires_confirmation": PENDING,
        "requires_action": PROCESSING,
        "processing": PROCESSING,
        "requires_capture": PROCESSING,
        "succeeded": COMPLETED,
        "canceled": CANCELLED,
    }

    EVENT_STATUS_MAP = {
        "payment_intent.created": PENDING,
        "payment_intent.processing": PROCESSING,
        "payment_intent.requires_action": PROCESSING,
        "payment_intent.amount_capturable_updated": PROCESSING,
        "payment_intent.succeeded": COMPLETED,
        "payment_intent.payment_failed": FAILED,
        "payment_intent.canceled": CANCELLED,
        "charge.succeeded": COMPLETED,
    }

    REFUND_STATUS_MAP = {
        "succeeded": "completed",
        "pending": "pending",
        "requires_action": "pending",
        "failed": "failed",
        "canceled": "failed",
    }

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.secret_key = settings.STRIPE_SECRET_KEY
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        self.voucher_expiry_days = settings.CASH_VOUCHER_EXPIRES_AFTER_DAYS
        self._refund_window = timedelta(days=settings.STRIPE_REFUND_WINDOW_DAYS)
        self._clock = clock
        self.client = self._build_client(settings.STRIPE_API_URL, settings.PROVIDER_TIMEOUT_SECONDS, client)

    @property
    def refund_window(self) -> timedelta:
        return self._refund_window

    # ── HTTP ────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.secret_key:
            logger.critical("[stripe] STRIPE_SECRET_KEY is not configured")
            raise ProviderAuthError("Stripe credentials are not configured", provider=self.name)

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        response = self._send(self.client, method, path, data=data, headers=headers)
        return response.json()

    def _error_details(self, response: httpx.Response) -> tuple[Optional[str], str]:
        try:
            error = response.json().get("error", {})
        except (ValueError, AttributeError):
            return None, response.text[:200]
        return error.get("code") or error.get("type"), error.get("message", "")

    # ── Contract ────────────────────────────────────────────────────

    def create_intent(self, purpose, amount, currency, billing_details, payment_method, idempotency_key=None):
        data: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "payment_method_types[]": "oxxo" if payment_method == "cash-voucher" else "card",
            "description": f"Pago por {purpose.get('type')} - {purpose.get('itemId')}",
            "metadata[purposeType]": purpose.get("type", ""),
            "metadata[itemId]": purpose.get("itemId", ""),
            "metadata[integration_check]": "payments_api",
        }
        if idempotency_key:
            data["metadata[paymentId]"] = idempotency_key
        if billing_details.get("email"):
            data["receipt_email"] = billing_details["email"]
        if payment_method == "cash-voucher":
            data["payment_method_options[oxxo][expires_after_days]"] = self.voucher_expiry_days

        intent = self._request("POST", "/v1/payment_intents", data=data, idempotency_key=idempotency_key)
        logger.info("[stripe] Payment intent created: %s", intent["id"])
        return IntentResult(
            external_payment_id=intent["id"],
            client_secret=intent.get("client_secret"),
            raw_status=intent.get("status"),
        )

    def confirm(self, external_payment_id, method_details, payment_method):
        intent = self._request("GET", f"/v1/payment_intents/{external_payment_id}")
        if intent.get("status") in _CONFIRMED_STATES:
            logger.info("[stripe] Intent %s already confirmed (%s)", external_payment_id, intent["status"])
            return self._confirm_result(intent)

        data: Dict[str, Any] = {}
        if method_details.get("paymentMethod"):
            data["payment_method"] = method_details["paymentMethod"]
        elif payment_method == "cash-voucher":
            data["payment_method_data[type]"] = "oxxo"
            data["payment_method_data[billing_details][name]"] = method_details.get("name", "")
            data["payment_method_data[billing_details][email]"] = method_details.get("email", "")
        if method_details.get("returnUrl"):
            data["return_url"] = method_details["returnUrl"]

        try:
            intent = self._request(
                "POST", f"/v1/payment_intents/{external_payment_id}/confirm", data=data,
            )
        except ProviderRejected as e:
            # A concurrent confirm may have won the race
            if e.provider_code != "payment_intent_unexpected_state":
                raise
            intent = self._request("GET", f"/v1/payment_intents/{external_payment_id}")
            if intent.get("status") not in _CONFIRMED_STATES:
                raise
        logger.info("[stripe] Payment intent confirmed: %s (%s)", intent["id"], intent.get("status"))
        return self._confirm_result(intent)

    def _confirm_result(self, intent: Dict[str, Any]) -> ConfirmResult:
        charge = intent.get("latest_charge")
        if isinstance(charge, dict):
            charge = charge.get("id")
        raw_status = intent.get("status", "")
        return ConfirmResult(external_charge_id=charge, raw_status=raw_status, status=self.map_status(raw_status))

    def get_status(self, external_payment_id, payment_method):
        intent = self._request("GET", f"/v1/payment_intents/{external_payment_id}")
        return self.map_status(intent.get("status"))

    def refund(self, external_charge_id, amount, reason, currency, payment_method):
        data = {
            "charge": external_charge_id,
            "amount": to_minor_units(amount),
            "reason": "requested_by_customer",
            "metadata[reason]": reason,
        }
        try:
            refund = self._request("POST", "/v1/refunds", data=data)
        except ProviderRejected as e:
            raise NotRefundable(f"Stripe refused the refund: {e.message}") from e

        logger.info("[stripe] Refund processed: %s", refund["id"])
        return RefundResult(
            external_refund_id=refund["id"],
            status=self.REFUND_STATUS_MAP.get(refund.get("status", ""), "pending"),
        )

    # ── Webhooks ────────────────────────────────────────────────────

    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        if not self.webhook_secret:
            logger.error("[stripe] STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
            return False

        header = lower_headers(headers).get("stripe-signature", "")
        timestamp = None
        signatures = []
        for item in header.split(","):
            key, _, value = item.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            return False

        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        if abs(self._clock() - signed_at) > self.tolerance:
            return False

        expected = hmac_sha256_hex(self.webhook_secret, timestamp.encode("utf-8") + b"." + raw_body)
        return any(constant_time_equals(expected, candidate) for candidate in signatures)

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        event = load_event(raw_body)
        event_type = event.get("type", "")
        obj = json_object(json_object(event.get("data")).get("object"))

        if obj.get("object") == "charge":
            external_payment_id = obj.get("payment_intent")
            charge_id = obj.get("id")
        else:
            external_payment_id = obj.get("id")
            charge_id = obj.get("latest_charge")
            if isinstance(charge_id, dict):
                charge_id = charge_id.get("id")

        if event_type == "charge.refunded":
            status = REFUNDED if obj.get("refunded") else COMPLETED
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
