"""
STP Adapter — SPEI interbank transfers and utility bill payments.

Every SPEI request body is signed with the participant's RSA private key
(RSA-SHA256, PKCS#1 v1.5) and the base64 signature sent as ``X-Signature``.
The utility-payments API authenticates with an ``X-Api-Key`` header instead.
Webhooks carry an HMAC-SHA256 hex digest of ``"<stp-timestamp>.<raw body>"``
in ``stp-signature``.
"""
import base64
import json
import logging
import secrets
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from paycore.adapters.base import (
    ConfirmResult, HTTPProviderMixin, IntentResult, PaymentAdapter, RefundResult, WebhookEvent,
    format_amount, load_event, lower_headers,
)
from paycore.config import Settings
from paycore.exceptions import NotRefundable, ProviderAuthError, ProviderRejected
from paycore.services.state_machine import (
    CANCELLED, COMPLETED, FAILED, PROCESSING, REFUNDED,
)
from paycore.utils.hashing import constant_time_equals, hmac_sha256_hex

logger = logging.getLogger(__name__)

ACCOUNT_TYPE_CLABE = "40"
PAYMENT_TYPE_NORMAL = 1
DELIVERY_SPEI = 3
TRACKING_KEY_LENGTH = 30


def generate_tracking_key() -> str:
    """SPEI tracking key (clave de rastreo): 30 hex characters."""
    return secrets.token_hex(TRACKING_KEY_LENGTH // 2)


class STPAdapter(HTTPProviderMixin, PaymentAdapter):
    name = "stp"
    payment_methods = frozenset({"bank-transfer", "bill-payment"})
    refundable_methods = frozenset({"bank-transfer"})

    STATUS_MAP = {
        # SPEI order states
        "liquidado": COMPLETED,
        "liquidada": COMPLETED,
        "devolucion": REFUNDED,
        "devuelta": REFUNDED,
        "cancelado": CANCELLED,
        "cancelada": CANCELLED,
        "error": FAILED,
        "rechazado": FAILED,
        "rechazada": FAILED,
        "pendiente": PROCESSING,
        "enviada": PROCESSING,
        "en_proceso": PROCESSING,
        # Utility-payment states
        "pagado": COMPLETED,
        "aplicado": COMPLETED,
        "exitoso": COMPLETED,
        "reversado": REFUNDED,
        "fallido": FAILED,
    }

    EVENT_TYPE_MAP = {
        "payment.succeeded": COMPLETED,
        "payment.failed": FAILED,
        "payment.returned": REFUNDED,
        "payment.cancelled": CANCELLED,
    }

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.Client] = None,
        utility_client: Optional[httpx.Client] = None,
    ):
        self.institution = settings.STP_INSTITUTION
        self.account_number = settings.STP_ACCOUNT_NUMBER
        self.webhook_secret = settings.STP_WEBHOOK_SECRET
        self.utility_api_key = settings.STP_UTILITY_API_KEY
        self._private_key_source = settings.STP_PRIVATE_KEY
        self._private_key_passphrase = settings.STP_PRIVATE_KEY_PASSPHRASE
        self._private_key = None
        self._key_lock = threading.Lock()
        self._refund_window = timedelta(days=settings.STP_REFUND_WINDOW_DAYS)

        timeout = settings.PROVIDER_TIMEOUT_SECONDS
        self.client = self._build_client(settings.STP_API_URL, timeout, client)
        self.utility_client = self._build_client(settings.STP_UTILITY_API_URL, timeout, utility_client)

    @property
    def refund_window(self) -> timedelta:
        return self._refund_window

    # ── Signing ─────────────────────────────────────────────────────

    def _signing_key(self):
        with self._key_lock:
            if self._private_key is not None:
                return self._private_key
            source = self._private_key_source
            if not source or not self.institution:
                logger.critical("[stp] STP_PRIVATE_KEY / STP_INSTITUTION are not configured")
                raise ProviderAuthError("STP signing credentials are not configured", provider=self.name)

            pem = source.encode("utf-8") if "-----BEGIN" in source else Path(source).read_bytes()
            password = self._private_key_passphrase.encode("utf-8") if self._private_key_passphrase else None
            try:
                self._private_key = serialization.load_pem_private_key(pem, password=password)
            except (ValueError, TypeError) as e:
                logger.critical("[stp] Could not load the STP private key: %s", e)
                raise ProviderAuthError("STP private key could not be loaded", provider=self.name) from e
            return self._private_key

    def sign(self, body: bytes) -> str:
        signature = self._signing_key().sign(body, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    def _signed_post(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        # The exact bytes that are signed are the bytes that are sent
        body = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Signature": self.sign(body)}
        response = self._send(self.client, "POST", path, content=body, headers=headers)
        return response.json()

    def _utility_request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.utility_api_key:
            logger.critical("[stp] STP_UTILITY_API_KEY is not configured")
            raise ProviderAuthError("STP utility API key is not configured", provider=self.name)
        response = self._send(
            self.utility_client, method, path, json=json_body, headers={"X-Api-Key": self.utility_api_key},
        )
        return response.json()

    def _error_details(self, response: httpx.Response) -> tuple[Optional[str], str]:
        try:
            body = response.json()
        except ValueError:
            return None, response.text[:200]
        result = body.get("resultado") if isinstance(body, dict) else None
        if isinstance(result, dict):
            return str(result.get("id")), result.get("descripcion", "")
        return None, (body.get("mensaje") or body.get("message") or "") if isinstance(body, dict) else ""

    @staticmethod
    def _check_result(result: Dict[str, Any], action: str) -> Dict[str, Any]:
        """SPEI replies 200 with ``resultado.id <= 0`` when it refuses an order."""
        outcome = result.get("resultado") or {}
        order_id = outcome.get("id")
        if not isinstance(order_id, int) or order_id <= 0:
            raise ProviderRejected(
                outcome.get("descripcion") or f"STP rejected the {action}",
                provider="stp", provider_code=str(order_id),
            )
        return outcome

    # ── Contract ────────────────────────────────────────────────────

    def create_intent(self, purpose, amount, currency, billing_details, payment_method, idempotency_key=None):
        if payment_method == "bill-payment":
            return self._pay_utility_service(amount, billing_details)

        tracking_key = generate_tracking_key()
        data = {
            "empresa": self.institution,
            "institucionOperante": self.institution,
            "claveRastreo": tracking_key,
            "conceptoPago": f"Pago por {purpose.get('type')} - {purpose.get('itemId')}"[:40],
            "monto": format_amount(amount),
            "cuentaOrdenante": self.account_number,
            "nombreBeneficiario": billing_details.get("beneficiaryName"),
            "cuentaBeneficiario": billing_details.get("beneficiaryAccount"),
            "institucionContraparte": (billing_details.get("beneficiaryBank") or {}).get("code"),
            "referenciaNumerica": billing_details.get("reference"),
            "tipoCuentaBeneficiario": ACCOUNT_TYPE_CLABE,
            "tipoPago": PAYMENT_TYPE_NORMAL,
        }
        outcome = self._check_result(self._signed_post("/ordenPago", data), "payment order")
        logger.info("[stp] SPEI order %s registered with tracking key %s", outcome["id"], tracking_key)
        return IntentResult(
            external_payment_id=str(outcome["id"]),
            tracking_key=tracking_key,
            bank_reference=outcome.get("referencia"),
        )

    def _pay_utility_service(self, amount, billing_details) -> IntentResult:
        service_type = billing_details.get("serviceType")
        reference = billing_details.get("reference")

        validation = self._utility_request(
            "POST", "/validar-referencia", {"tipoServicio": service_type, "referencia": reference},
        )
        if not validation.get("esValida"):
            raise ProviderRejected("Invalid service reference", provider=self.name, provider_code="INVALID_REFERENCE")

        tracking_key = generate_tracking_key()
        paid = self._utility_request("POST", "/pagar-servicio", {
            "tipoServicio": service_type,
            "codigoConvenio": billing_details.get("agreementCode"),
            "referencia": reference,
            "monto": format_amount(amount),
            "fechaVencimiento": billing_details.get("dueDate"),
            "claveRastreo": tracking_key,
        })
        if not paid.get("exitoso"):
            raise ProviderRejected(paid.get("mensaje") or "STP rejected the service payment", provider=self.name)

        logger.info("[stp] Utility payment %s (%s) submitted", paid.get("idPago"), service_type)
        return IntentResult(
            external_payment_id=str(paid["idPago"]),
            tracking_key=tracking_key,
            bank_reference=paid.get("idOperacion"),
            raw_status=paid.get("estado"),
        )

    def confirm(self, external_payment_id, method_details, payment_method):
        # SPEI orders are dispatched at creation; confirming means asking where they are
        if payment_method == "bill-payment":
            detail = self._utility_request("GET", f"/estado-pago/{external_payment_id}")
            raw_status = detail.get("estado", "")
            charge_id = detail.get("idOperacion") or external_payment_id
        else:
            raw_status = self._spei_status(external_payment_id)
            charge_id = external_payment_id
        return ConfirmResult(external_charge_id=str(charge_id), raw_status=raw_status, status=self.map_status(raw_status))

    def _spei_status(self, external_payment_id: str) -> str:
        result = self._signed_post("/consultaOrden", {"empresa": self.institution, "id": external_payment_id})
        return (result.get("resultado") or {}).get("estado", "")

    def get_status(self, external_payment_id, payment_method):
        if payment_method == "bill-payment":
            detail = self._utility_request("GET", f"/estado-pago/{external_payment_id}")
            return self.map_status(detail.get("estado"))
        return self.map_status(self._spei_status(external_payment_id))

    def refund(self, external_charge_id, amount, reason, currency, payment_method):
        if payment_method == "bill-payment":
            raise NotRefundable("Utility bill payments cannot be refunded through STP")

        data = {
            "empresa": self.institution,
            "id": external_charge_id,
            "monto": format_amount(amount),
            "medioEntrega": DELIVERY_SPEI,
            "conceptoDevolucion": (reason or "Devolucion")[:40],
        }
        try:
            outcome = self._check_result(self._signed_post("/devolucion", data), "return")
        except ProviderRejected as e:
            raise NotRefundable(f"STP refused the return: {e.message}") from e

        logger.info("[stp] SPEI return %s requested for order %s", outcome["id"], external_charge_id)
        # Returns settle asynchronously through SPEI
        return RefundResult(external_refund_id=str(outcome["id"]), status="pending")

    # ── Network helpers ─────────────────────────────────────────────

    def get_banks_catalog(self) -> List[Dict[str, Any]]:
        response = self._send(self.client, "GET", "/catalogoBancos")
        return response.json().get("resultado") or []

    def validate_beneficiary_account(self, account_number: str, bank_code: str) -> Dict[str, Any]:
        result = self._signed_post("/validaCuenta", {
            "cuenta": account_number,
            "institucionContraparte": bank_code,
            "empresa": self.institution,
        })
        outcome = result.get("resultado") or {}
        return {"isValid": outcome.get("id") == 1, "details": outcome.get("descripcion")}

    # ── Webhooks ────────────────────────────────────────────────────

    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        if not self.webhook_secret:
            logger.error("[stp] STP_WEBHOOK_SECRET is not configured; rejecting webhook")
            return False
        h = lower_headers(headers)
        signature = h.get("stp-signature")
        timestamp = h.get("stp-timestamp")
        if not signature or not timestamp:
            return False
        expected = hmac_sha256_hex(self.webhook_secret, timestamp.encode("utf-8") + b"." + raw_body)
        return constant_time_equals(expected, signature)

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        event = load_event(raw_body)
        raw_status = event.get("estado")
        event_type = event.get("type") or f"estado.{raw_status or 'desconocido'}"

        if raw_status:
            status = self.map_status(raw_status)
        else:
            status = self.EVENT_TYPE_MAP.get(event_type, PROCESSING)

        external_id = event.get("id")
        return WebhookEvent(
            event_type=event_type,
            status=status,
            external_payment_id=str(external_id) if external_id is not None else None,
            tracking_key=event.get("claveRastreo") or event.get("trackingKey"),
            charge_id=event.get("operationId") or event.get("idOperacion"),
            payload=event,
        )

    def close(self) -> None:
        self.client.close()
        self.utility_client.close()
