"""
Tests for the STP adapter: signed SPEI orders, utility payments, returns and webhooks.
"""
import base64
import json
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from conftest import BANK_TRANSFER_DETAILS, stp_signature_headers, to_body
from paycore.adapters.stp_adapter import STPAdapter, generate_tracking_key
from paycore.exceptions import NotRefundable, ProviderAuthError, ProviderRejected

PURPOSE = {"type": "subscription", "itemId": "plan-anual"}

BILL_DETAILS = {"serviceType": "CFE", "agreementCode": "123456", "reference": "RPU-998877", "dueDate": "2024-07-01"}


class TestSpeiOrders:
    def test_order_body_is_signed(self, stp_adapter, stp_api, stp_key):
        stp_api.on("POST", "/ordenPago", (200, {"resultado": {"id": 9876, "referencia": "1234567"}}))
        intent = stp_adapter.create_intent(PURPOSE, Decimal("1500"), "MXN", BANK_TRANSFER_DETAILS, "bank-transfer")

        assert intent.external_payment_id == "9876"
        assert len(intent.tracking_key) == 30
        request = stp_api.calls("POST", "/ordenPago")[0]
        body = json.loads(request.content)
        assert body["claveRastreo"] == intent.tracking_key
        assert body["monto"] == "1500.00"
        assert body["cuentaBeneficiario"] == BANK_TRANSFER_DETAILS["beneficiaryAccount"]
        assert body["institucionContraparte"] == "40002"
        assert len(body["conceptoPago"]) <= 40

        # raises InvalidSignature if the signed bytes differ from the sent bytes
        stp_key.public_key().verify(
            base64.b64decode(request.headers["X-Signature"]), request.content, padding.PKCS1v15(), hashes.SHA256(),
        )

    def test_refused_order(self, stp_adapter, stp_api):
        stp_api.on("POST", "/ordenPago", (200, {"resultado": {"id": -11, "descripcion": "Cuenta no valida"}}))
        with pytest.raises(ProviderRejected) as exc_info:
            stp_adapter.create_intent(PURPOSE, Decimal("1500"), "MXN", BANK_TRANSFER_DETAILS, "bank-transfer")
        assert exc_info.value.provider_code == "-11"

    def test_missing_private_key(self, settings, stp_api, utility_api):
        adapter = STPAdapter(
            settings.model_copy(update={"STP_PRIVATE_KEY": ""}),
            client=stp_api.client(), utility_client=utility_api.client(),
        )
        with pytest.raises(ProviderAuthError):
            adapter.create_intent(PURPOSE, Decimal("1500"), "MXN", BANK_TRANSFER_DETAILS, "bank-transfer")

    @pytest.mark.parametrize("estado,status", [
        ("LIQUIDADO", "completed"),
        ("Pendiente", "processing"),
        ("DEVOLUCION", "refunded"),
        ("Cancelado", "cancelled"),
        ("Rechazado", "failed"),
        ("EN_ESPERA_BANXICO", "processing"),
    ])
    def test_status_mapping(self, stp_adapter, stp_api, estado, status):
        stp_api.on("POST", "/consultaOrden", (200, {"resultado": {"id": 9876, "estado": estado}}))
        assert stp_adapter.get_status("9876", "bank-transfer") == status

    def test_confirm_reports_order_state(self, stp_adapter, stp_api):
        stp_api.on("POST", "/consultaOrden", (200, {"resultado": {"id": 9876, "estado": "LIQUIDADO"}}))
        result = stp_adapter.confirm("9876", {}, "bank-transfer")
        assert (result.external_charge_id, result.status) == ("9876", "completed")

    def test_return_starts_pending(self, stp_adapter, stp_api):
        stp_api.on("POST", "/devolucion", (200, {"resultado": {"id": 555}}))
        result = stp_adapter.refund("9876", Decimal("200"), "Pago duplicado", "MXN", "bank-transfer")

        assert (result.external_refund_id, result.status) == ("555", "pending")
        assert json.loads(stp_api.calls("POST", "/devolucion")[0].content)["monto"] == "200.00"


class TestUtilityPayments:
    def test_reference_is_validated_before_paying(self, stp_adapter, utility_api):
        utility_api.on("POST", "/validar-referencia", (200, {"esValida": True}))
        utility_api.on("POST", "/pagar-servicio", (200, {
            "exitoso": True, "idPago": "UP-1", "idOperacion": "OP-77", "estado": "EN_PROCESO",
        }))
        intent = stp_adapter.create_intent(
            {"type": "service", "itemId": "cfe"}, Decimal("845.50"), "MXN", BILL_DETAILS, "bill-payment",
        )

        assert (intent.external_payment_id, intent.bank_reference) == ("UP-1", "OP-77")
        paid = utility_api.calls("POST", "/pagar-servicio")[0]
        assert paid.headers["X-Api-Key"] == "utility-key"
        assert json.loads(paid.content)["codigoConvenio"] == "123456"

    def test_invalid_reference_is_not_paid(self, stp_adapter, utility_api):
        utility_api.on("POST", "/validar-referencia", (200, {"esValida": False}))
        with pytest.raises(ProviderRejected):
            stp_adapter.create_intent({"type": "service", "itemId": "cfe"}, Decimal("845.50"), "MXN", BILL_DETAILS, "bill-payment")
        assert utility_api.calls("POST", "/pagar-servicio") == []

    def test_utility_status(self, stp_adapter, utility_api):
        utility_api.on("GET", "/estado-pago/UP-1", (200, {"estado": "PAGADO", "idOperacion": "OP-77"}))
        assert stp_adapter.get_status("UP-1", "bill-payment") == "completed"

    def test_bill_payments_cannot_be_refunded(self, stp_adapter):
        assert not stp_adapter.supports_refunds("bill-payment")
        with pytest.raises(NotRefundable):
            stp_adapter.refund("UP-1", Decimal("10"), "Pago duplicado", "MXN", "bill-payment")


class TestCatalogs:
    def test_banks_catalog(self, stp_adapter, stp_api):
        stp_api.on("GET", "/catalogoBancos", (200, {"resultado": [{"clave": "40002", "nombre": "BANAMEX"}]}))
        assert stp_adapter.get_banks_catalog() == [{"clave": "40002", "nombre": "BANAMEX"}]

    def test_account_validation(self, stp_adapter, stp_api):
        stp_api.on("POST", "/validaCuenta", (200, {"resultado": {"id": 1, "descripcion": "Cuenta valida"}}))
        assert stp_adapter.validate_beneficiary_account(BANK_TRANSFER_DETAILS["beneficiaryAccount"], "40002") == {
            "isValid": True, "details": "Cuenta valida",
        }


class TestWebhooks:
    event = {"id": 9876, "claveRastreo": "A" * 30, "estado": "LIQUIDADO", "operationId": "OP-9876"}

    def test_valid_signature(self, stp_adapter):
        body = to_body(self.event)
        assert stp_adapter.verify_webhook_signature(stp_signature_headers(body), body)

    def test_bad_signatures(self, stp_adapter):
        body = to_body(self.event)
        headers = stp_signature_headers(body)
        assert not stp_adapter.verify_webhook_signature(headers, body.replace(b"LIQUIDADO", b"DEVOLUCION"))
        assert not stp_adapter.verify_webhook_signature(stp_signature_headers(body, secret="other"), body)
        assert not stp_adapter.verify_webhook_signature({"stp-signature": headers["stp-signature"]}, body)

    def test_parse_state_takes_precedence(self, stp_adapter):
        event = stp_adapter.parse_webhook_event(to_body(dict(self.event, type="payment.failed")))
        assert event.status == "completed"
        assert (event.external_payment_id, event.tracking_key, event.charge_id) == ("9876", "A" * 30, "OP-9876")

    def test_parse_event_type(self, stp_adapter):
        event = stp_adapter.parse_webhook_event(to_body({"type": "payment.returned", "trackingKey": "B" * 30}))
        assert (event.status, event.tracking_key, event.external_payment_id) == ("refunded", "B" * 30, None)


def test_tracking_keys_are_unique():
    assert len({generate_tracking_key() for _ in range(100)}) == 100
