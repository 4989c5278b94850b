"""
Tests for webhook reconciliation: idempotence, signature rejection and tolerance of unknown payments.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import (
    BANK_TRANSFER_DETAILS, create_request, paypal_signature_headers, stp_signature_headers,
    stripe_signature_headers, to_body,
)
from paycore.exceptions import InvalidSignature, NotFound, NotRefundable
from paycore.services.payment_orchestrator import PaymentOrchestrator
from paycore.services.state_machine import COMPLETED, PROCESSING, REFUNDED
from paycore.services.webhook_reconciler import WebhookReconciler

USER = "user-123"


@pytest.fixture
def orchestrator(db, registry, settings):
    return PaymentOrchestrator(db, registry, settings)


@pytest.fixture
def reconciler(db, registry, settings):
    return WebhookReconciler(db, registry, settings)


@pytest.fixture
def spei_payment(orchestrator, stp_api):
    stp_api.on("POST", "/ordenPago", (200, {"resultado": {"id": 9876, "referencia": "1234567"}}))
    record, _ = orchestrator.create_payment(USER, create_request("bank-transfer", **BANK_TRANSFER_DETAILS))
    return record


def _spei_event(record, estado="LIQUIDADO", **extra) -> bytes:
    event = {
        "id": int(record.external_payment_id),
        "claveRastreo": record.provider["externalTrackingKey"],
        "estado": estado,
    }
    event.update(extra)
    return to_body(event)


class TestIdempotence:
    def test_same_event_twice(self, reconciler, orchestrator, spei_payment):
        body = _spei_event(spei_payment, operationId="OP-9876")

        first = reconciler.handle("stp", stp_signature_headers(body), body)
        second = reconciler.handle("stp", stp_signature_headers(body), body)

        assert (first.status_changed, first.duplicate) == (True, False)
        assert (second.status_changed, second.duplicate) == (False, True)

        record = orchestrator.store.get(spei_payment.payment_id)
        assert record.status == COMPLETED
        assert len(record.webhook_events) == 2
        assert record.webhook_events[0]["payloadHash"] == record.webhook_events[1]["payloadHash"]
        assert [a["status"] for a in record.attempts].count(COMPLETED) == 1
        assert record.provider["externalChargeId"] == "OP-9876"

    def test_out_of_order_event_is_logged_not_applied(self, reconciler, orchestrator, spei_payment):
        settled = _spei_event(spei_payment)
        reconciler.handle("stp", stp_signature_headers(settled), settled)
        late = _spei_event(spei_payment, estado="PENDIENTE")
        outcome = reconciler.handle("stp", stp_signature_headers(late), late)

        record = orchestrator.store.get(spei_payment.payment_id)
        assert not outcome.status_changed
        assert record.status == COMPLETED
        assert [e["rawPayload"]["estado"] for e in record.webhook_events] == ["LIQUIDADO", "PENDIENTE"]

    def test_correlates_by_external_id_without_tracking_key(self, reconciler, orchestrator, spei_payment):
        body = to_body({"id": int(spei_payment.external_payment_id), "type": "payment.succeeded"})
        reconciler.handle("stp", stp_signature_headers(body), body)
        assert orchestrator.store.get(spei_payment.payment_id).status == COMPLETED


class TestRejection:
    def test_tampered_body_changes_nothing(self, reconciler, orchestrator, spei_payment):
        body = _spei_event(spei_payment)
        headers = stp_signature_headers(body)
        tampered = _spei_event(spei_payment, estado="DEVOLUCION")

        with pytest.raises(InvalidSignature):
            reconciler.handle("stp", headers, tampered)

        record = orchestrator.store.get(spei_payment.payment_id)
        assert record.status == PROCESSING
        assert record.webhook_events == []

    def test_wrong_secret(self, reconciler, orchestrator, spei_payment):
        body = _spei_event(spei_payment)
        with pytest.raises(InvalidSignature):
            reconciler.handle("stp", stp_signature_headers(body, secret="guessed"), body)
        assert orchestrator.store.get(spei_payment.payment_id).webhook_events == []

    def test_unknown_provider(self, reconciler):
        with pytest.raises(NotFound):
            reconciler.handle("conekta", {}, b"{}")


class TestTolerance:
    def test_unknown_payment_is_acknowledged(self, reconciler):
        body = to_body({"id": 1, "claveRastreo": "F" * 30, "estado": "LIQUIDADO"})
        outcome = reconciler.handle("stp", stp_signature_headers(body), body)
        assert outcome.payment_id is None
        assert outcome.event_type == "estado.LIQUIDADO"

    def test_unparseable_body_is_acknowledged(self, reconciler):
        body = b"not json at all"
        outcome = reconciler.handle("stp", stp_signature_headers(body), body)
        assert outcome.payment_id is None

    @pytest.mark.parametrize("body", [b"[1, 2]", b'"payment_intent.succeeded"', b"42", b"null"])
    def test_signed_non_object_body_is_acknowledged(self, reconciler, body):
        outcome = reconciler.handle("stripe", stripe_signature_headers(body), body)
        assert (outcome.payment_id, outcome.event_type) == (None, None)

    def test_signed_body_with_malformed_sections(self, reconciler, paypal_key, orchestrator, spei_payment):
        stripe_body = to_body({"type": "payment_intent.succeeded", "data": "x"})
        assert reconciler.handle("stripe", stripe_signature_headers(stripe_body), stripe_body).payment_id is None

        paypal_body = to_body({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": ["CAP1"]})
        outcome = reconciler.handle("paypal", paypal_signature_headers(paypal_body, paypal_key), paypal_body)
        assert outcome.payment_id is None

        stp_body = to_body({"id": [9876], "estado": ["LIQUIDADO"]})
        assert reconciler.handle("stp", stp_signature_headers(stp_body), stp_body).payment_id is None
        assert orchestrator.store.get(spei_payment.payment_id).status == PROCESSING

    def test_database_failure_is_logged_not_raised(self, reconciler, spei_payment, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("UPDATE payments", {}, Exception("database is locked"))

        monkeypatch.setattr(reconciler.store, "append_webhook_event", broken)
        body = _spei_event(spei_payment)
        outcome = reconciler.handle("stp", stp_signature_headers(body), body)

        assert outcome.payment_id == spei_payment.payment_id
        assert not outcome.status_changed

    def test_other_provider_ids_do_not_match(self, reconciler, orchestrator, spei_payment):
        body = to_body({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": spei_payment.external_payment_id, "object": "payment_intent"}},
        })
        outcome = reconciler.handle("stripe", stripe_signature_headers(body), body)

        assert outcome.payment_id is None
        assert orchestrator.store.get(spei_payment.payment_id).status == PROCESSING


class TestRefundEvents:
    def test_spei_return_settles_pending_refund(self, reconciler, orchestrator, stp_api, spei_payment):
        stp_api.on("POST", "/consultaOrden", (200, {"resultado": {"id": 9876, "estado": "LIQUIDADO"}}))
        stp_api.on("POST", "/devolucion", (200, {"resultado": {"id": 555}}))
        pid = spei_payment.payment_id

        assert orchestrator.confirm_payment(pid).status == COMPLETED
        refund = orchestrator.refund_payment(pid, None, "Pago duplicado")
        assert refund["status"] == "pending"
        assert orchestrator.store.get(pid).status == COMPLETED

        # pending returns count against the balance
        with pytest.raises(NotRefundable):
            orchestrator.refund_payment(pid, "1", "Otra devolucion")

        body = _spei_event(spei_payment, estado="DEVOLUCION")
        reconciler.handle("stp", stp_signature_headers(body), body)

        record = orchestrator.store.get(pid)
        assert record.status == REFUNDED
        assert [r["status"] for r in record.refunds] == ["completed"]
        assert record.refunded_total() == record.amount

    def test_partial_spei_return_keeps_payment_completed(self, reconciler, orchestrator, stp_api, spei_payment):
        stp_api.on("POST", "/consultaOrden", (200, {"resultado": {"id": 9876, "estado": "LIQUIDADO"}}))
        stp_api.on("POST", "/devolucion", (200, {"resultado": {"id": 555}}), (200, {"resultado": {"id": 556}}))
        pid = spei_payment.payment_id
        orchestrator.confirm_payment(pid)
        orchestrator.refund_payment(pid, "100", "Cobro de mas")

        body = _spei_event(spei_payment, estado="DEVOLUCION")
        outcome = reconciler.handle("stp", stp_signature_headers(body), body)

        record = orchestrator.store.get(pid)
        assert not outcome.status_changed
        assert record.status == COMPLETED
        assert [r["status"] for r in record.refunds] == ["completed"]
        assert record.refunded_total() == Decimal("100.00")

        orchestrator.refund_payment(pid, None, "Resto del pago")
        rest = _spei_event(spei_payment, estado="DEVOLUCION", operationId="OP-RET-2")
        assert reconciler.handle("stp", stp_signature_headers(rest), rest).status_changed

        record = orchestrator.store.get(pid)
        assert record.status == REFUNDED
        assert record.refunded_total() == record.amount

    def test_return_without_recorded_refunds_changes_nothing(self, reconciler, orchestrator, stp_api, spei_payment):
        stp_api.on("POST", "/consultaOrden", (200, {"resultado": {"id": 9876, "estado": "LIQUIDADO"}}))
        orchestrator.confirm_payment(spei_payment.payment_id)

        body = _spei_event(spei_payment, estado="DEVOLUCION")
        reconciler.handle("stp", stp_signature_headers(body), body)

        record = orchestrator.store.get(spei_payment.payment_id)
        assert record.status == COMPLETED
        assert record.webhook_events[-1]["rawPayload"]["estado"] == "DEVOLUCION"

    def test_paypal_refund_event_is_recorded_only(
        self, reconciler, orchestrator, paypal_api, paypal_key,
    ):
        paypal_api.on("POST", "/v2/checkout/orders", (201, {"id": "EXT1", "status": "CREATED", "links": []}))
        paypal_api.on("POST", "/v2/checkout/orders/EXT1/capture", (201, {
            "id": "EXT1", "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP1", "status": "COMPLETED"}]}}],
        }))
        record, _ = orchestrator.create_payment(USER, create_request("wallet"))
        orchestrator.confirm_payment(record.payment_id)

        body = to_body({
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {"id": "REF1", "supplementary_data": {"related_ids": {"order_id": "EXT1", "capture_id": "CAP1"}}},
        })
        outcome = reconciler.handle("paypal", paypal_signature_headers(body, paypal_key), body)

        record = orchestrator.store.get(record.payment_id)
        assert outcome.payment_id == record.payment_id
        assert not outcome.status_changed
        assert record.status == COMPLETED
        assert record.webhook_events[-1]["type"] == "PAYMENT.CAPTURE.REFUNDED"


class TestWebhookRoute:
    def test_acknowledges_verified_delivery(self, api, orchestrator, spei_payment):
        body = _spei_event(spei_payment)
        response = api.post("/api/webhooks/stp", content=body, headers=stp_signature_headers(body))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert orchestrator.store.get(spei_payment.payment_id).status == COMPLETED

    def test_rejects_bad_signature_without_detail(self, api):
        body = to_body({"id": 1, "estado": "LIQUIDADO"})
        response = api.post("/api/webhooks/stp", content=body, headers={"stp-signature": "0" * 64, "stp-timestamp": "1"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"

    def test_acknowledges_unknown_payment(self, api):
        body = to_body({"id": 424242, "estado": "LIQUIDADO"})
        response = api.post("/api/webhooks/stp", content=body, headers=stp_signature_headers(body))
        assert response.status_code == 200

    def test_reconciles_off_the_event_loop(self, api, monkeypatch):
        threads = []

        def handle(self, provider, headers, raw_body):
            try:
                asyncio.get_running_loop()
                threads.append("event-loop")
            except RuntimeError:
                threads.append("worker")

        monkeypatch.setattr(WebhookReconciler, "handle", handle)
        assert api.post("/api/webhooks/stp", content=b"{}").status_code == 200
        assert threads == ["worker"]

    def test_signed_non_object_body_route(self, api):
        body = b"[1, 2]"
        response = api.post("/api/webhooks/stp", content=body, headers=stp_signature_headers(body))
        assert response.status_code == 200

    def test_unknown_provider_route(self, api):
        assert api.post("/api/webhooks/conekta", content=b"{}").status_code == 404
