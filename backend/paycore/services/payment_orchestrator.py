"""
Payment Orchestrator — create, confirm, poll and refund across providers.

The orchestrator never branches on provider names: it asks the registry for
the adapter bound to a payment method (or recorded provider) and routes every
status write through PaymentStore.apply_status.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from paycore.adapters.base import IntentResult
from paycore.adapters.registry import AdapterRegistry
from paycore.config import Settings
from paycore.exceptions import (
    AlreadyTerminal, InvalidPaymentState, NotRefundable, ProviderError,
    ProviderRejected, ProviderUnavailable,
)
from paycore.models.payment import PaymentRecord
from paycore.services.payment_store import PaymentStore
from paycore.services.request_validator import RequestValidator
from paycore.services.state_machine import CANCELLED, COMPLETED, FAILED, PROCESSING, REFUNDED

logger = logging.getLogger(__name__)


def error_detail(error: ProviderError) -> Dict[str, str]:
    return {"code": error.provider_code or error.error_code, "message": error.message}


class PaymentOrchestrator:
    """Coordinates validation, persistence and provider adapters for one request."""

    def __init__(self, db: Session, registry: AdapterRegistry, settings: Settings):
        self.registry = registry
        self.settings = settings
        self.store = PaymentStore(
            db,
            max_retries=settings.CAS_MAX_RETRIES,
            refund_lock_ttl_seconds=settings.REFUND_LOCK_TTL_SECONDS,
        )
        self.validator = RequestValidator(
            supported_currencies=settings.SUPPORTED_CURRENCIES,
            max_amount=Decimal(str(settings.MAX_PAYMENT_AMOUNT)),
        )

    # ── Create ──────────────────────────────────────────────────────

    def create_payment(self, user_id: str, request: Mapping[str, Any]) -> Tuple[PaymentRecord, IntentResult]:
        """
        Validate, persist a pending record and open the provider intent.

        Args:
            user_id: Already-authenticated caller identity
            request: camelCase create payload

        Returns:
            (record, intent). The record is ``processing`` on success.

        Raises:
            ValidationError: nothing was persisted.
            ProviderRejected / ProviderAuthError: the record is kept as ``failed``.
            ProviderUnavailable: the record is kept as ``pending`` with the error stored.
        """
        payload = self.validator.validate_create(request)
        method = payload["paymentMethod"]
        adapter = self.registry.for_method(method)

        record = self.store.create(
            user_id=user_id,
            amount=payload["amount"],
            currency=payload["currency"],
            payment_method=method,
            purpose=payload["purpose"],
            billing_details=payload["billingDetails"],
            provider_name=adapter.name,
            metadata={"purpose": dict(payload["purpose"]), "userId": user_id},
        )

        try:
            intent = adapter.create_intent(
                purpose=payload["purpose"],
                amount=payload["amount"],
                currency=payload["currency"],
                billing_details=payload["billingDetails"],
                payment_method=method,
                idempotency_key=record.payment_id,
            )
        except ProviderUnavailable as e:
            # Outcome unknown on the provider side; leave the record where it is
            logger.warning("Create %s: %s unavailable (%s)", record.payment_id, adapter.name, e.message)
            self.store.record_error(record.payment_id, error_detail(e))
            raise
        except ProviderError as e:
            logger.info("Create %s rejected by %s: %s", record.payment_id, adapter.name, e.message)
            self.store.apply_status(record.payment_id, FAILED, "create", error=error_detail(e))
            raise

        record, _ = self.store.apply_status(
            record.payment_id,
            PROCESSING,
            "create",
            provider_updates={
                "externalPaymentId": intent.external_payment_id,
                "externalTrackingKey": intent.tracking_key,
                "bankReference": intent.bank_reference,
            },
        )
        return record, intent

    # ── Confirm ─────────────────────────────────────────────────────

    def confirm_payment(self, payment_id: str, method_details: Optional[Mapping[str, Any]] = None) -> PaymentRecord:
        record = self.store.get(payment_id)

        if record.status in (COMPLETED, REFUNDED):
            return record
        if record.status in (FAILED, CANCELLED):
            raise AlreadyTerminal(f"Payment {payment_id} is already {record.status}")
        if not record.external_payment_id:
            raise InvalidPaymentState(f"Payment {payment_id} has no provider intent to confirm")

        adapter = self.registry.for_provider(record.provider_name)
        try:
            result = adapter.confirm(record.external_payment_id, method_details or {}, record.payment_method)
        except ProviderUnavailable as e:
            logger.warning("Confirm %s: %s unavailable, status left as %s", payment_id, adapter.name, record.status)
            self.store.record_error(payment_id, error_detail(e))
            raise
        except ProviderRejected as e:
            self.store.apply_status(payment_id, FAILED, "confirm", error=error_detail(e))
            raise

        record, _ = self.store.apply_status(
            payment_id,
            result.status,
            "confirm",
            provider_updates={"externalChargeId": result.external_charge_id},
        )
        return record

    # ── Poll ────────────────────────────────────────────────────────

    def get_payment(self, payment_id: str) -> PaymentRecord:
        """Current record; asks the provider only while the payment is in flight."""
        record = self.store.get(payment_id)
        if record.status != PROCESSING or not record.external_payment_id:
            return record

        adapter = self.registry.for_provider(record.provider_name)
        try:
            status = adapter.get_status(record.external_payment_id, record.payment_method)
        except ProviderError as e:
            logger.warning("Status read-through for %s failed: %s", payment_id, e.message)
            return record

        record, _ = self.store.apply_status(payment_id, status, "poll")
        return record

    # ── Refund ──────────────────────────────────────────────────────

    def refund_payment(self, payment_id: str, amount: Any = None, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Refund all or part of a completed payment.

        Returns:
            The appended refund entry.

        Raises:
            NotRefundable: wrong status, refund window elapsed, method without
                refunds, amount over the remaining balance or provider refusal.
            RefundInProgress: another refund holds the record.
            ProviderUnavailable: the provider did not answer; the amount is
                recorded as a pending refund and no longer refundable.
        """
        requested = self.validator.validate_refund(amount, reason)
        record = self.store.get(payment_id)
        adapter = self.registry.for_provider(record.provider_name)
        self._check_refundable(record, adapter)

        token = self.store.acquire_refund_lock(payment_id)
        try:
            # Re-read under the lock: the balance may have moved
            record = self.store.get(payment_id)
            self._check_refundable(record, adapter)

            remaining = Decimal(record.amount) - record.refunded_total(include_pending=True)
            refund_amount = requested if requested is not None else remaining
            if remaining <= 0:
                raise NotRefundable(f"Payment {payment_id} has no remaining balance to refund")
            if refund_amount > remaining:
                raise NotRefundable(f"Refund of {refund_amount} exceeds the remaining balance of {remaining}")

            charge_id = record.external_charge_id or record.external_payment_id
            try:
                result = adapter.refund(charge_id, refund_amount, reason, record.currency, record.payment_method)
            except ProviderUnavailable as e:
                # The provider may have refunded anyway; the amount stays held
                # as pending until a webhook or an operator settles it.
                logger.warning("Refund on %s has an unknown outcome, held as pending: %s", payment_id, e.message)
                self.store.append_refund(payment_id, _refund_entry(None, refund_amount, reason, "pending"), token)
                raise

            entry = _refund_entry(result.external_refund_id, refund_amount, reason, result.status)
            self.store.append_refund(payment_id, entry, token)
            return entry
        except ProviderUnavailable:
            raise
        except Exception:
            self.store.release_refund_lock(payment_id, token)
            raise

    def _check_refundable(self, record: PaymentRecord, adapter) -> None:
        if record.status != COMPLETED:
            raise NotRefundable(f"Only completed payments can be refunded (status: {record.status})")
        if not adapter.supports_refunds(record.payment_method):
            raise NotRefundable(f"Payment method {record.payment_method} does not support refunds")
        completed_at = record.completed_at or record.created_at
        if completed_at and datetime.utcnow() - completed_at > adapter.refund_window:
            raise NotRefundable(f"The refund window of {adapter.refund_window.days} days has elapsed")


def _refund_entry(external_refund_id: Optional[str], amount: Decimal, reason: Optional[str], status: str) -> Dict[str, Any]:
    return {
        "refundId": f"ref_{uuid.uuid4().hex}",
        "externalRefundId": external_refund_id,
        "amount": str(amount),
        "reason": reason,
        "status": status,
        "processedAt": datetime.utcnow().isoformat(),
    }


def to_projection(record: PaymentRecord) -> Dict[str, Any]:
    """Caller-facing view of a payment record."""
    provider = record.provider or {}
    return {
        "paymentId": record.payment_id,
        "userId": record.user_id,
        "amount": str(record.amount),
        "currency": record.currency,
        "paymentMethod": record.payment_method,
        "purpose": {"type": record.purpose_type, "itemId": record.purpose_item_id},
        "status": record.status,
        "provider": {
            "name": provider.get("name"),
            "externalPaymentId": provider.get("externalPaymentId"),
            "externalTrackingKey": provider.get("externalTrackingKey"),
            "externalChargeId": provider.get("externalChargeId"),
            "externalRefundId": provider.get("externalRefundId"),
            "bankReference": provider.get("bankReference"),
        },
        "refunds": list(record.refunds or []),
        "error": record.error,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
        "completedAt": record.completed_at,
    }
