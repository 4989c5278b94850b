"""
Payment Store — durable access to PaymentRecord with optimistic concurrency.

Confirm, poll and webhook paths may race on the same record. Every write is a
compare-and-swap on ``version``: a writer that lost the race re-reads the
record and re-evaluates its change against the fresh state, so a decision
such as "is this forward progress" is never made from a stale read.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from paycore.exceptions import ConcurrentUpdateError, NotFound, RefundInProgress
from paycore.models.payment import PaymentRecord
from paycore.services.state_machine import COMPLETED, FAILED, PENDING, REFUNDED, is_forward_progress

logger = logging.getLogger(__name__)

Change = Callable[[PaymentRecord], Optional[Dict[str, Any]]]


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def merge_provider(current: Optional[Mapping[str, Any]], updates: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fill empty provider references; existing values and the name are kept.

    ``externalRefundId`` holds the first provider refund id. Later ids live
    only on their entries in ``refunds``.
    """
    merged = dict(current or {})
    for key, value in (updates or {}).items():
        if value is None or key == "name":
            continue
        if not merged.get(key):
            merged[key] = value
    return merged


def completed_refund_total(refunds) -> Decimal:
    return sum(
        (Decimal(r["amount"]) for r in refunds or [] if r.get("status") == "completed"), Decimal("0")
    )


class PaymentStore:
    """Repository for payment records. One instance per request-scoped DB session."""

    def __init__(self, db: Session, max_retries: int = 5, refund_lock_ttl_seconds: int = 120):
        self.db = db
        self.max_retries = max_retries
        self.refund_lock_ttl = timedelta(seconds=refund_lock_ttl_seconds)

    # ── Reads ───────────────────────────────────────────────────────

    def _load(self, payment_id: str) -> Optional[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .populate_existing()
            .filter(PaymentRecord.payment_id == payment_id)
            .first()
        )

    def get(self, payment_id: str) -> PaymentRecord:
        record = self._load(payment_id)
        if record is None:
            raise NotFound(f"Payment {payment_id} not found")
        return record

    def find_by_provider_reference(
        self,
        provider_name: str,
        external_payment_id: Optional[str] = None,
        tracking_key: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        """Locate a record by the provider's own correlation key."""
        candidates = (
            ("externalTrackingKey", tracking_key),
            ("externalPaymentId", external_payment_id),
            ("externalChargeId", charge_id),
        )
        for key, value in candidates:
            if not value:
                continue
            record = (
                self.db.query(PaymentRecord)
                .populate_existing()
                .filter(
                    PaymentRecord.provider["name"].as_string() == provider_name,
                    PaymentRecord.provider[key].as_string() == str(value),
                )
                .first()
            )
            if record is not None:
                return record
        return None

    # ── Writes ──────────────────────────────────────────────────────

    def create(
        self,
        *,
        user_id: str,
        amount: Decimal,
        currency: str,
        payment_method: str,
        purpose: Mapping[str, str],
        billing_details: Mapping[str, Any],
        provider_name: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> PaymentRecord:
        record = PaymentRecord(
            user_id=user_id,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            purpose_type=purpose["type"],
            purpose_item_id=purpose["itemId"],
            status=PENDING,
            provider={"name": provider_name},
            billing_details=dict(billing_details),
            metadata_=dict(metadata or {}),
            attempts=[{"timestamp": _now_iso(), "status": PENDING, "source": "create"}],
            webhook_events=[],
            refunds=[],
            error=None,
            version=1,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        logger.info("Payment %s created (%s, %s %s)", record.payment_id, payment_method, amount, currency)
        return record

    def _swap(self, record: PaymentRecord, values: Dict[str, Any]) -> bool:
        """Write ``values`` only if nobody else wrote since ``record`` was read."""
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == record.id, PaymentRecord.version == record.version)
            .values(version=record.version + 1, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def mutate(self, payment_id: str, change: Change) -> Tuple[PaymentRecord, bool]:
        """Atomic read-modify-write of one record.

        ``change`` receives a fresh record and returns the column values to
        write, or None when there is nothing to do. Returns the resulting
        record and whether a write happened.
        """
        for attempt in range(1, self.max_retries + 1):
            record = self._load(payment_id)
            if record is None:
                raise NotFound(f"Payment {payment_id} not found")
            values = change(record)
            if not values:
                return record, False
            if self._swap(record, values):
                return self.get(payment_id), True
            logger.info("Concurrent write on %s, re-evaluating (attempt %d)", payment_id, attempt)
        raise ConcurrentUpdateError(f"Payment {payment_id} is being updated concurrently, retry later")

    def apply_status(
        self,
        payment_id: str,
        target: str,
        source: str,
        error: Optional[Mapping[str, str]] = None,
        provider_updates: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[PaymentRecord, bool]:
        """Monotonic status write shared by confirm, poll and webhook paths.

        A target that is not forward progress from the stored status is a
        no-op for ``status`` (provider references are still filled in).
        Returns the record and whether its status changed.
        """
        status_changed = {"value": False}

        def change(record: PaymentRecord) -> Optional[Dict[str, Any]]:
            values: Dict[str, Any] = {}
            status_changed["value"] = False

            provider = merge_provider(record.provider, provider_updates)
            if provider != (record.provider or {}):
                values["provider"] = provider

            if target == REFUNDED and is_forward_progress(record.status, target):
                # provider confirmed the return; settle what was still in flight
                refunds = [
                    dict(r, status="completed") if r.get("status") == "pending" else r
                    for r in record.refunds or []
                ]
                if refunds != list(record.refunds or []):
                    values["refunds"] = refunds
                if completed_refund_total(refunds) < Decimal(record.amount):
                    logger.info(
                        "Return reported for %s from %s covers less than the full amount, status stays %s",
                        payment_id, source, record.status,
                    )
                    return values or None

            if is_forward_progress(record.status, target):
                status_changed["value"] = True
                values["status"] = target
                values["attempts"] = list(record.attempts or []) + [
                    {"timestamp": _now_iso(), "status": target, "source": source}
                ]
                if target == FAILED:
                    values["error"] = dict(error) if error else {"code": "PAYMENT_FAILED", "message": "Payment failed"}
                else:
                    values["error"] = None
                if target in (COMPLETED, REFUNDED) and record.completed_at is None:
                    values["completed_at"] = datetime.utcnow()
            elif record.status != target:
                logger.debug(
                    "Ignoring %s -> %s for %s from %s (not forward progress)",
                    record.status, target, payment_id, source,
                )
            return values or None

        record, _ = self.mutate(payment_id, change)
        if status_changed["value"]:
            logger.info("Payment %s -> %s (%s)", payment_id, target, source)
        return record, status_changed["value"]

    def record_error(self, payment_id: str, error: Mapping[str, str]) -> PaymentRecord:
        """Store the last failure detail without touching status."""
        record, _ = self.mutate(payment_id, lambda r: {"error": dict(error)})
        return record

    def append_webhook_event(
        self, payment_id: str, event_type: str, raw_payload: Any, payload_hash: str
    ) -> PaymentRecord:
        """Append a verified event to the forensic log, duplicates included."""

        def change(record: PaymentRecord) -> Dict[str, Any]:
            events = list(record.webhook_events or [])
            duplicate = any(e.get("payloadHash") == payload_hash for e in events)
            events.append({
                "type": event_type,
                "receivedAt": _now_iso(),
                "rawPayload": raw_payload,
                "payloadHash": payload_hash,
                "duplicate": duplicate,
            })
            return {"webhook_events": events}

        record, _ = self.mutate(payment_id, change)
        return record

    # ── Refund serialization ────────────────────────────────────────

    def acquire_refund_lock(self, payment_id: str) -> str:
        """Claim the per-record refund section or raise RefundInProgress."""
        token = str(uuid.uuid4())

        def change(record: PaymentRecord) -> Dict[str, Any]:
            if record.refund_lock and record.refund_locked_at \
                    and datetime.utcnow() - record.refund_locked_at < self.refund_lock_ttl:
                raise RefundInProgress(f"A refund for {payment_id} is already in progress")
            return {"refund_lock": token, "refund_locked_at": datetime.utcnow()}

        self.mutate(payment_id, change)
        return token

    def release_refund_lock(self, payment_id: str, token: str) -> PaymentRecord:
        def change(record: PaymentRecord) -> Optional[Dict[str, Any]]:
            if record.refund_lock != token:
                return None
            return {"refund_lock": None, "refund_locked_at": None}

        record, _ = self.mutate(payment_id, change)
        return record

    def append_refund(self, payment_id: str, refund: Dict[str, Any], token: str) -> PaymentRecord:
        """Record a refund, recompute the aggregate status and release the lock."""

        def change(record: PaymentRecord) -> Dict[str, Any]:
            refunds = list(record.refunds or []) + [refund]
            values: Dict[str, Any] = {
                "refunds": refunds,
                "provider": merge_provider(record.provider, {"externalRefundId": refund.get("externalRefundId")}),
            }
            if record.refund_lock == token:
                values["refund_lock"] = None
                values["refund_locked_at"] = None

            if completed_refund_total(refunds) >= Decimal(record.amount) and is_forward_progress(record.status, REFUNDED):
                values["status"] = REFUNDED
                values["attempts"] = list(record.attempts or []) + [
                    {"timestamp": _now_iso(), "status": REFUNDED, "source": "refund"}
                ]
                values["error"] = None
            return values

        record, _ = self.mutate(payment_id, change)
        logger.info("Refund %s (%s) recorded on %s", refund["refundId"], refund["status"], payment_id)
        return record
