"""
Webhook Reconciler — applies verified provider events to payment records.

Only an invalid signature is reported back to the provider. Every other
problem (unparseable body, unknown payment, store conflicts) is logged and
acknowledged so the provider's retry policy is not triggered by a local bug.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paycore.adapters.registry import AdapterRegistry
from paycore.config import Settings
from paycore.exceptions import InvalidSignature, PaymentError
from paycore.services.payment_store import PaymentStore
from paycore.utils.hashing import hash_bytes

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    payment_id: Optional[str] = None
    event_type: Optional[str] = None
    status_changed: bool = False
    duplicate: bool = False


class WebhookReconciler:
    def __init__(self, db: Session, registry: AdapterRegistry, settings: Settings):
        self.registry = registry
        self.store = PaymentStore(
            db,
            max_retries=settings.CAS_MAX_RETRIES,
            refund_lock_ttl_seconds=settings.REFUND_LOCK_TTL_SECONDS,
        )

    def handle(self, provider: str, headers: Mapping[str, str], raw_body: bytes) -> ReconcileOutcome:
        """
        Verify and reconcile one delivery.

        Raises:
            NotFound: no adapter is registered under ``provider``.
            InvalidSignature: the delivery is not authentic; nothing was persisted.
        """
        adapter = self.registry.for_provider(provider)

        if not adapter.verify_webhook_signature(headers, raw_body):
            logger.warning("[%s] Webhook signature verification failed (%d bytes)", provider, len(raw_body))
            raise InvalidSignature("Invalid webhook signature")

        outcome = ReconcileOutcome()
        try:
            event = adapter.parse_webhook_event(raw_body)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("[%s] Verified webhook could not be parsed: %s", provider, e)
            return outcome
        outcome.event_type = event.event_type

        try:
            record = self.store.find_by_provider_reference(
                provider,
                external_payment_id=event.external_payment_id,
                tracking_key=event.tracking_key,
                charge_id=event.charge_id,
            )
            if record is None:
                logger.info(
                    "[%s] %s for unknown payment (external=%s, tracking=%s), acknowledged",
                    provider, event.event_type, event.external_payment_id, event.tracking_key,
                )
                return outcome
            outcome.payment_id = record.payment_id

            record = self.store.append_webhook_event(
                record.payment_id, event.event_type, event.payload, hash_bytes(raw_body),
            )
            outcome.duplicate = record.webhook_events[-1]["duplicate"]

            provider_updates = {
                "externalPaymentId": event.external_payment_id,
                "externalTrackingKey": event.tracking_key,
                "externalChargeId": event.charge_id,
            }
            if event.status is None:
                logger.info("[%s] %s recorded on %s without status change", provider, event.event_type, record.payment_id)
                self.store.apply_status(record.payment_id, record.status, f"webhook:{event.event_type}",
                                        provider_updates=provider_updates)
                return outcome

            _, outcome.status_changed = self.store.apply_status(
                record.payment_id,
                event.status,
                f"webhook:{event.event_type}",
                provider_updates=provider_updates,
            )
        except PaymentError as e:
            logger.error("[%s] Reconciliation of %s failed: %s", provider, event.event_type, e.message)
        except SQLAlchemyError:
            self.store.db.rollback()
            logger.exception("[%s] Reconciliation of %s failed on the database", provider, event.event_type)
        return outcome
