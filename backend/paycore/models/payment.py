"""
Payment Record Model — the canonical, append-only record of one payment.
"""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, String, Integer, DateTime, JSON, Numeric

from paycore.database import Base


def generate_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    payment_id = Column(String(40), unique=True, nullable=False, index=True, default=generate_payment_id)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="MXN")
    payment_method = Column(String(16), nullable=False)  # card | cash-voucher | bank-transfer | wallet | bill-payment

    purpose_type = Column(String(16), nullable=False)     # course | webinar | subscription | service
    purpose_item_id = Column(String(64), nullable=False)

    status = Column(String(16), nullable=False, default="pending", index=True)
    # Statuses: pending → processing → completed | failed | cancelled; completed → refunded

    provider = Column(JSON, default=dict)
    # {name, externalPaymentId, externalTrackingKey, externalChargeId, externalRefundId, bankReference}

    billing_details = Column(JSON, default=dict)
    metadata_ = Column("metadata", JSON, default=dict)

    attempts = Column(JSON, default=list)        # [{timestamp, status, source}]
    webhook_events = Column(JSON, default=list)  # [{type, receivedAt, rawPayload, payloadHash, duplicate}]
    refunds = Column(JSON, default=list)         # [{refundId, externalRefundId, amount, reason, status, processedAt}]
    error = Column(JSON, nullable=True)          # {code, message}

    # Optimistic concurrency token, bumped by every write
    version = Column(Integer, nullable=False, default=1)

    refund_lock = Column(String(36), nullable=True)
    refund_locked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    @property
    def provider_name(self) -> str:
        return (self.provider or {}).get("name", "")

    @property
    def external_payment_id(self):
        return (self.provider or {}).get("externalPaymentId")

    @property
    def external_charge_id(self):
        return (self.provider or {}).get("externalChargeId")

    def refunded_total(self, include_pending: bool = False) -> Decimal:
        """Sum of refund amounts; pending refunds count only when asked."""
        counted = {"completed", "pending"} if include_pending else {"completed"}
        return sum(
            (Decimal(r["amount"]) for r in (self.refunds or []) if r.get("status") in counted),
            Decimal("0"),
        )

    def __repr__(self):
        return f"<PaymentRecord {self.payment_id} {self.payment_method} {self.status}>"
