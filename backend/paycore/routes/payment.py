"""
Payment Routes — create, confirm, status and refund.
Handles: card, cash-voucher, bank-transfer, wallet, bill-payment.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from paycore.adapters.registry import AdapterRegistry, get_registry
from paycore.config import Settings, get_settings
from paycore.database import get_db
from paycore.schemas.schemas import (
    ConfirmPaymentRequest, CreatePaymentRequest, CreatePaymentResponse,
    PaymentResponse, RefundEntry, RefundRequest,
)
from paycore.services.payment_orchestrator import PaymentOrchestrator, to_projection

router = APIRouter(prefix="/api/payments", tags=["Payments"])


def get_orchestrator(
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, registry, settings)


@router.post("", response_model=CreatePaymentResponse, status_code=201)
def create_payment(
    payload: CreatePaymentRequest,
    user_id: str = Header(..., alias="x-user-id"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Create a payment and open the provider intent."""
    record, intent = orchestrator.create_payment(user_id, payload.model_dump(mode="python"))
    return CreatePaymentResponse(
        paymentId=record.payment_id,
        status=record.status,
        provider=record.provider_name,
        providerClientSecret=intent.client_secret,
        providerTrackingKey=intent.tracking_key,
    )


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
def confirm_payment(
    payment_id: str,
    payload: Optional[ConfirmPaymentRequest] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Confirm (or capture) the payment with the provider. Idempotent once completed."""
    record = orchestrator.confirm_payment(payment_id, payload.methodDetails if payload else {})
    return to_projection(record)


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Current payment state, refreshed from the provider while processing."""
    return to_projection(orchestrator.get_payment(payment_id))


@router.post("/{payment_id}/refund", response_model=RefundEntry)
def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Refund all or part of a completed payment."""
    return orchestrator.refund_payment(payment_id, payload.amount, payload.reason)
