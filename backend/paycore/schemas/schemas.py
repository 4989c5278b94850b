"""
Pydantic Schemas — Request & Response models for API validation.

Request models only check shapes; business rules live in RequestValidator so
that every field problem is reported in one response.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────── Payments ────────────────

class Purpose(BaseModel):
    type: Optional[str] = Field(None, description="course, webinar, subscription or service")
    itemId: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount: Optional[Decimal] = Field(None, description="Major units, up to 2 decimals")
    currency: Optional[str] = Field(None, description="MXN or USD")
    paymentMethod: Optional[str] = Field(
        None, description="card, cash-voucher, bank-transfer, wallet or bill-payment"
    )
    purpose: Optional[Purpose] = None
    billingDetails: Optional[Dict[str, Any]] = None


class CreatePaymentResponse(BaseModel):
    paymentId: str
    status: str
    provider: str
    providerClientSecret: Optional[str] = None
    providerTrackingKey: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    methodDetails: Dict[str, Any] = Field(default_factory=dict)


class ProviderReferences(BaseModel):
    name: Optional[str] = None
    externalPaymentId: Optional[str] = None
    externalTrackingKey: Optional[str] = None
    externalChargeId: Optional[str] = None
    externalRefundId: Optional[str] = None
    bankReference: Optional[str] = None


class RefundEntry(BaseModel):
    refundId: str
    externalRefundId: Optional[str] = None
    amount: str
    reason: Optional[str] = None
    status: str
    processedAt: str


class PaymentResponse(BaseModel):
    paymentId: str
    userId: str
    amount: str
    currency: str
    paymentMethod: str
    purpose: Purpose
    status: str
    provider: ProviderReferences
    refunds: List[RefundEntry] = []
    error: Optional[Dict[str, Any]] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, description="Defaults to the remaining balance")
    reason: Optional[str] = None


# ──────────────── Webhooks ────────────────

class WebhookAck(BaseModel):
    received: bool = True


# ──────────────── STP helpers ────────────────

class AccountValidationRequest(BaseModel):
    accountNumber: str
    bankCode: str


class AccountValidationResponse(BaseModel):
    isValid: bool
    details: Optional[str] = None


# ──────────────── Errors & Health ────────────────

class FieldError(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    retryable: bool = False
    errors: Optional[List[FieldError]] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    database: str
    providers: List[str]
