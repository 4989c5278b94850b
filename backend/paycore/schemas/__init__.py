from paycore.schemas.schemas import (
    CreatePaymentRequest, CreatePaymentResponse, ConfirmPaymentRequest,
    PaymentResponse, RefundRequest, RefundEntry, ErrorResponse, HealthResponse,
)
