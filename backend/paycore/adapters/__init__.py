from paycore.adapters.base import PaymentAdapter, IntentResult, ConfirmResult, RefundResult, WebhookEvent
from paycore.adapters.registry import AdapterRegistry, build_registry, get_registry

__all__ = [
    "PaymentAdapter", "IntentResult", "ConfirmResult", "RefundResult", "WebhookEvent",
    "AdapterRegistry", "build_registry", "get_registry",
]
