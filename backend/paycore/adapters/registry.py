"""
Adapter Registry — explicit, per-process construction of provider adapters.

Adapters are built once from settings and injected into the orchestrator and
reconciler; nothing else branches on provider names.
"""
from functools import lru_cache
from typing import Dict, Iterable

from paycore.adapters.base import PaymentAdapter
from paycore.config import Settings, get_settings
from paycore.exceptions import NotFound, ValidationError


class AdapterRegistry:
    """Selects adapters by provider name or by payment method."""

    def __init__(self, adapters: Iterable[PaymentAdapter]):
        self._by_name: Dict[str, PaymentAdapter] = {}
        self._by_method: Dict[str, PaymentAdapter] = {}
        for adapter in adapters:
            self._by_name[adapter.name] = adapter
            for method in adapter.payment_methods:
                if method in self._by_method:
                    raise ValueError(f"Payment method {method!r} is bound to two adapters")
                self._by_method[method] = adapter

    @property
    def payment_methods(self) -> frozenset:
        return frozenset(self._by_method)

    @property
    def provider_names(self) -> frozenset:
        return frozenset(self._by_name)

    def for_method(self, payment_method: str) -> PaymentAdapter:
        adapter = self._by_method.get(payment_method)
        if adapter is None:
            raise ValidationError(
                "Unsupported payment method",
                errors=[{"field": "paymentMethod", "message": f"Unsupported payment method: {payment_method}"}],
            )
        return adapter

    def for_provider(self, name: str) -> PaymentAdapter:
        adapter = self._by_name.get(name)
        if adapter is None:
            raise NotFound(f"Unknown payment provider: {name}")
        return adapter

    def close(self) -> None:
        for adapter in self._by_name.values():
            adapter.close()


def build_registry(settings: Settings) -> AdapterRegistry:
    from paycore.adapters.paypal_adapter import PayPalAdapter
    from paycore.adapters.stp_adapter import STPAdapter
    from paycore.adapters.stripe_adapter import StripeAdapter

    return AdapterRegistry([
        StripeAdapter(settings),
        PayPalAdapter(settings),
        STPAdapter(settings),
    ])


@lru_cache()
def get_registry() -> AdapterRegistry:
    """Process-wide registry; FastAPI dependency."""
    return build_registry(get_settings())
