"""
Factory for payment provider adapters and the provider registry.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.services.provider_registry import ProviderRegistry
from core.logging_config import get_logger
from core.settings import PaymentSettings, ProviderConfig, payment_settings
from domain.payment.entity import ProviderName
from infrastructure.external.payments.base import BasePaymentClient


logger = get_logger(__name__)


def _adapter_class(name: ProviderName) -> type[BasePaymentClient]:
    if name is ProviderName.IYZILINK:
        from .iyzilink_client import IyzilinkClient
        return IyzilinkClient
    if name is ProviderName.STRIPE:
        from .stripe_client import StripeClient
        return StripeClient
    if name is ProviderName.PAYPAL:
        from .paypal_client import PaypalClient
        return PaypalClient
    if name is ProviderName.SQUARE:
        from .square_client import SquareClient
        return SquareClient
    raise ValueError(f"Unsupported payment provider: {name}")


def build_payment_provider(
    name: "str | ProviderName",
    config: ProviderConfig,
    settings: Optional[PaymentSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BasePaymentClient:
    s = settings or payment_settings
    provider = ProviderName.parse(name)
    kwargs = {
        "timeouts": s.timeouts.model_dump(include={"connect", "read", "write", "total"}),
        "retry": {"max": s.retry.max, "base": s.retry.base_backoff},
        "transport": transport,
    }
    if provider is ProviderName.STRIPE:
        kwargs["tolerance_seconds"] = s.webhook.tolerance_seconds
    return _adapter_class(provider)(config, **kwargs)


def build_provider_registry(
    settings: Optional[PaymentSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Register every enabled provider from settings and freeze the registry."""
    s = settings or payment_settings
    registry = ProviderRegistry()
    for name, config in s.providers.items():
        if not config.enabled:
            logger.info("payment_provider_disabled", provider=name)
            continue
        adapter = build_payment_provider(name, config, s, transport=transport)
        registry.register(name, config, adapter, default=(name == s.default_provider))
    return registry.freeze()


__all__ = ["build_payment_provider", "build_provider_registry"]
