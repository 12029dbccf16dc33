# src/services/payments/providers/__init__.py
"""
Адаптеры платёжных провайдеров и реестр по имени.
"""

from __future__ import annotations

import httpx

from src.common.constants import ProviderName
from src.common.exceptions import ValidationError
from src.services.payments.providers.adyen import AdyenProvider
from src.services.payments.providers.base import (
    NormalizedWebhookEvent,
    PaymentProvider,
    ProviderOutcome,
    ProviderResult,
    WebhookEventType,
)
from src.services.payments.providers.rapyd import RapydProvider
from src.services.payments.providers.retry import RetryPolicy
from src.services.payments.providers.stripe import StripeProvider


class ProviderRegistry:
    """Провайдеры по имени (adyen, rapyd, stripe)."""

    def __init__(self, providers: dict[str, PaymentProvider]) -> None:
        self._providers = dict(providers)

    def get(self, name: str) -> PaymentProvider:
        provider = self._providers.get(str(name).lower())
        if provider is None:
            raise ValidationError(f"unknown payment provider: {name}", {"provider": name})
        return provider

    def __contains__(self, name: object) -> bool:
        return str(name).lower() in self._providers

    def names(self) -> list[str]:
        return sorted(self._providers)


def build_providers(http: httpx.AsyncClient, retry: RetryPolicy | None = None) -> ProviderRegistry:
    """Собирает все адаптеры из настроек на общем httpx-клиенте."""
    retry = retry or RetryPolicy.from_settings()
    return ProviderRegistry(
        {
            ProviderName.ADYEN.value: AdyenProvider.from_settings(http, retry),
            ProviderName.RAPYD.value: RapydProvider.from_settings(http, retry),
            ProviderName.STRIPE.value: StripeProvider.from_settings(http, retry),
        }
    )


__all__ = [
    "AdyenProvider",
    "NormalizedWebhookEvent",
    "PaymentProvider",
    "ProviderOutcome",
    "ProviderRegistry",
    "ProviderResult",
    "RapydProvider",
    "RetryPolicy",
    "StripeProvider",
    "WebhookEventType",
    "build_providers",
]
