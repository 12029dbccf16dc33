# src/services/payments/dependencies.py
"""
Dependency Injection для Payments Service и воркера выплат.

Инфраструктура создаётся явно в корне композиции (lifespan, runner)
и передаётся сюда; сервисы собираются один раз в build_services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from src.core.fares.service import FareService
    from src.infra.database import DatabaseManager
    from src.infra.event_bus import EventBus
    from src.infra.redis_client import RedisClient
    from src.services.payments.providers import ProviderRegistry
    from src.services.payments.refunds import RefundQuoteEngine
    from src.services.payments.service import PaymentService
    from src.services.payments.webhooks import WebhookReconciler
    from src.services.payouts.orchestrator import PayoutOrchestrator


@dataclass
class Services:
    """Собранные сервисы одного процесса."""
    db: "DatabaseManager"
    redis: "RedisClient"
    event_bus: "EventBus"
    http: httpx.AsyncClient
    providers: "ProviderRegistry"
    fares: "FareService"
    payments: "PaymentService"
    refunds: "RefundQuoteEngine"
    webhooks: "WebhookReconciler"
    payouts: "PayoutOrchestrator"


def build_services(
    db: "DatabaseManager",
    redis: "RedisClient",
    event_bus: "EventBus",
    http: httpx.AsyncClient | None = None,
) -> Services:
    """Собрать граф сервисов поверх готовой инфраструктуры."""
    from src.config import settings
    from src.core.fares.repository import RateTableRepository
    from src.core.fares.service import FareService
    from src.services.payments.providers import build_providers
    from src.services.payments.refunds import RefundQuoteEngine
    from src.services.payments.repository import PaymentRepository
    from src.services.payments.service import PaymentService
    from src.services.payments.webhooks import WebhookReconciler
    from src.services.payouts.orchestrator import PayoutOrchestrator
    from src.services.payouts.repository import PayoutRepository

    http = http or httpx.AsyncClient(timeout=settings.provider_retry.TIMEOUT)
    providers = build_providers(http)

    payment_repo = PaymentRepository(db)
    payout_repo = PayoutRepository(db)
    fares = FareService(RateTableRepository(db), redis)

    payments = PaymentService(payment_repo, fares, providers, event_bus)
    refunds = RefundQuoteEngine(payment_repo, fares, providers, event_bus)
    webhooks = WebhookReconciler(payment_repo, payout_repo, fares, providers, event_bus, refunds=refunds)
    payouts = PayoutOrchestrator(payout_repo, providers, redis, event_bus)

    return Services(
        db=db,
        redis=redis,
        event_bus=event_bus,
        http=http,
        providers=providers,
        fares=fares,
        payments=payments,
        refunds=refunds,
        webhooks=webhooks,
        payouts=payouts,
    )


# Синглтон процесса
_services: Services | None = None


async def init_dependencies(
    db: "DatabaseManager",
    redis: "RedisClient",
    event_bus: "EventBus",
    http: httpx.AsyncClient | None = None,
) -> Services:
    """Инициализировать зависимости при старте приложения."""
    global _services
    _services = build_services(db, redis, event_bus, http)
    return _services


def set_services(services: Services | None) -> None:
    """Подменить граф сервисов (тесты)."""
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Сервисы не инициализированы. Вызовите init_dependencies()")
    return _services


def get_payment_service() -> "PaymentService":
    """Получить сервис платежей."""
    return get_services().payments


def get_refund_engine() -> "RefundQuoteEngine":
    """Получить движок возвратов."""
    return get_services().refunds


def get_webhook_reconciler() -> "WebhookReconciler":
    """Получить сверку вебхуков."""
    return get_services().webhooks


def get_payout_orchestrator() -> "PayoutOrchestrator":
    """Получить оркестратор выплат."""
    return get_services().payouts


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _services
    if _services is not None:
        await _services.payouts.wait_background()
        await _services.http.aclose()
    _services = None
