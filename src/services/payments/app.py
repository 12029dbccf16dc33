# src/services/payments/app.py
"""
FastAPI приложение для Payments Service.

Endpoints:
- POST /api/v1/fares/quote - расчёт стоимости
- POST /api/v1/rides/{ride_id}/authorize - авторизация оплаты поездки
- POST /api/v1/payments/{id}/capture - списание
- POST /api/v1/payments/{id}/refund - ручной возврат
- GET /api/v1/payments/{id} - получить платёж
- GET /api/v1/rides/{ride_id}/tip-bounds - границы чаевых
- POST /api/v1/rides/{ride_id}/tips - чаевые водителю
- GET /api/v1/rides/{ride_id}/refund-quote - котировка возврата
- POST /api/v1/rides/{ride_id}/cancel - отмена поездки
- POST /api/v1/webhooks/{provider} - вебхуки провайдеров
- POST /api/v1/payouts/trigger/{cadence} - ручной запуск пакета выплат
- POST /api/v1/payouts/instant - мгновенная выплата
- GET /api/v1/payouts/stats - статистика выплат
- GET /api/v1/payouts/{recipient_type}/{recipient_id} - история выплат
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from decimal import Decimal
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Query, Request, status
from pydantic import BaseModel, Field

from src.common.constants import PayoutCadence, RecipientType
from src.common.exceptions import PaymentError, ValidationError, payment_error_handler
from src.core.fares.models import TripMetrics
from src.services.payments.dependencies import (
    cleanup_dependencies,
    get_payment_service,
    get_payout_orchestrator,
    get_refund_engine,
    get_services,
    get_webhook_reconciler,
    init_dependencies,
)
from src.services.payments.refunds import RefundQuoteEngine
from src.services.payments.service import PaymentService
from src.services.payments.webhooks import WebhookReconciler
from src.services.payouts.orchestrator import PayoutOrchestrator
from src.shared.models.common import ErrorResponse, HealthStatus
from src.shared.models.payment import PaymentDTO, RefundStatus
from src.shared.models.payout import PayoutDTO, PayoutStats

VERSION = "0.4.0"


# === REQUEST/RESPONSE MODELS ===

class FareQuoteRequest(BaseModel):
    """Запрос расчёта стоимости."""
    ride_type_id: str | None = None
    distance_miles: Decimal | None = None
    duration_minutes: Decimal | None = None
    passenger_count: int | None = None
    pet_count: int | None = None


class FareQuoteResponse(BaseModel):
    """Разложение стоимости."""
    driver_amount: Decimal
    operator_amount: Decimal
    extras: Decimal
    multi_vehicle_tip: Decimal
    total_fare: Decimal
    vehicle_count: int
    currency: str
    used_fallback_rate: bool


class AuthorizeRequest(BaseModel):
    """Авторизация оплаты поездки."""
    payment_method: dict[str, Any] = Field(default_factory=dict)
    provider: str | None = None
    driver_id: str | None = None


class CaptureRequest(BaseModel):
    """Списание; без суммы списывается вся авторизация."""
    amount_minor: int | None = None


class RefundRequest(BaseModel):
    """Ручной возврат части списанной суммы."""
    amount_minor: int
    reason: str | None = None


class TipRequest(BaseModel):
    """Чаевые водителю."""
    amount: Decimal
    payment_method: dict[str, Any] = Field(default_factory=dict)
    provider: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class RefundResponse(BaseModel):
    refund_id: str | None
    refunded_amount_minor: int
    status: RefundStatus
    currency: str


class RefundQuoteResponse(BaseModel):
    refundable_amount_minor: int
    total_fare_minor: int
    operator_share_minor: int
    provider_fee_minor: int
    captured_amount_minor: int
    currency: str
    already_refunded_minor: int = 0


class CancelResponse(BaseModel):
    ride_id: str
    status: str
    refund: RefundResponse | None = None
    voided_payment_ids: list[str] = Field(default_factory=list)


class TipBoundsResponse(BaseModel):
    ride_id: str
    min_tip: Decimal
    max_tip: Decimal | None


class WebhookAck(BaseModel):
    """Ответ провайдеру: доставка принята."""
    accepted: bool = True
    received: int = 0
    applied: int = 0
    duplicates: int = 0
    ignored: int = 0


class TriggerResponse(BaseModel):
    cadence: PayoutCadence
    status: str = "accepted"


class InstantPayoutRequest(BaseModel):
    recipient_type: RecipientType = RecipientType.DRIVER
    recipient_id: str
    amount_minor: int | None = None


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    from src.infra.database import DatabaseManager
    from src.infra.event_bus import EventBus
    from src.infra.redis_client import RedisClient

    db = DatabaseManager.from_settings()
    redis = RedisClient.from_settings()
    event_bus = EventBus.from_settings()

    await db.connect()
    await redis.connect()
    await event_bus.connect()

    await init_dependencies(db, redis, event_bus)

    yield

    await cleanup_dependencies()
    await event_bus.disconnect()
    await redis.disconnect()
    await db.disconnect()


# === APP ===

app = FastAPI(
    title="Payments Service",
    description="Расчёт стоимости поездок, платежи, возвраты и выплаты водителям.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)
app.add_exception_handler(PaymentError, payment_error_handler)

_ERRORS = {
    400: {"model": ErrorResponse},
    402: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# === HEALTH CHECK ===

@app.get("/health", response_model=HealthStatus, tags=["Health"])
async def health_check() -> HealthStatus:
    """Проверка здоровья сервиса и его зависимостей."""
    services = get_services()
    checks = {
        "postgres": await services.db.health_check(),
        "redis": await services.redis.health_check(),
        "rabbitmq": await services.event_bus.health_check(),
    }
    return HealthStatus(
        status="healthy" if all(checks.values()) else "degraded",
        service="payments_service",
        version=VERSION,
        dependencies={name: "ok" if ok else "unavailable" for name, ok in checks.items()},
    )


# === FARES ===

@app.post(
    "/api/v1/fares/quote",
    response_model=FareQuoteResponse,
    tags=["Fares"],
    summary="Рассчитать стоимость",
)
async def quote_fare(
    request: FareQuoteRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> FareQuoteResponse:
    """
    Стоимость по таблице тарифов.

    Неизвестный тип поездки считается по тарифу по умолчанию
    (`used_fallback_rate=true`).
    """
    metrics = TripMetrics(
        distance_miles=request.distance_miles,
        duration_minutes=request.duration_minutes,
        passenger_count=request.passenger_count,
        pet_count=request.pet_count,
    )
    breakdown = await service.quote_fare(request.ride_type_id, metrics)
    return FareQuoteResponse(**asdict(breakdown))


# === RIDES ===

@app.post(
    "/api/v1/rides/{ride_id}/authorize",
    response_model=PaymentDTO,
    responses=_ERRORS,
    tags=["Rides"],
    summary="Авторизовать оплату поездки",
)
async def authorize_ride(
    ride_id: str,
    request: AuthorizeRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> PaymentDTO:
    """
    Авторизовать сумму поездки у провайдера.

    `driver_id` — выбранный клиентом водитель; поездка перейдёт в `accepted`
    после подтверждения авторизации вебхуком.
    """
    return await service.authorize_ride(
        ride_id,
        request.payment_method,
        provider=request.provider,
        driver_id=request.driver_id,
    )


@app.get(
    "/api/v1/rides/{ride_id}/tip-bounds",
    response_model=TipBoundsResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Rides"],
    summary="Границы чаевых",
)
async def get_tip_bounds(
    ride_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> TipBoundsResponse:
    min_tip, max_tip = await service.get_tip_bounds(ride_id)
    return TipBoundsResponse(ride_id=ride_id, min_tip=min_tip, max_tip=max_tip)


@app.post(
    "/api/v1/rides/{ride_id}/tips",
    response_model=PaymentDTO,
    responses=_ERRORS,
    tags=["Rides"],
    summary="Оставить чаевые",
)
async def add_tip(
    ride_id: str,
    request: TipRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> PaymentDTO:
    """Чаевые идут водителю целиком, в пределах min/max тарифа."""
    return await service.add_tip(ride_id, request.amount, request.payment_method, provider=request.provider)


@app.get(
    "/api/v1/rides/{ride_id}/refund-quote",
    response_model=RefundQuoteResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Refunds"],
    summary="Котировка возврата",
)
async def quote_refund(
    ride_id: str,
    engine: Annotated[RefundQuoteEngine, Depends(get_refund_engine)],
) -> RefundQuoteResponse:
    """Сколько вернётся клиенту при отмене. Ничего не меняет."""
    quote = await engine.quote_refund(ride_id)
    return RefundQuoteResponse(**asdict(quote))


@app.post(
    "/api/v1/rides/{ride_id}/cancel",
    response_model=CancelResponse,
    responses=_ERRORS,
    tags=["Refunds"],
    summary="Отменить поездку",
)
async def cancel_ride(
    ride_id: str,
    request: CancelRequest,
    engine: Annotated[RefundQuoteEngine, Depends(get_refund_engine)],
) -> CancelResponse:
    """
    Отменить поездку.

    Авторизации отменяются у провайдера, списанная сумма возвращается
    за вычетом доли оператора и комиссии провайдера.
    """
    result = await engine.cancel_ride(ride_id, reason=request.reason)
    return CancelResponse(
        ride_id=result.ride_id,
        status=result.status.value,
        refund=RefundResponse(**asdict(result.refund)) if result.refund else None,
        voided_payment_ids=result.voided_payment_ids,
    )


# === PAYMENTS ===

@app.get(
    "/api/v1/payments/{payment_id}",
    response_model=PaymentDTO,
    responses={404: {"model": ErrorResponse}},
    tags=["Payments"],
    summary="Получить платёж",
)
async def get_payment(
    payment_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> PaymentDTO:
    """Получить платёж по ID."""
    return await service.get_payment(payment_id)


@app.post(
    "/api/v1/payments/{payment_id}/capture",
    response_model=PaymentDTO,
    responses=_ERRORS,
    tags=["Payments"],
    summary="Списать платёж",
)
async def capture_payment(
    payment_id: str,
    request: CaptureRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> PaymentDTO:
    """Статус `Captured` выставит вебхук CAPTURE."""
    return await service.capture_payment(payment_id, request.amount_minor)


@app.post(
    "/api/v1/payments/{payment_id}/refund",
    response_model=RefundResponse,
    responses=_ERRORS,
    tags=["Refunds"],
    summary="Ручной возврат",
)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    engine: Annotated[RefundQuoteEngine, Depends(get_refund_engine)],
) -> RefundResponse:
    """Сумма больше остатка к возврату отклоняется до вызова провайдера."""
    execution = await engine.refund_payment(payment_id, request.amount_minor, reason=request.reason)
    return RefundResponse(**asdict(execution))


# === WEBHOOKS ===

@app.post(
    "/api/v1/webhooks/{provider}",
    response_model=WebhookAck,
    tags=["Webhooks"],
    summary="Вебхук провайдера",
)
async def receive_webhook(
    provider: str,
    request: Request,
    reconciler: Annotated[WebhookReconciler, Depends(get_webhook_reconciler)],
) -> WebhookAck:
    """
    Приём уведомлений провайдера.

    Отвечаем 200 даже на неверную подпись: такие доставки записываются
    в аудит и не применяются.
    """
    body = await request.body()
    result = await reconciler.handle(provider, dict(request.headers), body)
    return WebhookAck(
        accepted=not result.rejected,
        received=result.received,
        applied=result.applied,
        duplicates=result.duplicates,
        ignored=result.ignored,
    )


# === PAYOUTS ===

@app.post(
    "/api/v1/payouts/trigger/{cadence}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={400: {"model": ErrorResponse}},
    tags=["Payouts"],
    summary="Запустить пакет выплат",
)
async def trigger_payouts(
    cadence: PayoutCadence,
    orchestrator: Annotated[PayoutOrchestrator, Depends(get_payout_orchestrator)],
    requested_by: str | None = None,
) -> TriggerResponse:
    """Пакет выполняется в фоне; параллельный запуск той же периодичности ждёт текущий."""
    if cadence == PayoutCadence.INSTANT:
        raise ValidationError("instant payouts are requested per recipient", {"cadence": cadence.value})
    orchestrator.trigger(cadence, requested_by=requested_by)
    return TriggerResponse(cadence=cadence)


@app.post(
    "/api/v1/payouts/instant",
    response_model=PayoutDTO,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
    tags=["Payouts"],
    summary="Мгновенная выплата",
)
async def instant_payout(
    request: InstantPayoutRequest,
    orchestrator: Annotated[PayoutOrchestrator, Depends(get_payout_orchestrator)],
) -> PayoutDTO:
    """Без суммы выплачивается весь накопленный баланс."""
    return await orchestrator.request_instant_payout(
        request.recipient_type,
        request.recipient_id,
        request.amount_minor,
    )


@app.get(
    "/api/v1/payouts/stats",
    response_model=PayoutStats,
    tags=["Payouts"],
    summary="Статистика выплат",
)
async def payout_stats(
    orchestrator: Annotated[PayoutOrchestrator, Depends(get_payout_orchestrator)],
    days: int | None = Query(default=None, ge=1, le=365),
) -> PayoutStats:
    return await orchestrator.get_payout_stats(days)


@app.get(
    "/api/v1/payouts/{recipient_type}/{recipient_id}",
    response_model=list[PayoutDTO],
    tags=["Payouts"],
    summary="История выплат",
)
async def payout_history(
    recipient_type: RecipientType,
    recipient_id: str,
    orchestrator: Annotated[PayoutOrchestrator, Depends(get_payout_orchestrator)],
    limit: int = Query(default=50, ge=1, le=200),
) -> list[PayoutDTO]:
    return await orchestrator.get_history(recipient_type, recipient_id, limit)


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn

    from src.config import settings

    uvicorn.run(app, host=settings.deployment.PAYMENTS_SERVICE_HOST, port=settings.deployment.PAYMENTS_SERVICE_PORT)
