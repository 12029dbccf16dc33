# src/shared/events/payment_events.py
"""
События домена платежей.
Публикуются после фиксации транзакции сверки вебхука или операции API.
Суммы в минорных единицах валюты.
"""

from __future__ import annotations

from typing import Literal

from src.shared.events.base import DomainEvent


class PaymentAuthorized(DomainEvent):
    """Авторизация подтверждена провайдером."""

    event_type: Literal["payment.authorized"] = "payment.authorized"

    payment_id: str
    ride_id: str
    provider: str
    amount_minor: int
    currency: str
    driver_id: str | None = None


class PaymentCaptured(DomainEvent):
    """Средства списаны, распределение зафиксировано."""

    event_type: Literal["payment.captured"] = "payment.captured"

    payment_id: str
    ride_id: str
    provider: str
    payment_type: str
    amount_minor: int
    currency: str
    driver_amount_minor: int = 0
    operator_amount_minor: int = 0
    extras_minor: int = 0


class PaymentFailed(DomainEvent):
    """Авторизация или списание отклонены."""

    event_type: Literal["payment.failed"] = "payment.failed"

    payment_id: str
    ride_id: str
    provider: str
    reason: str | None = None


class PaymentRefunded(DomainEvent):
    """Возврат подтверждён провайдером."""

    event_type: Literal["payment.refunded"] = "payment.refunded"

    payment_id: str
    ride_id: str
    provider: str
    amount_minor: int
    currency: str
    refund_id: str | None = None


class RideCancelled(DomainEvent):
    """Поездка отменена, возврат (если был) инициирован."""

    event_type: Literal["ride.cancelled"] = "ride.cancelled"

    ride_id: str
    reason: str | None = None
    refund_id: str | None = None
    refunded_amount_minor: int = 0
