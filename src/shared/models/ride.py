# src/shared/models/ride.py
"""
DTO поездки.
Статус меняется монотонно: pending -> searching_driver -> accepted
-> in_progress -> completed; cancelled доступен из любого нетерминального.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict


class RideStatus(str, Enum):
    """Статус поездки."""
    PENDING = "pending"
    SEARCHING_DRIVER = "searching_driver"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RideDTO(BaseModel):
    """Поездка в объёме, нужном для расчётов."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    driver_id: str | None = None
    ride_type_id: str | None = None

    distance_miles: Decimal = Decimal("0")
    duration_minutes: Decimal = Decimal("0")
    rider_count: int | None = 1
    pet_count: int = 0

    status: RideStatus = RideStatus.PENDING
    # кэш расчёта; источник истины: таблица тарифов
    total_fare: Decimal | None = None
    tip_amount: Decimal = Decimal("0")
    currency: str = "USD"

    cancellation_reason: str | None = None
    created_at: datetime | None = None
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
