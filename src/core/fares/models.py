# src/core/fares/models.py
"""
Модели расчёта стоимости поездки.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class RateTableEntry(BaseModel):
    """
    Тариф типа поездки. Неизменяем после того, как на него сослалась поездка.
    Кэшируется в Redis (set_model/get_model).
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str = ""
    driver_rate_per_mile: Decimal
    operator_rate_per_minute: Decimal
    per_person_fee: Decimal = Decimal("0")
    per_pet_fee: Decimal = Decimal("0")
    min_tip: Decimal = Decimal("0")
    max_tip: Decimal | None = None
    vehicle_capacity: int = 4
    multi_vehicle_bonus: Decimal = Decimal("0")
    currency: str = "USD"


@dataclass(frozen=True)
class TripMetrics:
    """Параметры поездки для расчёта. None означает «не передано»."""
    distance_miles: Decimal | float | int | None = None
    duration_minutes: Decimal | float | int | None = None
    passenger_count: int | None = None
    pet_count: int | None = None


@dataclass(frozen=True)
class FareBreakdown:
    """
    Разложение стоимости. Все суммы уже округлены до минорной единицы,
    поэтому driver_amount + operator_amount + extras + multi_vehicle_tip == total_fare.
    """
    driver_amount: Decimal
    operator_amount: Decimal
    extras: Decimal
    multi_vehicle_tip: Decimal
    total_fare: Decimal
    vehicle_count: int
    currency: str
    used_fallback_rate: bool = False

    @property
    def driver_payable(self) -> Decimal:
        """Доля водителя в сохранённом распределении (включая бонус за несколько машин)."""
        return self.driver_amount + self.multi_vehicle_tip
