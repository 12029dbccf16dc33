# src/core/fares/service.py
"""
Сервис тарифов: загрузка тарифа с кэшем в Redis и расчёт стоимости поездки.
"""

from __future__ import annotations

from decimal import Decimal

from src.common.constants import RATE_TABLE_CACHE_PREFIX
from src.common.logger import log_error, log_warning
from src.core.fares.calculator import build_default_rate, compute_fare, operator_share, tip_bounds
from src.core.fares.models import FareBreakdown, RateTableEntry, TripMetrics
from src.core.fares.repository import RateTableRepository
from src.infra.redis_client import RedisClient
from src.shared.models.ride import RideDTO


def metrics_for_ride(ride: RideDTO) -> TripMetrics:
    return TripMetrics(
        distance_miles=ride.distance_miles,
        duration_minutes=ride.duration_minutes,
        passenger_count=ride.rider_count,
        pet_count=ride.pet_count,
    )


class FareService:
    """
    Тарифы и расчёт стоимости.

    Тариф кэшируется в Redis с явным TTL. Если Redis недоступен,
    тариф читается напрямую из БД.
    """

    def __init__(
        self,
        rates: RateTableRepository,
        redis: RedisClient,
        default_rate: RateTableEntry | None = None,
        cache_ttl: int | None = None,
    ) -> None:
        from src.config import settings

        self._rates = rates
        self._redis = redis
        self._default_rate = default_rate or build_default_rate(settings.fares)
        self._cache_ttl = cache_ttl if cache_ttl is not None else settings.redis_ttl.RATE_TABLE_TTL

    @property
    def default_rate(self) -> RateTableEntry:
        return self._default_rate

    async def get_rate(self, ride_type_id: str | None) -> RateTableEntry | None:
        """Тариф по id типа поездки: сначала кэш, затем БД."""
        if not ride_type_id:
            return None

        cache_key = f"{RATE_TABLE_CACHE_PREFIX}:{ride_type_id}"
        try:
            cached = await self._redis.get_model(cache_key, RateTableEntry)
        except Exception as e:
            await log_error(f"Кэш тарифов недоступен: {e}")
            cached = None
        if cached is not None:
            return cached

        rate = await self._rates.get_by_id(ride_type_id)
        if rate is not None:
            try:
                await self._redis.set_model(cache_key, rate, ttl=self._cache_ttl)
            except Exception as e:
                await log_error(f"Не удалось закэшировать тариф {ride_type_id}: {e}")
        return rate

    async def price(self, ride_type_id: str | None, metrics: TripMetrics) -> FareBreakdown:
        """Стоимость по типу поездки. Применение тарифа по умолчанию всегда логируется."""
        rate = await self.get_rate(ride_type_id)
        breakdown = compute_fare(rate, metrics, default_rate=self._default_rate)
        if breakdown.used_fallback_rate:
            await log_warning(
                "fare computed from fallback rate",
                extra={"ride_type_id": ride_type_id},
            )
        return breakdown

    async def price_ride(self, ride: RideDTO) -> FareBreakdown:
        return await self.price(ride.ride_type_id, metrics_for_ride(ride))

    async def operator_share_for_ride(self, ride: RideDTO) -> Decimal:
        rate = await self.get_rate(ride.ride_type_id) or self._default_rate
        return operator_share(rate, metrics_for_ride(ride))

    async def tip_bounds_for_ride(self, ride: RideDTO) -> tuple[Decimal, Decimal | None]:
        rate = await self.get_rate(ride.ride_type_id)
        return tip_bounds(rate, default_rate=self._default_rate)
