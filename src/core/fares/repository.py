# src/core/fares/repository.py
"""
Репозиторий таблицы тарифов (ride_types).
"""

from __future__ import annotations

from src.core.fares.models import RateTableEntry
from src.infra.database import DatabaseManager


class RateTableRepository:
    """Чтение тарифов. Тарифы только добавляются, существующие не меняются."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_by_id(self, ride_type_id: str) -> RateTableEntry | None:
        row = await self._db.fetchrow(
            """
            SELECT id, name, driver_rate_per_mile, operator_rate_per_minute,
                   per_person_fee, per_pet_fee, min_tip, max_tip,
                   vehicle_capacity, multi_vehicle_bonus, currency
            FROM ride_types
            WHERE id = $1
            """,
            ride_type_id,
        )
        if row is None:
            return None
        return RateTableEntry.model_validate(dict(row))
