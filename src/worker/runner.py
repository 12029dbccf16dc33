# src/worker/runner.py
"""
Запускалка воркера выплат.
"""

from __future__ import annotations

import asyncio
from typing import List

from src.common.logger import log_error, log_info
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventBus
from src.infra.redis_client import RedisClient
from src.services.payments.dependencies import Services, build_services
from src.worker.base import BaseWorker
from src.worker.payouts import PayoutWorker


async def run_workers(services: Services | None = None) -> None:
    """
    Запускает PayoutWorker.

    Args:
        services: Готовый граф сервисов. При запуске через main.py в режиме
                  all передаётся общий граф; иначе инфраструктура поднимается здесь.

    Note:
        PAYOUT_WORKER_INSTANCES_COUNT масштабирует контейнеры; пакеты одной
        периодичности между ними сериализует Redis-блокировка.
    """
    await log_info("Запуск PayoutWorker...")

    own_infra = services is None
    if own_infra:
        db = DatabaseManager.from_settings()
        redis = RedisClient.from_settings()
        event_bus = EventBus.from_settings()
        await db.connect()
        await redis.connect()
        await event_bus.connect()
        services = build_services(db, redis, event_bus)

    workers: List[BaseWorker] = [
        PayoutWorker(services.event_bus, services.payouts),
    ]

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров")

        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки")
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()

        if own_infra:
            await services.http.aclose()
            await services.event_bus.disconnect()
            await services.redis.disconnect()
            await services.db.disconnect()

        await log_info("Воркеры остановлены")


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
