# src/worker/payouts.py
"""
Воркер плановых выплат.

Для каждой периодичности (daily/weekly/monthly) крутится цикл:
спим до next_run_after, запускаем пакет, считаем следующий запуск.
Ручной запуск приходит событием payout.trigger_requested и идёт
через тот же оркестратор, поэтому пакеты одной периодичности
не пересекаются.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict

from src.common.constants import PayoutCadence, TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.infra.event_bus import EventBus
from src.services.payouts.orchestrator import SCHEDULED_CADENCES, PayoutOrchestrator
from src.shared.events.base import DomainEvent
from src.shared.events.payout_events import PayoutTriggerRequested
from src.worker.base import BaseWorker


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PayoutWorker(BaseWorker):
    """Планировщик пакетов выплат."""

    def __init__(
        self,
        event_bus: EventBus,
        orchestrator: PayoutOrchestrator,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(event_bus)
        self.orchestrator = orchestrator
        self._clock = clock

    @property
    def name(self) -> str:
        return "payouts"

    @property
    def subscriptions(self) -> Dict[str, type[DomainEvent]]:
        return {"payout.trigger_requested": PayoutTriggerRequested}

    async def start(self) -> None:
        await super().start()
        for cadence in SCHEDULED_CADENCES:
            self.spawn(self._schedule_loop(cadence), name=f"payout_schedule_{cadence.value}")

    async def handle_event(self, event: DomainEvent) -> None:
        if not isinstance(event, PayoutTriggerRequested):
            return
        try:
            cadence = PayoutCadence(event.cadence)
        except ValueError:
            await log_warning(f"Неизвестная периодичность выплат: {event.cadence}")
            return
        if cadence not in SCHEDULED_CADENCES:
            await log_warning(f"Периодичность {cadence.value} не запускается пакетом")
            return
        self.orchestrator.trigger(cadence, requested_by=event.requested_by)

    async def _schedule_loop(self, cadence: PayoutCadence) -> None:
        """Цикл одной периодичности до остановки воркера."""
        while self.is_running:
            next_run = self.orchestrator.schedule.next_run_after(cadence, self._clock())
            delay = max(0.0, (next_run - self._clock()).total_seconds())
            await log_info(
                f"Следующий пакет {cadence.value}: {next_run.isoformat()}",
                type_msg=TypeMsg.DEBUG,
            )
            await asyncio.sleep(delay)
            await self.run_once(cadence)

    async def run_once(self, cadence: PayoutCadence) -> None:
        """Один плановый пакет; ошибка не останавливает расписание."""
        try:
            await self.orchestrator.run_batch(cadence)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await log_error(f"Плановый пакет {cadence.value} упал: {e}", exc_info=True)

    async def stop(self) -> None:
        await super().stop()
        await self.orchestrator.wait_background()
