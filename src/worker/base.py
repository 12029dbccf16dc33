# src/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Coroutine, Dict, List

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.infra.event_bus import EventBus
from src.shared.events.base import DomainEvent


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Подписывается на события и держит собственные фоновые задачи.
    """

    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @property
    @abstractmethod
    def subscriptions(self) -> Dict[str, type[DomainEvent]]:
        """Типы событий для подписки и модели их разбора."""

    @abstractmethod
    async def handle_event(self, event: DomainEvent) -> None:
        """Обрабатывает событие."""

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...")

        for event_type, model in self.subscriptions.items():
            await self.event_bus.subscribe(
                event_type,
                self._on_event,
                model=model,
                queue_name=f"settlement.{self.name}.{event_type.replace('.', '_')}",
            )
            await log_info(f"Воркер {self.name} подписан на {event_type}", type_msg=TypeMsg.DEBUG)

        await log_info(f"Воркер {self.name} запущен")

    async def stop(self) -> None:
        """Останавливает воркер и отменяет его задачи."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен")

    def spawn(self, coro: Coroutine, name: str | None = None) -> asyncio.Task:
        """Фоновая задача, отменяемая при stop()."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def _on_event(self, event: DomainEvent) -> None:
        if not self._running:
            return

        try:
            await log_info(f"Воркер {self.name} получил событие {event.event_type}", type_msg=TypeMsg.DEBUG)
            await self.handle_event(event)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"event_type": event.event_type, "event_id": event.event_id},
                exc_info=True,
            )
