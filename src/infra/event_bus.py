# src/infra/event_bus.py
"""
Шина событий на базе RabbitMQ (topic exchange).
Публикация доменных событий расчётов и подписка воркеров.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Awaitable

import aio_pika
from aio_pika import Message, ExchangeType
from aio_pika.abc import AbstractConnection, AbstractChannel, AbstractExchange, AbstractQueue

from src.common.logger import log_debug, log_error, log_info
from src.shared.events.base import DomainEvent

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    RabbitMQ: routing key = event_type.

    Очередь на тип события, несколько обработчиков на очередь.
    Ошибка публикации логируется и не прерывает бизнес-операцию:
    состояние уже зафиксировано в БД, событие носит уведомительный характер.
    """

    def __init__(self, url: str, exchange_name: str = "settlement.events", prefetch_count: int = 10) -> None:
        self._url = url
        self._exchange_name = exchange_name
        self._prefetch_count = prefetch_count
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handlers: dict[str, list[tuple[EventHandler, type[DomainEvent]]]] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @classmethod
    def from_settings(cls) -> "EventBus":
        from src.config import settings
        return cls(
            url=settings.rabbitmq.url,
            exchange_name=settings.rabbitmq.RABBITMQ_EXCHANGE,
            prefetch_count=settings.rabbitmq.RABBITMQ_PREFETCH_COUNT,
        )

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        if self.is_connected:
            return

        await log_info("Подключение к RabbitMQ...")
        self._connection = await aio_pika.connect_robust(self._url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        await log_info("Подключение к RabbitMQ установлено")

    async def disconnect(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            await log_info("Соединение с RabbitMQ закрыто")

    async def publish(self, event: DomainEvent) -> None:
        if not self.is_connected or self._exchange is None:
            await log_error(f"Событие {event.event_type} не опубликовано: нет соединения с RabbitMQ")
            return

        try:
            message = Message(
                body=event.to_json().encode(),
                content_type="application/json",
                message_id=event.event_id,
                timestamp=datetime.now(timezone.utc),
            )
            await self._exchange.publish(message, routing_key=event.event_type)
            await log_debug(f"Событие опубликовано: {event.event_type}")
        except Exception as e:
            await log_error(f"Ошибка публикации события {event.event_type}: {e}")

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        model: type[DomainEvent] = DomainEvent,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывает обработчик на события типа event_type.
        Тело сообщения валидируется моделью model перед вызовом.
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            await log_error(f"Подписка на {event_type} невозможна: нет соединения с RabbitMQ")
            return

        self._handlers.setdefault(event_type, []).append((handler, model))

        queue_name = queue_name or f"settlement.{event_type.replace('.', '_')}"
        if queue_name not in self._queues:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=event_type)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(event_type))

        await log_debug(f"Подписка на события: {event_type}")

    def _make_consumer(self, event_type: str) -> Callable[[aio_pika.abc.AbstractIncomingMessage], Awaitable[None]]:
        async def consumer(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            async with message.process():
                await self.dispatch(event_type, message.body)

        return consumer

    async def dispatch(self, event_type: str, body: bytes) -> None:
        """Вызывает обработчики типа события. Ошибка одного обработчика не мешает остальным."""
        for handler, model in self._handlers.get(event_type, []):
            try:
                event = model.model_validate_json(body)
            except ValueError as e:
                await log_error(f"Некорректное сообщение {event_type}: {e}")
                continue
            try:
                await handler(event)
            except Exception as e:
                await log_error(f"Ошибка в обработчике {event_type}: {e}", exc_info=True)

    async def health_check(self) -> bool:
        return self.is_connected
