# src/shared/events/__init__.py
"""
Схемы событий для RabbitMQ.

- payment_events: авторизация, списание, отказ, возврат, отмена поездки
- payout_events: запуск пакета, результат выплаты, итог пакета

Все события содержат event_id для дедупликации.
"""

from src.shared.events.base import DomainEvent, EventMetadata
from src.shared.events.payment_events import (
    PaymentAuthorized,
    PaymentCaptured,
    PaymentFailed,
    PaymentRefunded,
    RideCancelled,
)
from src.shared.events.payout_events import (
    PayoutTriggerRequested,
    PayoutCompleted,
    PayoutFailed,
    PayoutBatchFinished,
)

__all__ = [
    "DomainEvent",
    "EventMetadata",
    "PaymentAuthorized",
    "PaymentCaptured",
    "PaymentFailed",
    "PaymentRefunded",
    "RideCancelled",
    "PayoutTriggerRequested",
    "PayoutCompleted",
    "PayoutFailed",
    "PayoutBatchFinished",
]
