# src/infra/__init__.py
"""
Инфраструктурный слой: PostgreSQL, Redis, RabbitMQ.
Клиенты создаются явно в точке сборки и передаются в сервисы.
"""

from src.infra.database import DatabaseManager
from src.infra.redis_client import RedisClient
from src.infra.event_bus import EventBus

__all__ = [
    "DatabaseManager",
    "RedisClient",
    "EventBus",
]
