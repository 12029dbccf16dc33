# src/services/__init__.py
"""
Сервисы приложения.

- payments: FastAPI API, провайдеры, сверка вебхуков, возвраты
- payouts: расписание и оркестрация выплат водителям и оператору

Общая PostgreSQL, события через RabbitMQ, Redis для кэша тарифов
и блокировок пакетов выплат.
"""

__all__: list[str] = []
