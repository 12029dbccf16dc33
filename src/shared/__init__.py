# src/shared/__init__.py
"""
Общий код между сервисом платежей и воркером выплат.

Модули:
- events: схемы событий RabbitMQ
- models: DTO поездок, платежей и выплат
"""

__all__: list[str] = []
