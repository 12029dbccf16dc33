# src/worker/__init__.py
"""
Фоновые воркеры: расписание выплат и события из RabbitMQ.
"""

from src.worker.base import BaseWorker
from src.worker.payouts import PayoutWorker

__all__ = ["BaseWorker", "PayoutWorker"]
