# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ProviderName(str, Enum):
    """Платёжные провайдеры."""
    ADYEN = "adyen"
    RAPYD = "rapyd"
    STRIPE = "stripe"


class PayoutCadence(str, Enum):
    """Периодичность выплат."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    INSTANT = "instant"


class RecipientType(str, Enum):
    """Получатель выплаты."""
    DRIVER = "driver"
    OPERATOR = "operator"


# Валюты без дробной части (минорная единица = основная)
ZERO_DECIMAL_CURRENCIES: frozenset[str] = frozenset({"JPY", "KRW", "CLP"})

# Кэш тарифов в Redis
RATE_TABLE_CACHE_PREFIX = "rate_table"

# Redis-блокировка пакета выплат
PAYOUT_LOCK_PREFIX = "payout_batch_lock"
