# src/services/payments/providers/retry.py
"""
Ограниченные повторы вызовов провайдера.
Экспоненциальная задержка с джиттером: base * 2^(n-1) + U(0, base), не больше max_delay.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from src.common.logger import log_warning

T = TypeVar("T")


class TransientProviderFailure(Exception):
    """Временный сбой провайдера: таймаут, сеть, HTTP 5xx/429."""


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        from src.config import settings
        section = settings.provider_retry
        return cls(
            max_attempts=section.MAX_ATTEMPTS,
            base_delay=section.BASE_DELAY,
            max_delay=section.MAX_DELAY,
        )

    def delay_for(self, attempt: int) -> float:
        backoff = self.base_delay * (2 ** (attempt - 1))
        return min(self.max_delay, backoff + random.uniform(0, self.base_delay))

    async def run(self, func: Callable[[], Awaitable[T]], operation: str = "") -> T:
        """
        Выполняет func, повторяя при TransientProviderFailure.
        После исчерпания попыток пробрасывает последнюю ошибку.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except TransientProviderFailure as e:
                if attempt >= attempts:
                    raise
                delay = self.delay_for(attempt)
                await log_warning(
                    f"{operation}: временный сбой провайдера (попытка {attempt}/{attempts}), "
                    f"повтор через {delay:.2f}s: {e}"
                )
                await self.sleep(delay)
        raise RuntimeError("unreachable")
