# src/infra/redis_client.py
"""
Клиент Redis: кэш тарифов и распределённые блокировки пакетов выплат.
"""

from __future__ import annotations

import json
from typing import Any, TypeVar, Type

import redis.asyncio as redis
from redis.asyncio.lock import Lock
from pydantic import BaseModel

from src.common.logger import log_error, log_info

T = TypeVar("T", bound=BaseModel)


class RedisClient:
    """
    Асинхронный клиент Redis с пространством имён ключей.

    - get/set с TTL
    - типизированные get_model/set_model (Pydantic)
    - JSON-значения
    - блокировки (redis.asyncio.lock.Lock)
    """

    def __init__(self, url: str, namespace: str = "settlement", max_connections: int = 50) -> None:
        self._url = url
        self._namespace = namespace
        self._max_connections = max_connections
        self._client: redis.Redis | None = None

    @classmethod
    def from_settings(cls) -> "RedisClient":
        from src.config import settings
        return cls(
            url=settings.redis.url,
            namespace=settings.redis.REDIS_NAMESPACE,
            max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        )

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def connect(self) -> None:
        """Подключается к Redis и проверяет соединение."""
        if self._client is not None:
            return

        await log_info("Подключение к Redis...")
        self._client = redis.from_url(
            self._url,
            max_connections=self._max_connections,
            decode_responses=True,
        )
        await self._client.ping()
        await log_info("Подключение к Redis установлено")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто")

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        return await self.client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        return await self.client.set(self._make_key(key), value, ex=ttl)

    async def delete(self, key: str) -> int:
        return await self.client.delete(self._make_key(key))

    async def exists(self, key: str) -> bool:
        return await self.client.exists(self._make_key(key)) > 0

    # =========================================================================
    # ТИПИЗИРОВАННЫЕ ОПЕРАЦИИ (PYDANTIC)
    # =========================================================================

    async def get_model(self, key: str, model_class: Type[T]) -> T | None:
        """
        Читает и валидирует Pydantic модель.
        Повреждённое значение считается промахом кэша.
        """
        data = await self.get(key)
        if data is None:
            return None

        try:
            return model_class.model_validate_json(data)
        except ValueError as e:
            await log_error(f"Ошибка десериализации модели {model_class.__name__}: {e}")
            return None

    async def set_model(self, key: str, model: BaseModel, ttl: int | None = None) -> bool:
        return await self.set(key, model.model_dump_json(), ttl=ttl)

    async def get_json(self, key: str) -> Any:
        data = await self.get(key)
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    async def set_json(self, key: str, data: Any, ttl: int | None = None) -> bool:
        return await self.set(key, json.dumps(data, ensure_ascii=False, default=str), ttl=ttl)

    # =========================================================================
    # БЛОКИРОВКИ
    # =========================================================================

    def lock(self, key: str, ttl: int, blocking_timeout: float | None = None) -> Lock:
        """
        Распределённая блокировка (SET NX + токен владельца).

        Example:
            async with redis_client.lock("payout_batch_lock:daily", ttl=3600):
                ...
        """
        return self.client.lock(
            self._make_key(key),
            timeout=ttl,
            blocking_timeout=blocking_timeout,
        )

    async def health_check(self) -> bool:
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False
