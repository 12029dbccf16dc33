# src/infra/database.py
"""
Менеджер PostgreSQL.
Пул соединений asyncpg, повтор при обрыве связи, транзакции и
применение схемы из migrations/init.sql.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncGenerator, Callable, TypeVar

import asyncpg
from asyncpg import Connection, Pool, Record

from src.common.logger import log_error, log_info, log_warning
from src.common.constants import TypeMsg

T = TypeVar("T")

# Идентификатор advisory-блокировки для миграции схемы
SCHEMA_LOCK_ID = 482_193_771

_CONNECTION_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionRefusedError,
    OSError,
)


def retry_on_connection_error(
    max_attempts: int = 3,
    delay: float = 1.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Повторяет корутину при ошибках подключения к БД.
    Задержка растёт линейно: delay * номер попытки.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Exception | None = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except _CONNECTION_ERRORS as e:
                    last_error = e
                    if attempt < max_attempts:
                        await log_info(
                            f"Ошибка подключения к БД (попытка {attempt}/{max_attempts}): {e}",
                            type_msg=TypeMsg.WARNING,
                        )
                        await asyncio.sleep(delay * attempt)
                    else:
                        await log_error(f"БД недоступна после {max_attempts} попыток: {e}")

            raise last_error  # type: ignore

        return wrapper  # type: ignore

    return decorator


class DatabaseManager:
    """
    Пул соединений к PostgreSQL.

    Создаётся явно в точке сборки приложения и передаётся в
    репозитории. Методы execute/fetch/fetchrow/fetchval совпадают
    по сигнатуре с asyncpg.Connection, поэтому репозиторий может
    работать как через пул, так и внутри транзакции.
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: int = 60,
    ) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout
        self._pool: Pool | None = None

    @classmethod
    def from_settings(cls) -> "DatabaseManager":
        from src.config import settings
        return cls(
            dsn=settings.database.dsn,
            min_size=settings.database.DB_MIN_POOL_SIZE,
            max_size=settings.database.DB_MAX_POOL_SIZE,
            command_timeout=settings.database.DB_COMMAND_TIMEOUT,
        )

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise RuntimeError("Пул соединений не инициализирован. Вызовите connect() сначала.")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @retry_on_connection_error(max_attempts=3, delay=1.0)
    async def connect(self) -> None:
        """Создаёт пул соединений."""
        if self._pool is not None:
            return

        await log_info("Подключение к PostgreSQL...")
        self._pool = await asyncpg.create_pool(
            dsn=self._dsn,
            min_size=self._min_size,
            max_size=self._max_size,
            command_timeout=self._command_timeout,
        )
        await log_info("Подключение к PostgreSQL установлено")

    async def disconnect(self) -> None:
        """Закрывает пул соединений."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            await log_info("Соединение с PostgreSQL закрыто")

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Соединение из пула на время блока."""
        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """
        Транзакция: commit при выходе из блока, rollback при исключении.

        Example:
            async with db.transaction() as conn:
                row = await conn.fetchrow("SELECT ... FOR UPDATE", payment_id)
                await conn.execute("UPDATE payments ...")
        """
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    @retry_on_connection_error()
    async def execute(self, query: str, *args: Any) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    @retry_on_connection_error()
    async def fetch(self, query: str, *args: Any) -> list[Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    @retry_on_connection_error()
    async def fetchrow(self, query: str, *args: Any) -> Record | None:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @retry_on_connection_error()
    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args, column=column)

    async def health_check(self) -> bool:
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            await log_error(f"Health check PostgreSQL failed: {e}")
            return False

    async def apply_schema(self) -> None:
        """
        Применяет migrations/init.sql под advisory-блокировкой,
        чтобы параллельно стартующие процессы не конфликтовали.
        """
        from src.config.loader import get_project_root

        schema_path = get_project_root() / "migrations" / "init.sql"
        if not schema_path.exists():
            await log_error(f"Файл схемы БД не найден: {schema_path}")
            return

        schema_sql = schema_path.read_text(encoding="utf-8")
        await log_info("Применение схемы БД...")
        try:
            async with self.transaction() as conn:
                await conn.execute("SELECT pg_advisory_xact_lock($1)", SCHEMA_LOCK_ID)
                await conn.execute(schema_sql)
        except asyncpg.PostgresError as e:
            if "already exists" in str(e) or "deadlock detected" in str(e):
                await log_warning(f"Схема уже применяется другим процессом: {e}")
                return
            raise
        await log_info("Схема БД применена")
