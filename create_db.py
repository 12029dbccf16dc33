# create_db.py
"""
Создаёт базу данных из database.DB_NAME и применяет migrations/init.sql.
"""

import asyncio

import asyncpg

from src.config import settings
from src.infra.database import DatabaseManager


async def create_db():
    name = settings.database.DB_NAME

    # Подключаемся к служебной БД postgres, чтобы создать новую
    sys_conn = await asyncpg.connect(
        user=settings.database.DB_USER,
        password=settings.database.DB_PASSWORD,
        host=settings.database.DB_HOST,
        port=settings.database.DB_PORT,
        database="postgres",
    )
    try:
        exists = await sys_conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", name)
        if not exists:
            print(f"Creating database {name}...")
            await sys_conn.execute(f'CREATE DATABASE "{name}"')
            print("Database created.")
        else:
            print(f"Database {name} already exists.")
    finally:
        await sys_conn.close()

    db = DatabaseManager.from_settings()
    await db.connect()
    try:
        await db.apply_schema()
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(create_db())
