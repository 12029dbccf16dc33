#!/usr/bin/env python3
# main.py
"""
Главная точка входа сервиса расчётов по поездкам.
Запускает Payments Service, воркер выплат или оба компонента.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, setup_logging
from src.config import settings

VALID_MODES = ("payments_service", "payout_worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def prepare_database() -> None:
    """Применяет migrations/init.sql (идемпотентно, под advisory lock)."""
    from src.infra.database import DatabaseManager

    db = DatabaseManager.from_settings()
    await db.connect()
    try:
        await db.apply_schema()
        await log_info("Схема БД применена", type_msg=TypeMsg.DEBUG)
    finally:
        await db.disconnect()


async def run_payments_service() -> None:
    """Запускает Payments Service (платежи, возвраты, вебхуки, выплаты)."""
    import uvicorn

    await log_info(f"Запуск Payments Service на порту {settings.deployment.PAYMENTS_SERVICE_PORT}...")

    config = uvicorn.Config(
        "src.services.payments.app:app",
        host=settings.deployment.PAYMENTS_SERVICE_HOST,
        port=settings.deployment.PAYMENTS_SERVICE_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Payments Service: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_payout_worker() -> None:
    """Запускает воркер плановых выплат."""
    from src.worker.runner import run_workers

    await run_workers()


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: payments_service, payout_worker или all.
              Если None, берётся system.COMPONENT_MODE.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    mode = mode or settings.system.COMPONENT_MODE
    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим '{mode}'")
        sys.exit(1)

    await log_info(f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}, запуск в режиме '{mode}'")

    try:
        await prepare_database()

        if mode == "payments_service":
            runners = [run_payments_service()]
        elif mode == "payout_worker":
            runners = [run_payout_worker()]
        else:
            runners = [run_payments_service(), run_payout_worker()]

        _running_tasks = [asyncio.create_task(r) for r in runners]
        await asyncio.gather(*_running_tasks)

    except asyncio.CancelledError:
        await log_info("Остановка по сигналу")
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        await log_info("Приложение остановлено")


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Ride Settlement — расчёты по поездкам и выплаты водителям

Использование:
    python main.py [mode]

Режимы:
    payments_service       — Payments Service (:8087)
    payout_worker          — воркер плановых выплат
    all                    — оба компонента в одном процессе

Без аргумента режим берётся из system.COMPONENT_MODE (config.json).
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
