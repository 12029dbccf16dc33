# src/common/logger.py
"""
Структурированное логирование сервиса расчётов.

Консоль (цветной или JSON формат), файл с ротацией по размеру,
отдельный файл ошибок и журнал аудита вебхуков, которые не прошли
проверку подписи.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from src.common.constants import TypeMsg


DEFAULT_LOGGER = "settlement"
AUDIT_LOGGER = "webhook_audit"

_SHARED_FILE_HANDLER: logging.Handler | None = None
_SHARED_ERROR_HANDLER: logging.Handler | None = None
_LOGGING_READY: bool = False

_loggers: dict[str, logging.Logger] = {}


# =============================================================================
# ФОРМАТТЕРЫ
# =============================================================================

class JsonFormatter(logging.Formatter):
    """Одна запись лога на строку, в JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload["context"] = extra_data

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Цветной вывод для разработки."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.GRAY)
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        origin = ""
        extra_data = getattr(record, "extra_data", None) or {}
        if extra_data.get("caller_function"):
            origin = (
                f" {self.GRAY}[{extra_data.get('caller_module')}."
                f"{extra_data.get('caller_function')}():{extra_data.get('caller_line')}]{self.RESET}"
            )

        line = f"{stamp} {color}[{record.levelname}]{self.RESET}{origin} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class SizeRotatingFileHandler(RotatingFileHandler):
    """
    Пишет в файл `<name>.log`. При превышении размера текущий файл
    переименовывается в `<name>_<дата-время>.log` и открывается новый.
    """

    def __init__(self, log_dir: str, max_bytes: int, name: str, encoding: str = "utf-8"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.base_name = name
        super().__init__(
            filename=str(self.log_dir / f"{name}.log"),
            maxBytes=max_bytes,
            backupCount=0,
            encoding=encoding,
        )

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        if self.maxBytes <= 0:
            return False
        if self.stream is None:
            self.stream = self._open()
        self.stream.seek(0, 2)
        return self.stream.tell() >= self.maxBytes

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None

        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        archive = self.log_dir / f"{self.base_name}_{stamp}.log"
        if os.path.exists(self.baseFilename):
            try:
                os.rename(self.baseFilename, archive)
            except OSError:
                # файл занят другим процессом, продолжаем писать в новый
                pass

        self.stream = self._open()


# =============================================================================
# НАСТРОЙКА
# =============================================================================

def _logging_options() -> dict[str, Any]:
    """Читает секцию logging из настроек. Вне приложения возвращает значения по умолчанию."""
    options: dict[str, Any] = {
        "level": "DEBUG",
        "format": "colored",
        "to_file": False,
        "file_path": "logs/settlement.log",
        "max_bytes": 10 * 1024 * 1024,
    }
    try:
        from src.config import settings
        section = settings.logging
        if isinstance(section.LOG_LEVEL, str):
            options["level"] = section.LOG_LEVEL
        if isinstance(section.LOG_FORMAT, str):
            options["format"] = section.LOG_FORMAT
        if isinstance(section.LOG_FILE_PATH, str):
            options["file_path"] = section.LOG_FILE_PATH
        options["to_file"] = bool(section.LOG_TO_FILE)
        options["max_bytes"] = int(section.LOG_MAX_BYTES)
    except Exception:
        # настройки ещё не загружены (тесты, скрипты)
        pass
    return options


def _make_formatter(fmt: str) -> logging.Formatter:
    return JsonFormatter() if fmt == "json" else ColoredFormatter()


def setup_logging() -> None:
    """Инициализирует основной логгер и уровни сторонних библиотек. Идемпотентна."""
    global _LOGGING_READY
    if _LOGGING_READY:
        return
    _LOGGING_READY = True

    get_logger(DEFAULT_LOGGER)
    get_logger(AUDIT_LOGGER)

    for noisy in ("asyncpg", "redis", "aio_pika", "aiormq", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str = DEFAULT_LOGGER) -> logging.Logger:
    """
    Возвращает настроенный логгер (кэшируется по имени).

    Журнал аудита вебхуков при включённой записи в файл пишется
    в отдельный `webhook_audit.log`.
    """
    if name in _loggers:
        return _loggers[name]

    opts = _logging_options()

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, opts["level"].upper(), logging.DEBUG))
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_make_formatter(opts["format"]))
    logger.addHandler(console)

    if opts["to_file"]:
        global _SHARED_FILE_HANDLER, _SHARED_ERROR_HANDLER
        log_path = Path(opts["file_path"])
        log_dir = str(log_path.parent)

        if name == AUDIT_LOGGER:
            audit_handler = SizeRotatingFileHandler(log_dir, opts["max_bytes"], AUDIT_LOGGER)
            audit_handler.setFormatter(JsonFormatter())
            logger.addHandler(audit_handler)
        else:
            if _SHARED_FILE_HANDLER is None:
                file_name = log_path.stem
                service_name = os.getenv("SERVICE_NAME")
                if service_name:
                    file_name = f"{file_name}_{service_name}"
                _SHARED_FILE_HANDLER = SizeRotatingFileHandler(log_dir, opts["max_bytes"], file_name)
                _SHARED_FILE_HANDLER.setFormatter(_make_formatter(opts["format"]))
            logger.addHandler(_SHARED_FILE_HANDLER)

        if _SHARED_ERROR_HANDLER is None:
            _SHARED_ERROR_HANDLER = SizeRotatingFileHandler(log_dir, opts["max_bytes"], "error")
            _SHARED_ERROR_HANDLER.setLevel(logging.ERROR)
            _SHARED_ERROR_HANDLER.setFormatter(_make_formatter(opts["format"]))
        logger.addHandler(_SHARED_ERROR_HANDLER)

    logger.propagate = False
    _loggers[name] = logger
    return logger


# =============================================================================
# ФУНКЦИИ ЛОГИРОВАНИЯ
# =============================================================================

def _get_caller_info() -> dict[str, Any]:
    """Функция, модуль и строка кода, вызвавшего log_* (два кадра вверх по стеку)."""
    frame = inspect.currentframe()
    try:
        caller = frame.f_back.f_back if frame and frame.f_back else None
        if caller is None:
            return {}
        module = inspect.getmodule(caller)
        return {
            "caller_function": caller.f_code.co_name,
            "caller_module": module.__name__ if module else "unknown",
            "caller_line": caller.f_lineno,
        }
    except Exception:
        return {}
    finally:
        del frame


def _emit(
    logger_name: str,
    level: int,
    message: str,
    extra: dict[str, Any] | None,
    caller: dict[str, Any],
    exc_info: bool = False,
) -> None:
    logger = get_logger(logger_name)
    logger.log(level, message, extra={"extra_data": {**caller, **(extra or {})}}, exc_info=exc_info)


_LEVELS: dict[TypeMsg, int] = {
    TypeMsg.DEBUG: logging.DEBUG,
    TypeMsg.INFO: logging.INFO,
    TypeMsg.WARNING: logging.WARNING,
    TypeMsg.ERROR: logging.ERROR,
    TypeMsg.CRITICAL: logging.CRITICAL,
}


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Асинхронное логирование с уровнем из type_msg.

    Args:
        message: Текст сообщения
        type_msg: Уровень (TypeMsg)
        logger_name: Имя логгера
        extra: Дополнительный контекст (ride_id, payment_id и т.п.)
    """
    _emit(logger_name, _LEVELS.get(type_msg, logging.INFO), message, extra, _get_caller_info())


async def log_debug(
    message: str,
    logger_name: str = DEFAULT_LOGGER,
    extra: dict[str, Any] | None = None,
) -> None:
    _emit(logger_name, logging.DEBUG, message, extra, _get_caller_info())


async def log_warning(
    message: str,
    logger_name: str = DEFAULT_LOGGER,
    extra: dict[str, Any] | None = None,
) -> None:
    _emit(logger_name, logging.WARNING, message, extra, _get_caller_info())


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """Логирование ERROR уровня, опционально с трейсбеком."""
    _emit(logger_name, logging.ERROR, message, extra, _get_caller_info(), exc_info=exc_info)


async def log_audit(
    message: str,
    extra: dict[str, Any] | None = None,
) -> None:
    """Запись в журнал аудита вебхуков (отклонённые подписи и т.п.)."""
    _emit(AUDIT_LOGGER, logging.WARNING, message, extra, _get_caller_info())
