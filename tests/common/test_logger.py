# tests/common/test_logger.py
"""
Unit тесты для модуля логирования (src/common/logger.py).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest

import src.common.logger as logger_module
from src.common.constants import TypeMsg
from src.common.logger import (
    AUDIT_LOGGER,
    ColoredFormatter,
    JsonFormatter,
    SizeRotatingFileHandler,
    get_logger,
    log_audit,
    log_error,
    log_info,
    log_warning,
)


def make_record(level: int = logging.INFO, msg: str = "Test message", extra_data: dict | None = None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="settlement",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    if extra_data is not None:
        record.extra_data = extra_data
    return record


@pytest.fixture
def fresh_loggers():
    """Пустой кэш логгеров и общих файловых обработчиков."""
    with patch.dict(logger_module._loggers, clear=True), \
         patch.object(logger_module, "_SHARED_FILE_HANDLER", None), \
         patch.object(logger_module, "_SHARED_ERROR_HANDLER", None):
        yield


def file_options(tmp_path: Path, fmt: str = "json") -> dict:
    return {
        "level": "DEBUG",
        "format": fmt,
        "to_file": True,
        "file_path": str(tmp_path / "settlement.log"),
        "max_bytes": 1024 * 1024,
    }


class TestJsonFormatter:
    """Тесты для JsonFormatter."""

    def test_format_basic_record(self) -> None:
        payload = json.loads(JsonFormatter().format(make_record()))

        assert payload["level"] == "INFO"
        assert payload["message"] == "Test message"
        assert payload["logger"] == "settlement"
        assert payload["ts"].endswith("Z")
        assert "context" not in payload

    def test_format_with_context(self) -> None:
        """Контекст (ride_id, payment_id) попадает в поле context."""
        record = make_record(extra_data={"ride_id": "ride-1", "amount_minor": 8700})

        payload = json.loads(JsonFormatter().format(record))

        assert payload["context"] == {"ride_id": "ride-1", "amount_minor": 8700}

    def test_format_with_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            import sys
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        payload = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in payload["exception"]


class TestColoredFormatter:
    """Тесты для ColoredFormatter."""

    def test_level_and_origin(self) -> None:
        record = make_record(
            level=logging.WARNING,
            extra_data={"caller_module": "src.worker.payouts", "caller_function": "run_cycle", "caller_line": 42},
        )

        line = ColoredFormatter().format(record)

        assert "[WARNING]" in line
        assert "src.worker.payouts.run_cycle():42" in line
        assert line.endswith("Test message")

    def test_without_origin(self) -> None:
        line = ColoredFormatter().format(make_record())
        assert "()" not in line


class TestGetLogger:
    """Тесты для get_logger."""

    def test_cached_by_name(self, fresh_loggers) -> None:
        assert get_logger("settlement_test") is get_logger("settlement_test")

    def test_console_only_by_default(self, fresh_loggers, tmp_path: Path) -> None:
        options = {**file_options(tmp_path), "to_file": False}
        with patch.object(logger_module, "_logging_options", return_value=options):
            logger = get_logger("settlement_console")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)
        assert logger.propagate is False

    def test_file_handlers(self, fresh_loggers, tmp_path: Path) -> None:
        """При записи в файл: основной лог и отдельный файл ошибок."""
        with patch.object(logger_module, "_logging_options", return_value=file_options(tmp_path)):
            logger = get_logger("settlement_files")

        files = [h for h in logger.handlers if isinstance(h, SizeRotatingFileHandler)]
        assert {Path(h.baseFilename).name for h in files} == {"settlement.log", "error.log"}
        error_handler = next(h for h in files if Path(h.baseFilename).name == "error.log")
        assert error_handler.level == logging.ERROR
        for handler in files:
            handler.close()

    def test_audit_logger_file(self, fresh_loggers, tmp_path: Path) -> None:
        with patch.object(logger_module, "_logging_options", return_value=file_options(tmp_path, fmt="colored")):
            logger = get_logger(AUDIT_LOGGER)

        names = {Path(h.baseFilename).name for h in logger.handlers if isinstance(h, SizeRotatingFileHandler)}
        assert "webhook_audit.log" in names
        for handler in logger.handlers:
            handler.close()


class TestSizeRotatingFileHandler:
    """Тесты ротации по размеру."""

    def test_rollover_archives_file(self, tmp_path: Path) -> None:
        handler = SizeRotatingFileHandler(str(tmp_path), max_bytes=10, name="settlement")
        handler.setFormatter(logging.Formatter("%(message)s"))

        handler.emit(make_record(msg="first line longer than ten bytes"))
        handler.emit(make_record(msg="second"))
        handler.close()

        archives = [p for p in tmp_path.iterdir() if p.name.startswith("settlement_")]
        assert len(archives) == 1
        assert (tmp_path / "settlement.log").read_text(encoding="utf-8").strip() == "second"

    def test_zero_max_bytes_never_rolls(self, tmp_path: Path) -> None:
        handler = SizeRotatingFileHandler(str(tmp_path), max_bytes=0, name="settlement")
        assert handler.shouldRollover(make_record()) is False
        handler.close()


class TestLogFunctions:
    """Тесты асинхронных функций логирования."""

    @pytest.mark.asyncio
    async def test_log_info_level_from_type_msg(self) -> None:
        with patch.object(logger_module, "_emit") as emit:
            await log_info("retry", type_msg=TypeMsg.WARNING, extra={"payment_id": "pay-1"})

        logger_name, level, message, extra, caller = emit.call_args.args
        assert level == logging.WARNING
        assert message == "retry"
        assert extra == {"payment_id": "pay-1"}
        assert caller["caller_function"] == "test_log_info_level_from_type_msg"

    @pytest.mark.asyncio
    async def test_log_error_with_traceback(self) -> None:
        with patch.object(logger_module, "_emit") as emit:
            await log_error("failed", exc_info=True)

        assert emit.call_args.args[1] == logging.ERROR
        assert emit.call_args.kwargs["exc_info"] is True

    @pytest.mark.asyncio
    async def test_log_warning(self) -> None:
        with patch.object(logger_module, "_emit") as emit:
            await log_warning("careful")
        assert emit.call_args.args[1] == logging.WARNING

    @pytest.mark.asyncio
    async def test_log_audit_uses_audit_logger(self) -> None:
        with patch.object(logger_module, "_emit") as emit:
            await log_audit("bad signature", extra={"provider": "adyen"})

        assert emit.call_args.args[0] == AUDIT_LOGGER
        assert emit.call_args.args[3] == {"provider": "adyen"}

    @pytest.mark.asyncio
    async def test_context_reaches_record(self, fresh_loggers) -> None:
        """Контекст и место вызова доходят до LogRecord."""
        records: list[logging.LogRecord] = []

        class Collector(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                records.append(record)

        logger = get_logger("settlement_records")
        logger.addHandler(Collector())

        await log_info("captured", logger_name="settlement_records", extra={"ride_id": "ride-1"})

        assert records[0].extra_data["ride_id"] == "ride-1"
        assert records[0].extra_data["caller_function"] == "test_context_reaches_record"
