# src/common/exceptions.py
"""
Иерархия ошибок расчётов и обработчик для FastAPI.

Каждая ошибка несёт машинный error_code, HTTP-статус и детали.
ReconciliationConflict не доходит до клиента: вебхук с дубликатом
подтверждается и пропускается.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse


class PaymentError(Exception):
    """Базовая ошибка домена расчётов."""

    error_code: str = "ERR_PAYMENT"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(PaymentError):
    """Некорректные входные данные (в т.ч. возврат больше списанного). Не повторяется."""

    error_code = "ERR_VALIDATION"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(PaymentError):
    """Поездка, платёж или получатель не найдены."""

    error_code = "ERR_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} {resource_id} not found"
            resource_id = str(resource_id)
        super().__init__(message, {"resource": resource, "id": resource_id})


class ProviderDeclineError(PaymentError):
    """Провайдер окончательно отклонил операцию."""

    error_code = "ERR_PROVIDER_DECLINED"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, provider: str, reason: str | None):
        self.provider = provider
        self.reason = reason or "declined"
        super().__init__(f"{provider}: {self.reason}", {"provider": provider, "reason": self.reason})


class ProviderTransientError(PaymentError):
    """Временная ошибка провайдера, повторы исчерпаны."""

    error_code = "ERR_PROVIDER_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, provider: str, reason: str | None):
        self.provider = provider
        self.reason = reason or "unavailable"
        super().__init__(f"{provider}: {self.reason}", {"provider": provider, "reason": self.reason})


class ReconciliationConflict(PaymentError):
    """Повторный или устаревший вебхук. Обрабатывается как no-op."""

    error_code = "ERR_RECONCILIATION_CONFLICT"
    status_code = status.HTTP_200_OK


class InsufficientBalanceError(PaymentError):
    """Сумма выплаты больше накопленного баланса."""

    error_code = "ERR_INSUFFICIENT_BALANCE"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, recipient_id: str, requested_minor: int, available_minor: int):
        self.recipient_id = recipient_id
        self.requested_minor = requested_minor
        self.available_minor = available_minor
        super().__init__(
            f"insufficient balance for {recipient_id}: requested {requested_minor}, available {available_minor}",
            {"recipient_id": recipient_id, "requested_minor": requested_minor, "available_minor": available_minor},
        )


class UnknownWebhookShape(PaymentError):
    """Тело вебхука не распознано ни одной моделью провайдера."""

    error_code = "ERR_WEBHOOK_SHAPE"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Единый формат ответа для ошибок домена."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )
