# src/services/payments/providers/base.py
"""
Единый контракт платёжного провайдера.

Адаптер не бросает провайдерские исключения: каждый вызов возвращает
ProviderResult с исходом из закрытого перечисления ProviderOutcome.
Временные сбои повторяются внутри адаптера (RetryPolicy) с тем же
ключом идемпотентности; наружу выходит только итог.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

import httpx

from src.common.logger import log_debug, log_warning
from src.services.payments.providers.retry import RetryPolicy, TransientProviderFailure
from src.shared.models.payout import BeneficiaryDTO

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class ProviderOutcome(str, Enum):
    AUTHORIZED = "Authorized"
    CAPTURED = "Captured"
    REFUNDED = "Refunded"
    VOIDED = "Voided"
    PAID_OUT = "PaidOut"
    DECLINED = "Declined"
    TRANSIENT_ERROR = "TransientError"


@dataclass(frozen=True)
class ProviderResult:
    outcome: ProviderOutcome
    external_ref: str | None = None
    reason: str | None = None
    fee_minor: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome not in (ProviderOutcome.DECLINED, ProviderOutcome.TRANSIENT_ERROR)


class WebhookEventType(str, Enum):
    """Канонические типы событий вебхука."""
    AUTHORISATION = "AUTHORISATION"
    CAPTURE = "CAPTURE"
    REFUND = "REFUND"
    CANCELLATION = "CANCELLATION"
    PAYOUT = "PAYOUT"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class NormalizedWebhookEvent:
    """
    Событие вебхука в общем виде.

    external_ref — ссылка самого события (ключ дедупликации),
    original_ref — ссылка исходного платежа (для модификаций Adyen).
    """
    provider: str
    event_type: WebhookEventType
    external_ref: str
    success: bool
    raw_event_code: str = ""
    original_ref: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def payment_ref(self) -> str:
        """Ссылка для поиска платежа/выплаты в БД."""
        return self.original_ref or self.external_ref

    @property
    def merchant_reference(self) -> str | None:
        """Наш reference, переданный провайдеру при авторизации (id платежа)."""
        for key in ("merchantReference", "merchant_reference_id", "reference"):
            value = self.metadata.get(key)
            if value:
                return str(value)
        return None

    @property
    def dedup_event_type(self) -> str:
        # UNKNOWN-события различаются исходным кодом провайдера
        if self.event_type == WebhookEventType.UNKNOWN:
            return f"{self.event_type.value}:{self.raw_event_code}"
        return self.event_type.value


class PaymentProvider(ABC):
    """Базовый адаптер провайдера поверх httpx."""

    name: str = ""

    def __init__(self, http: httpx.AsyncClient, retry: RetryPolicy | None = None) -> None:
        self._http = http
        self._retry = retry or RetryPolicy()

    # =========================================================================
    # ОПЕРАЦИИ
    # =========================================================================

    @abstractmethod
    async def authorize(
        self,
        amount_minor: int,
        currency: str,
        method: Mapping[str, Any],
        reference: str,
        idempotency_key: str,
    ) -> ProviderResult:
        """Авторизация без списания (двухфазная схема)."""

    @abstractmethod
    async def capture(self, external_ref: str, amount_minor: int, currency: str, idempotency_key: str) -> ProviderResult:
        ...

    @abstractmethod
    async def refund(self, external_ref: str, amount_minor: int, currency: str, idempotency_key: str) -> ProviderResult:
        ...

    @abstractmethod
    async def void(self, external_ref: str, idempotency_key: str) -> ProviderResult:
        """Отмена неподтверждённой авторизации."""

    @abstractmethod
    async def payout(
        self,
        beneficiary: BeneficiaryDTO,
        amount_minor: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> ProviderResult:
        ...

    async def fetch_processing_fee(self, external_ref: str) -> int | None:
        """Комиссия провайдера за списание в минорных единицах, если провайдер её сообщает."""
        return None

    @abstractmethod
    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        ...

    @abstractmethod
    def parse_webhook(self, body: bytes) -> list[NormalizedWebhookEvent]:
        """Разбирает тело вебхука. UnknownWebhookShape, если формат не распознан."""

    # =========================================================================
    # HTTP С ПОВТОРАМИ
    # =========================================================================

    async def _execute(
        self,
        operation: str,
        send: Callable[[], Awaitable[httpx.Response]],
        interpret: Callable[[httpx.Response], ProviderResult],
    ) -> ProviderResult:
        """
        Отправляет запрос с повторами временных сбоев и переводит ответ в ProviderResult.
        4xx (кроме повторяемых) — окончательный отказ с причиной из тела ответа.
        """
        async def attempt() -> httpx.Response:
            try:
                response = await send()
            except (httpx.TimeoutException, httpx.TransportError) as e:
                raise TransientProviderFailure(f"{type(e).__name__}: {e}") from e
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise TransientProviderFailure(f"HTTP {response.status_code}")
            return response

        label = f"{self.name}.{operation}"
        try:
            response = await self._retry.run(attempt, operation=label)
        except TransientProviderFailure as e:
            await log_warning(f"{label}: повторы исчерпаны: {e}")
            return ProviderResult(ProviderOutcome.TRANSIENT_ERROR, reason=str(e))

        if response.status_code >= 400:
            reason = self._error_reason(response)
            await log_debug(f"{label}: отказ HTTP {response.status_code}: {reason}")
            return ProviderResult(ProviderOutcome.DECLINED, reason=reason)

        try:
            return interpret(response)
        except (ValueError, KeyError, TypeError) as e:
            return ProviderResult(ProviderOutcome.DECLINED, reason=f"unexpected response: {e}")

    def _error_reason(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("message", "refusalReason", "errorCode"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {response.status_code}"
