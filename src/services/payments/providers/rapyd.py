# src/services/payments/providers/rapyd.py
"""
Rapyd: подписанные запросы, авторизация/списание/возврат и выплаты
бенефициарам.

Подпись запроса:
    base64(hex(HMAC-SHA256(secret, lower(method) + path + salt + timestamp
                                   + access_key + secret_key + body)))
Тело "{}" подписывается как пустая строка. Суммы в основных единицах.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Annotated, Any, Literal, Mapping, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError as PydanticValidationError

from src.common.constants import ProviderName
from src.common.exceptions import UnknownWebhookShape
from src.core.fares.calculator import from_minor, to_minor
from src.services.payments.providers.base import (
    NormalizedWebhookEvent,
    PaymentProvider,
    ProviderOutcome,
    ProviderResult,
    WebhookEventType,
)
from src.services.payments.providers.retry import RetryPolicy
from src.shared.models.payout import BeneficiaryDTO


def rapyd_signature(
    http_method: str,
    path: str,
    salt: str,
    timestamp: str,
    access_key: str,
    secret_key: str,
    body: str,
) -> str:
    to_sign = http_method.lower() + path + salt + timestamp + access_key + secret_key + body
    digest = hmac.new(secret_key.encode(), to_sign.encode(), hashlib.sha256).hexdigest()
    return base64.b64encode(digest.encode()).decode()


def serialize_body(body: dict[str, Any] | None) -> str:
    if not body:
        return ""
    text = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
    return "" if text == "{}" else text


# =============================================================================
# МОДЕЛИ ВЕБХУКОВ
# =============================================================================

class _RapydData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    amount: float | int | str | None = None
    currency_code: str | None = None
    currency: str | None = None
    sender_currency: str | None = None
    payment: str | None = None
    status: str | None = None
    failure_message: str | None = None
    merchant_reference_id: str | None = None


class _RapydEventBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    data: _RapydData


class RapydPaymentEvent(_RapydEventBase):
    type: Literal["PAYMENT_SUCCEEDED", "PAYMENT_COMPLETED", "PAYMENT_FAILED", "PAYMENT_CANCELED", "PAYMENT_EXPIRED"]


class RapydRefundEvent(_RapydEventBase):
    type: Literal["REFUND_COMPLETED", "REFUND_REJECTED"]


class RapydPayoutEvent(_RapydEventBase):
    type: Literal["PAYOUT_COMPLETED", "PAYOUT_FAILED", "PAYOUT_RETURNED", "PAYOUT_EXPIRED", "PAYOUT_CANCELED"]


class RapydOtherEvent(_RapydEventBase):
    type: str


RapydWebhook = Annotated[
    Union[RapydPaymentEvent, RapydRefundEvent, RapydPayoutEvent, RapydOtherEvent],
    Field(union_mode="left_to_right"),
]

_RAPYD_ADAPTER: TypeAdapter[Any] = TypeAdapter(RapydWebhook)

# (канонический тип, успех)
_TYPE_MAP: dict[str, tuple[WebhookEventType, bool]] = {
    "PAYMENT_SUCCEEDED": (WebhookEventType.AUTHORISATION, True),
    "PAYMENT_FAILED": (WebhookEventType.AUTHORISATION, False),
    "PAYMENT_EXPIRED": (WebhookEventType.AUTHORISATION, False),
    "PAYMENT_COMPLETED": (WebhookEventType.CAPTURE, True),
    "PAYMENT_CANCELED": (WebhookEventType.CANCELLATION, True),
    "REFUND_COMPLETED": (WebhookEventType.REFUND, True),
    "REFUND_REJECTED": (WebhookEventType.REFUND, False),
    "PAYOUT_COMPLETED": (WebhookEventType.PAYOUT, True),
    "PAYOUT_FAILED": (WebhookEventType.PAYOUT, False),
    "PAYOUT_RETURNED": (WebhookEventType.PAYOUT, False),
    "PAYOUT_EXPIRED": (WebhookEventType.PAYOUT, False),
    "PAYOUT_CANCELED": (WebhookEventType.PAYOUT, False),
}


# =============================================================================
# АДАПТЕР
# =============================================================================

class RapydProvider(PaymentProvider):
    name = ProviderName.RAPYD.value

    def __init__(
        self,
        http: httpx.AsyncClient,
        access_key: str,
        secret_key: str,
        base_url: str,
        webhook_path: str = "/api/v1/webhooks/rapyd",
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(http, retry)
        self._access_key = access_key
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._webhook_path = webhook_path

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, retry: RetryPolicy | None = None) -> "RapydProvider":
        from src.config import settings
        return cls(
            http,
            access_key=settings.rapyd.ACCESS_KEY,
            secret_key=settings.rapyd.SECRET_KEY,
            base_url=settings.rapyd.BASE_URL,
            webhook_path=settings.rapyd.WEBHOOK_PATH,
            retry=retry,
        )

    def _signed(self, method: str, path: str, body: dict[str, Any] | None, idempotency_key: str):
        """Запрос с подписью. Соль и время генерируются на каждую попытку, ключ идемпотентности общий."""
        body_text = serialize_body(body)

        async def send() -> httpx.Response:
            salt = secrets.token_hex(8)
            timestamp = str(int(time.time()))
            headers = {
                "Content-Type": "application/json",
                "access_key": self._access_key,
                "salt": salt,
                "timestamp": timestamp,
                "signature": rapyd_signature(method, path, salt, timestamp, self._access_key, self._secret_key, body_text),
                "idempotency": idempotency_key,
            }
            return await self._http.request(
                method.upper(),
                f"{self._base_url}{path}",
                content=body_text.encode() if body_text else None,
                headers=headers,
            )

        return send

    def _error_reason(self, response: httpx.Response) -> str:
        try:
            status = response.json().get("status") or {}
        except (ValueError, AttributeError):
            return f"HTTP {response.status_code}"
        if not isinstance(status, dict):
            return f"HTTP {response.status_code}"
        return status.get("message") or status.get("error_code") or f"HTTP {response.status_code}"

    @staticmethod
    def _data(response: httpx.Response) -> dict[str, Any]:
        return response.json().get("data") or {}

    @staticmethod
    def _major(amount_minor: int, currency: str) -> float:
        return float(from_minor(amount_minor, currency))

    async def authorize(self, amount_minor, currency, method, reference, idempotency_key) -> ProviderResult:
        body = {
            "amount": self._major(amount_minor, currency),
            "currency": currency,
            "payment_method": method.get("id") or dict(method),
            "merchant_reference_id": reference,
            "capture": False,
        }

        def interpret(response: httpx.Response) -> ProviderResult:
            data = self._data(response)
            status = data.get("status")
            if status == "ACT":
                return ProviderResult(ProviderOutcome.AUTHORIZED, external_ref=data.get("id"))
            if status == "CLO":
                return ProviderResult(ProviderOutcome.CAPTURED, external_ref=data.get("id"))
            return ProviderResult(
                ProviderOutcome.DECLINED,
                external_ref=data.get("id"),
                reason=data.get("failure_message") or status or "declined",
            )

        return await self._execute("authorize", self._signed("post", "/v1/payments", body, idempotency_key), interpret)

    async def capture(self, external_ref, amount_minor, currency, idempotency_key) -> ProviderResult:
        body = {"amount": self._major(amount_minor, currency)}

        def interpret(response: httpx.Response) -> ProviderResult:
            data = self._data(response)
            if data.get("status") == "CLO" or data.get("captured"):
                return ProviderResult(ProviderOutcome.CAPTURED, external_ref=data.get("id", external_ref))
            return ProviderResult(ProviderOutcome.DECLINED, reason=data.get("failure_message") or data.get("status"))

        path = f"/v1/payments/{external_ref}/capture"
        return await self._execute("capture", self._signed("post", path, body, idempotency_key), interpret)

    async def refund(self, external_ref, amount_minor, currency, idempotency_key) -> ProviderResult:
        body = {
            "payment": external_ref,
            "amount": self._major(amount_minor, currency),
            "merchant_reference_id": idempotency_key,
        }

        def interpret(response: httpx.Response) -> ProviderResult:
            data = self._data(response)
            status = str(data.get("status", "")).lower()
            if status in ("completed", "pending"):
                return ProviderResult(ProviderOutcome.REFUNDED, external_ref=data.get("id"))
            return ProviderResult(ProviderOutcome.DECLINED, reason=data.get("failure_reason") or status or "rejected")

        return await self._execute("refund", self._signed("post", "/v1/refunds", body, idempotency_key), interpret)

    async def void(self, external_ref, idempotency_key) -> ProviderResult:
        def interpret(response: httpx.Response) -> ProviderResult:
            data = self._data(response)
            if data.get("status") == "CAN":
                return ProviderResult(ProviderOutcome.VOIDED, external_ref=data.get("id", external_ref))
            return ProviderResult(ProviderOutcome.DECLINED, reason=data.get("status") or "not cancelled")

        path = f"/v1/payments/{external_ref}"
        return await self._execute("void", self._signed("delete", path, None, idempotency_key), interpret)

    async def payout(self, beneficiary: BeneficiaryDTO, amount_minor, currency, reference, idempotency_key) -> ProviderResult:
        body = {
            "beneficiary": beneficiary.external_id,
            "sender_currency": currency,
            "payout_currency": beneficiary.currency,
            "sender_country": beneficiary.country,
            "beneficiary_country": beneficiary.country,
            "amount": self._major(amount_minor, currency),
            "payout_method_type": beneficiary.payment_method,
            "merchant_reference_id": reference,
            "description": f"Payout {reference}",
        }

        def interpret(response: httpx.Response) -> ProviderResult:
            data = self._data(response)
            status = str(data.get("status", "")).lower()
            if status in ("created", "completed", "confirmation"):
                return ProviderResult(ProviderOutcome.PAID_OUT, external_ref=data.get("id"))
            return ProviderResult(ProviderOutcome.DECLINED, reason=data.get("error") or status or "payout rejected")

        return await self._execute("payout", self._signed("post", "/v1/payouts", body, idempotency_key), interpret)

    # =========================================================================
    # ВЕБХУКИ
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        salt = lowered.get("salt")
        timestamp = lowered.get("timestamp")
        received = lowered.get("signature")
        if not (salt and timestamp and received and self._secret_key):
            return False

        body_text = body.decode("utf-8", errors="replace")
        to_sign = self._webhook_path + salt + timestamp + self._access_key + self._secret_key + body_text
        digest = hmac.new(self._secret_key.encode(), to_sign.encode(), hashlib.sha256).hexdigest()
        expected = base64.b64encode(digest.encode()).decode()
        return hmac.compare_digest(expected, received)

    def parse_webhook(self, body: bytes) -> list[NormalizedWebhookEvent]:
        try:
            event = _RAPYD_ADAPTER.validate_json(body)
        except PydanticValidationError as e:
            raise UnknownWebhookShape(f"rapyd: unrecognized webhook: {e.error_count()} errors") from e

        event_type, success = _TYPE_MAP.get(event.type, (WebhookEventType.UNKNOWN, False))
        data = event.data
        currency = data.currency_code or data.currency or data.sender_currency
        amount_minor = None
        if data.amount is not None and currency:
            amount_minor = to_minor(data.amount, currency)

        original_ref = data.payment if event_type == WebhookEventType.REFUND and data.payment else data.id
        return [
            NormalizedWebhookEvent(
                provider=self.name,
                event_type=event_type,
                external_ref=event.id,
                original_ref=original_ref,
                success=success,
                raw_event_code=event.type,
                amount_minor=amount_minor,
                currency=currency,
                reason=data.failure_message,
                metadata={"merchant_reference_id": data.merchant_reference_id, "object_id": data.id},
            )
        ]
