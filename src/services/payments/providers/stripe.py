# src/services/payments/providers/stripe.py
"""
Stripe: PaymentIntent с ручным списанием, возвраты и переводы на
подключённые аккаунты (трансграничные выплаты).

Запросы — form-encoded, заголовок Idempotency-Key.
Подпись вебхука: Stripe-Signature "t=<ts>,v1=<hex>", HMAC-SHA256 над "<ts>.<body>".
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Annotated, Any, Literal, Mapping, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError as PydanticValidationError

from src.common.constants import ProviderName
from src.common.exceptions import UnknownWebhookShape
from src.services.payments.providers.base import (
    NormalizedWebhookEvent,
    PaymentProvider,
    ProviderOutcome,
    ProviderResult,
    WebhookEventType,
)
from src.services.payments.providers.retry import RetryPolicy
from src.shared.models.payout import BeneficiaryDTO


def stripe_signature(secret: str, timestamp: str, body: bytes) -> str:
    signed = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def _fee_from_intent(intent: Mapping[str, Any]) -> int | None:
    charge = intent.get("latest_charge")
    if not isinstance(charge, dict):
        return None
    balance = charge.get("balance_transaction")
    if not isinstance(balance, dict) or balance.get("fee") is None:
        return None
    return int(balance["fee"])


# =============================================================================
# МОДЕЛИ СОБЫТИЙ
# =============================================================================

class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    object: str = ""
    amount: int | None = None
    amount_received: int | None = None
    amount_refunded: int | None = None
    currency: str | None = None
    payment_intent: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_payment_error: dict[str, Any] | None = None
    cancellation_reason: str | None = None


class _StripeData(BaseModel):
    object: _StripeObject


class _StripeEventBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    data: _StripeData


class IntentAuthorizedEvent(_StripeEventBase):
    type: Literal["payment_intent.amount_capturable_updated"]


class IntentSucceededEvent(_StripeEventBase):
    type: Literal["payment_intent.succeeded"]


class IntentFailedEvent(_StripeEventBase):
    type: Literal["payment_intent.payment_failed"]


class IntentCanceledEvent(_StripeEventBase):
    type: Literal["payment_intent.canceled"]


class ChargeRefundedEvent(_StripeEventBase):
    type: Literal["charge.refunded"]


class TransferEvent(_StripeEventBase):
    type: Literal["transfer.created", "transfer.reversed", "transfer.failed"]


class OtherStripeEvent(_StripeEventBase):
    type: str


StripeEvent = Annotated[
    Union[
        IntentAuthorizedEvent,
        IntentSucceededEvent,
        IntentFailedEvent,
        IntentCanceledEvent,
        ChargeRefundedEvent,
        TransferEvent,
        OtherStripeEvent,
    ],
    Field(union_mode="left_to_right"),
]

_STRIPE_ADAPTER: TypeAdapter[Any] = TypeAdapter(StripeEvent)


# =============================================================================
# АДАПТЕР
# =============================================================================

class StripeProvider(PaymentProvider):
    name = ProviderName.STRIPE.value

    def __init__(
        self,
        http: httpx.AsyncClient,
        secret_key: str,
        webhook_secret: str,
        base_url: str = "https://api.stripe.com",
        tolerance_seconds: int = 300,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(http, retry)
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self._tolerance = tolerance_seconds

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, retry: RetryPolicy | None = None) -> "StripeProvider":
        from src.config import settings
        return cls(
            http,
            secret_key=settings.stripe.SECRET_KEY,
            webhook_secret=settings.stripe.WEBHOOK_SECRET,
            base_url=settings.stripe.BASE_URL,
            tolerance_seconds=settings.stripe.WEBHOOK_TOLERANCE_SECONDS,
            retry=retry,
        )

    def _post(self, path: str, data: dict[str, Any], idempotency_key: str):
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Idempotency-Key": idempotency_key,
        }
        return lambda: self._http.post(f"{self._base_url}{path}", data=data, headers=headers)

    def _error_reason(self, response: httpx.Response) -> str:
        try:
            error = response.json().get("error") or {}
        except (ValueError, AttributeError):
            return f"HTTP {response.status_code}"
        return error.get("decline_code") or error.get("message") or error.get("code") or f"HTTP {response.status_code}"

    async def authorize(self, amount_minor, currency, method, reference, idempotency_key) -> ProviderResult:
        data = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "payment_method": method.get("id", ""),
            "capture_method": "manual",
            "confirm": "true",
            "metadata[reference]": reference,
        }
        if method.get("customer"):
            data["customer"] = method["customer"]

        def interpret(response: httpx.Response) -> ProviderResult:
            intent = response.json()
            status = intent.get("status")
            if status in ("requires_capture", "processing"):
                return ProviderResult(ProviderOutcome.AUTHORIZED, external_ref=intent.get("id"))
            if status == "succeeded":
                return ProviderResult(ProviderOutcome.CAPTURED, external_ref=intent.get("id"), fee_minor=_fee_from_intent(intent))
            error = intent.get("last_payment_error") or {}
            return ProviderResult(
                ProviderOutcome.DECLINED,
                external_ref=intent.get("id"),
                reason=error.get("message") or status or "declined",
            )

        return await self._execute("authorize", self._post("/v1/payment_intents", data, idempotency_key), interpret)

    async def capture(self, external_ref, amount_minor, currency, idempotency_key) -> ProviderResult:
        data = {
            "amount_to_capture": amount_minor,
            "expand[]": "latest_charge.balance_transaction",
        }

        def interpret(response: httpx.Response) -> ProviderResult:
            intent = response.json()
            if intent.get("status") == "succeeded":
                return ProviderResult(ProviderOutcome.CAPTURED, external_ref=intent.get("id"), fee_minor=_fee_from_intent(intent))
            return ProviderResult(ProviderOutcome.DECLINED, reason=intent.get("status") or "not captured")

        path = f"/v1/payment_intents/{external_ref}/capture"
        return await self._execute("capture", self._post(path, data, idempotency_key), interpret)

    async def refund(self, external_ref, amount_minor, currency, idempotency_key) -> ProviderResult:
        data = {"payment_intent": external_ref, "amount": amount_minor}

        def interpret(response: httpx.Response) -> ProviderResult:
            refund = response.json()
            if refund.get("status") in ("succeeded", "pending"):
                return ProviderResult(ProviderOutcome.REFUNDED, external_ref=refund.get("id"))
            return ProviderResult(ProviderOutcome.DECLINED, reason=refund.get("failure_reason") or refund.get("status"))

        return await self._execute("refund", self._post("/v1/refunds", data, idempotency_key), interpret)

    async def void(self, external_ref, idempotency_key) -> ProviderResult:
        def interpret(response: httpx.Response) -> ProviderResult:
            intent = response.json()
            if intent.get("status") == "canceled":
                return ProviderResult(ProviderOutcome.VOIDED, external_ref=intent.get("id"))
            return ProviderResult(ProviderOutcome.DECLINED, reason=intent.get("status") or "not canceled")

        path = f"/v1/payment_intents/{external_ref}/cancel"
        return await self._execute("void", self._post(path, {}, idempotency_key), interpret)

    async def payout(self, beneficiary: BeneficiaryDTO, amount_minor, currency, reference, idempotency_key) -> ProviderResult:
        data = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "destination": beneficiary.external_id,
            "transfer_group": reference,
            "metadata[reference]": reference,
        }

        def interpret(response: httpx.Response) -> ProviderResult:
            transfer = response.json()
            if transfer.get("id") and not transfer.get("reversed"):
                return ProviderResult(ProviderOutcome.PAID_OUT, external_ref=transfer["id"])
            return ProviderResult(ProviderOutcome.DECLINED, reason="transfer reversed")

        return await self._execute("payout", self._post("/v1/transfers", data, idempotency_key), interpret)

    async def fetch_processing_fee(self, external_ref: str) -> int | None:
        headers = {"Authorization": f"Bearer {self._secret_key}"}

        def send():
            return self._http.get(
                f"{self._base_url}/v1/payment_intents/{external_ref}",
                params={"expand[]": "latest_charge.balance_transaction"},
                headers=headers,
            )

        fee: list[int | None] = [None]

        def interpret(response: httpx.Response) -> ProviderResult:
            fee[0] = _fee_from_intent(response.json())
            return ProviderResult(ProviderOutcome.CAPTURED, external_ref=external_ref, fee_minor=fee[0])

        result = await self._execute("fetch_processing_fee", send, interpret)
        return result.fee_minor if result.ok else None

    # =========================================================================
    # ВЕБХУКИ
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        header = lowered.get("stripe-signature")
        if not header or not self._webhook_secret:
            return False

        parts: dict[str, list[str]] = {}
        for item in header.split(","):
            key, _, value = item.strip().partition("=")
            parts.setdefault(key, []).append(value)

        timestamp = (parts.get("t") or [""])[0]
        if not timestamp.isdigit():
            return False
        if abs(time.time() - int(timestamp)) > self._tolerance:
            return False

        expected = stripe_signature(self._webhook_secret, timestamp, body)
        return any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", []))

    def parse_webhook(self, body: bytes) -> list[NormalizedWebhookEvent]:
        try:
            event = _STRIPE_ADAPTER.validate_json(body)
        except PydanticValidationError as e:
            raise UnknownWebhookShape(f"stripe: unrecognized event: {e.error_count()} errors") from e

        obj = event.data.object
        currency = obj.currency.upper() if obj.currency else None
        payment_ref = obj.payment_intent or obj.id
        amount = obj.amount_received if obj.amount_received else obj.amount
        reason = None
        success = True

        if isinstance(event, IntentAuthorizedEvent):
            event_type = WebhookEventType.AUTHORISATION
        elif isinstance(event, IntentSucceededEvent):
            event_type = WebhookEventType.CAPTURE
        elif isinstance(event, IntentFailedEvent):
            event_type = WebhookEventType.AUTHORISATION
            success = False
            reason = (obj.last_payment_error or {}).get("message")
        elif isinstance(event, IntentCanceledEvent):
            event_type = WebhookEventType.CANCELLATION
            reason = obj.cancellation_reason
        elif isinstance(event, ChargeRefundedEvent):
            event_type = WebhookEventType.REFUND
            amount = obj.amount_refunded
        elif isinstance(event, TransferEvent):
            event_type = WebhookEventType.PAYOUT
            success = event.type == "transfer.created"
            payment_ref = obj.id
        else:
            event_type = WebhookEventType.UNKNOWN
            success = False

        return [
            NormalizedWebhookEvent(
                provider=self.name,
                event_type=event_type,
                external_ref=event.id,
                original_ref=payment_ref,
                success=success,
                raw_event_code=event.type,
                amount_minor=amount,
                currency=currency,
                reason=reason,
                metadata=dict(obj.metadata),
            )
        ]
