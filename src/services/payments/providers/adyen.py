# src/services/payments/providers/adyen.py
"""
Adyen: авторизация карт с ручным списанием (Checkout API) и выплаты
третьим лицам (Payout API, storeDetailAndSubmitThirdParty).

Вебхуки — пакет notificationItems, каждый элемент подписан HMAC-SHA256
(ключ в hex, подпись в additionalData.hmacSignature, base64).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Annotated, Any, Literal, Mapping, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

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

AUTHORIZED_RESULT_CODES = frozenset({"Authorised", "Received", "Pending"})


def _short_hash(value: str, length: int = 6) -> str:
    return hashlib.sha1(value.encode()).hexdigest()[:length]


# =============================================================================
# МОДЕЛИ УВЕДОМЛЕНИЙ
# =============================================================================

class AdyenAmount(BaseModel):
    value: int = 0
    currency: str = ""


class _ItemBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    pspReference: str
    originalReference: str | None = None
    merchantAccountCode: str = ""
    merchantReference: str = ""
    amount: AdyenAmount = Field(default_factory=AdyenAmount)
    success: bool | str = False
    reason: str | None = None
    additionalData: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        if isinstance(self.success, bool):
            return self.success
        return str(self.success).lower() == "true"


class AuthorisationItem(_ItemBase):
    eventCode: Literal["AUTHORISATION"]


class CaptureItem(_ItemBase):
    eventCode: Literal["CAPTURE", "CAPTURE_FAILED"]


class RefundItem(_ItemBase):
    eventCode: Literal["REFUND", "REFUND_FAILED", "REFUNDED_REVERSED"]


class CancellationItem(_ItemBase):
    eventCode: Literal["CANCELLATION", "CANCEL_OR_REFUND"]


class PayoutItem(_ItemBase):
    eventCode: Literal["PAYOUT_THIRDPARTY", "PAYOUT_DECLINE", "PAYOUT_EXPIRE", "PAIDOUT_REVERSED"]


class OtherItem(_ItemBase):
    eventCode: str


AdyenItem = Annotated[
    Union[AuthorisationItem, CaptureItem, RefundItem, CancellationItem, PayoutItem, OtherItem],
    Field(union_mode="left_to_right"),
]


class AdyenItemWrapper(BaseModel):
    NotificationRequestItem: AdyenItem


class AdyenNotification(BaseModel):
    live: str | bool = "false"
    notificationItems: list[AdyenItemWrapper]


_EVENT_TYPES: dict[type, WebhookEventType] = {
    AuthorisationItem: WebhookEventType.AUTHORISATION,
    CaptureItem: WebhookEventType.CAPTURE,
    RefundItem: WebhookEventType.REFUND,
    CancellationItem: WebhookEventType.CANCELLATION,
    PayoutItem: WebhookEventType.PAYOUT,
}

# коды, которые при success=true означают неуспех операции
_FAILURE_CODES = frozenset({"CAPTURE_FAILED", "REFUND_FAILED", "REFUNDED_REVERSED", "PAYOUT_DECLINE", "PAYOUT_EXPIRE", "PAIDOUT_REVERSED"})


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace(":", "\\:")


def notification_signing_string(item: Mapping[str, Any]) -> str:
    """Строка для HMAC: 8 полей через ':' с экранированием '\\' и ':'."""
    amount = item.get("amount") or {}
    success = item.get("success")
    if isinstance(success, bool):
        success = "true" if success else "false"
    fields = [
        item.get("pspReference") or "",
        item.get("originalReference") or "",
        item.get("merchantAccountCode") or "",
        item.get("merchantReference") or "",
        str(amount.get("value", "")),
        amount.get("currency") or "",
        item.get("eventCode") or "",
        str(success or "").lower(),
    ]
    return ":".join(_escape(str(f)) for f in fields)


def sign_notification_item(item: Mapping[str, Any], hmac_key_hex: str) -> str:
    key = binascii.unhexlify(hmac_key_hex)
    digest = hmac.new(key, notification_signing_string(item).encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


# =============================================================================
# АДАПТЕР
# =============================================================================

class AdyenProvider(PaymentProvider):
    name = ProviderName.ADYEN.value

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        merchant_account: str,
        hmac_key: str,
        checkout_url: str,
        payout_url: str,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(http, retry)
        self._api_key = api_key
        self._merchant_account = merchant_account
        self._hmac_key = hmac_key
        self._checkout_url = checkout_url.rstrip("/")
        self._payout_url = payout_url.rstrip("/")

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, retry: RetryPolicy | None = None) -> "AdyenProvider":
        from src.config import settings
        return cls(
            http,
            api_key=settings.adyen.API_KEY,
            merchant_account=settings.adyen.MERCHANT_ACCOUNT,
            hmac_key=settings.adyen.HMAC_KEY,
            checkout_url=settings.adyen.CHECKOUT_URL,
            payout_url=settings.adyen.PAYOUT_URL,
            retry=retry,
        )

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        return {
            "X-API-Key": self._api_key,
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }

    def _post(self, url: str, payload: dict[str, Any], idempotency_key: str):
        return lambda: self._http.post(url, json=payload, headers=self._headers(idempotency_key))

    async def authorize(self, amount_minor, currency, method, reference, idempotency_key) -> ProviderResult:
        payload = {
            "merchantAccount": self._merchant_account,
            "amount": {"value": amount_minor, "currency": currency},
            "reference": reference,
            "paymentMethod": dict(method),
            "shopperInteraction": "Ecommerce",
            "additionalData": {"manualCapture": "true"},
        }

        def interpret(response: httpx.Response) -> ProviderResult:
            body = response.json()
            code = body.get("resultCode")
            if code in AUTHORIZED_RESULT_CODES:
                return ProviderResult(ProviderOutcome.AUTHORIZED, external_ref=body.get("pspReference"))
            return ProviderResult(
                ProviderOutcome.DECLINED,
                external_ref=body.get("pspReference"),
                reason=body.get("refusalReason") or code or "Refused",
            )

        return await self._execute(
            "authorize",
            self._post(f"{self._checkout_url}/payments", payload, idempotency_key),
            interpret,
        )

    def _modification(self, outcome: ProviderOutcome):
        def interpret(response: httpx.Response) -> ProviderResult:
            body = response.json()
            if str(body.get("status", "")).lower() == "received":
                return ProviderResult(outcome, external_ref=body.get("pspReference"))
            return ProviderResult(ProviderOutcome.DECLINED, reason=body.get("status") or "not received")
        return interpret

    async def capture(self, external_ref, amount_minor, currency, idempotency_key) -> ProviderResult:
        payload = {
            "merchantAccount": self._merchant_account,
            "amount": {"value": amount_minor, "currency": currency},
            "reference": f"CAP{external_ref[:8]}{_short_hash(idempotency_key)}",
        }
        return await self._execute(
            "capture",
            self._post(f"{self._checkout_url}/payments/{external_ref}/captures", payload, idempotency_key),
            self._modification(ProviderOutcome.CAPTURED),
        )

    async def refund(self, external_ref, amount_minor, currency, idempotency_key) -> ProviderResult:
        payload = {
            "merchantAccount": self._merchant_account,
            "amount": {"value": amount_minor, "currency": currency},
            "reference": f"REF{external_ref[:8]}{_short_hash(idempotency_key)}",
        }
        return await self._execute(
            "refund",
            self._post(f"{self._checkout_url}/payments/{external_ref}/refunds", payload, idempotency_key),
            self._modification(ProviderOutcome.REFUNDED),
        )

    async def void(self, external_ref, idempotency_key) -> ProviderResult:
        payload = {
            "merchantAccount": self._merchant_account,
            "reference": f"CAN{external_ref[:8]}{_short_hash(idempotency_key)}",
        }
        return await self._execute(
            "void",
            self._post(f"{self._checkout_url}/payments/{external_ref}/cancels", payload, idempotency_key),
            self._modification(ProviderOutcome.VOIDED),
        )

    async def payout(self, beneficiary: BeneficiaryDTO, amount_minor, currency, reference, idempotency_key) -> ProviderResult:
        payload = {
            "merchantAccount": self._merchant_account,
            "amount": {"value": amount_minor, "currency": currency},
            "reference": reference,
            "shopperReference": beneficiary.external_id,
            "recurring": {"contract": "PAYOUT"},
            "bank": beneficiary.account_details.get("bank", beneficiary.account_details),
        }
        if beneficiary.account_details.get("email"):
            payload["shopperEmail"] = beneficiary.account_details["email"]

        def interpret(response: httpx.Response) -> ProviderResult:
            body = response.json()
            code = str(body.get("resultCode", ""))
            if "received" in code.lower():
                return ProviderResult(ProviderOutcome.PAID_OUT, external_ref=body.get("pspReference"))
            return ProviderResult(ProviderOutcome.DECLINED, reason=body.get("refusalReason") or code or "payout refused")

        return await self._execute(
            "payout",
            self._post(f"{self._payout_url}/storeDetailAndSubmitThirdParty", payload, idempotency_key),
            interpret,
        )

    # =========================================================================
    # ВЕБХУКИ
    # =========================================================================

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self._hmac_key:
            return False
        try:
            data = json.loads(body)
            items = [w["NotificationRequestItem"] for w in data["notificationItems"]]
        except (ValueError, KeyError, TypeError):
            return False
        if not items:
            return False

        for item in items:
            received = (item.get("additionalData") or {}).get("hmacSignature")
            if not received:
                return False
            try:
                expected = sign_notification_item(item, self._hmac_key)
            except (binascii.Error, ValueError):
                return False
            if not hmac.compare_digest(expected, received):
                return False
        return True

    def parse_webhook(self, body: bytes) -> list[NormalizedWebhookEvent]:
        try:
            notification = AdyenNotification.model_validate_json(body)
        except PydanticValidationError as e:
            raise UnknownWebhookShape(f"adyen: unrecognized notification: {e.error_count()} errors") from e

        events = []
        for wrapper in notification.notificationItems:
            item = wrapper.NotificationRequestItem
            event_type = _EVENT_TYPES.get(type(item), WebhookEventType.UNKNOWN)
            success = item.succeeded and item.eventCode not in _FAILURE_CODES
            events.append(
                NormalizedWebhookEvent(
                    provider=self.name,
                    event_type=event_type,
                    external_ref=item.pspReference,
                    original_ref=item.originalReference or item.additionalData.get("paymentLinkId"),
                    success=success,
                    raw_event_code=item.eventCode,
                    amount_minor=item.amount.value,
                    currency=item.amount.currency or None,
                    reason=item.reason,
                    metadata={"merchantReference": item.merchantReference},
                )
            )
        return events
