# src/shared/models/payment.py
"""
DTO платежей, распределений и возвратов.
Все денежные поля *_minor — целые минорные единицы валюты.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class PaymentStatus(str, Enum):
    """Статус платежа."""
    PENDING = "Pending"
    AUTHORISED = "Authorised"
    CAPTURED = "Captured"
    REFUNDED = "Refunded"
    FAILED = "Failed"
    VOIDED = "Voided"


class PaymentType(str, Enum):
    """Назначение платежа."""
    RIDE = "ride"
    TIP = "tip"


class RefundKind(str, Enum):
    CANCELLATION = "cancellation"
    MANUAL = "manual"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentDTO(BaseModel):
    """Платёж у одного провайдера."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    ride_id: str
    provider: str
    external_ref: str | None = None
    payment_type: PaymentType = PaymentType.RIDE

    amount_minor: int
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PENDING

    captured_amount_minor: int = 0
    refunded_amount_minor: int = 0
    provider_fee_minor: int | None = None

    # водитель, выбранный до подтверждения авторизации
    driver_id: str | None = None
    failure_reason: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def refundable_remaining_minor(self) -> int:
        return max(0, self.captured_amount_minor - self.refunded_amount_minor)


class PaymentSplitDTO(BaseModel):
    """Распределение списанной суммы."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    ride_id: str
    driver_id: str | None = None
    driver_amount_minor: int
    operator_amount_minor: int
    extras_minor: int
    total_minor: int


class RefundDTO(BaseModel):
    """Возврат по платежу."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    ride_id: str
    payment_id: str
    kind: RefundKind
    amount_minor: int
    operator_share_minor: int = 0
    provider_fee_minor: int = 0
    status: RefundStatus = RefundStatus.PENDING
    idempotency_key: str
    external_ref: str | None = None
    reason: str | None = None
    created_at: datetime | None = None
