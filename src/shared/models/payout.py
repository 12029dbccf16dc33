# src/shared/models/payout.py
"""
DTO выплат водителям и оператору.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import PayoutCadence, RecipientType


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BeneficiaryDTO(BaseModel):
    """Получатель выплат у провайдера."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_type: RecipientType
    owner_id: str
    provider: str
    external_id: str
    country: str = "US"
    currency: str = "USD"
    payment_method: str = "bank_transfer"
    is_verified: bool = False
    account_details: dict[str, Any] = Field(default_factory=dict)


class RecipientBalance(BaseModel):
    """Снимок накопленного баланса на старте пакета."""

    recipient_type: RecipientType
    recipient_id: str
    pending_earnings_minor: int
    currency: str = "USD"


class PayoutDTO(BaseModel):
    """Выплата за период."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_type: RecipientType
    recipient_id: str
    cadence: PayoutCadence
    period_start: datetime
    period_end: datetime | None = None
    amount_minor: int
    currency: str = "USD"
    status: PayoutStatus = PayoutStatus.PENDING
    provider: str | None = None
    external_ref: str | None = None
    idempotency_key: str
    failure_reason: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class PayoutBatchReport(BaseModel):
    """Итог пакета выплат."""

    cadence: PayoutCadence
    period_start: datetime
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    amount_minor: int = 0


class PayoutStats(BaseModel):
    """Статистика выплат за окно (по умолчанию 30 дней)."""

    window_days: int
    total: int
    successful: int
    failed: int
    total_amount_minor: int
    success_rate: float
