# src/shared/events/payout_events.py
"""
События плановых и мгновенных выплат.
"""

from __future__ import annotations

from typing import Literal

from src.shared.events.base import DomainEvent


class PayoutTriggerRequested(DomainEvent):
    """Ручной запуск пакета выплат (админка, API)."""

    event_type: Literal["payout.trigger_requested"] = "payout.trigger_requested"

    cadence: str
    requested_by: str | None = None


class PayoutCompleted(DomainEvent):
    """Выплата получателю прошла."""

    event_type: Literal["payout.completed"] = "payout.completed"

    payout_id: str
    recipient_type: str
    recipient_id: str
    cadence: str
    amount_minor: int
    currency: str
    external_ref: str | None = None


class PayoutFailed(DomainEvent):
    """Выплата не прошла, баланс получателя сохранён."""

    event_type: Literal["payout.failed"] = "payout.failed"

    payout_id: str
    recipient_type: str
    recipient_id: str
    cadence: str
    amount_minor: int
    reason: str | None = None


class PayoutBatchFinished(DomainEvent):
    """Итог пакета выплат по периодичности."""

    event_type: Literal["payout.batch_finished"] = "payout.batch_finished"

    cadence: str
    period_start: str
    total: int
    succeeded: int
    failed: int
    skipped: int
    amount_minor: int
