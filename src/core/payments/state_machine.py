# src/core/payments/state_machine.py
"""
Переходы статусов платежа.

Pending -> Authorised -> Captured -> Refunded, отказ в Failed,
отмена неподтверждённой авторизации в Voided. Частичные возвраты
оставляют платёж в Refunded и допускают повторный возврат остатка.
"""

from __future__ import annotations

from src.shared.models.payment import PaymentStatus


class PaymentStateMachine:
    ALLOWED_TRANSITIONS: dict[PaymentStatus, list[PaymentStatus]] = {
        PaymentStatus.PENDING: [
            PaymentStatus.AUTHORISED,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.VOIDED,
        ],
        PaymentStatus.AUTHORISED: [
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.VOIDED,
        ],
        PaymentStatus.CAPTURED: [PaymentStatus.REFUNDED],
        PaymentStatus.REFUNDED: [PaymentStatus.REFUNDED],
        PaymentStatus.FAILED: [],
        PaymentStatus.VOIDED: [],
    }

    @classmethod
    def can_transition(cls, current_status: str, new_status: str) -> bool:
        try:
            curr = PaymentStatus(current_status)
            new = PaymentStatus(new_status)
        except ValueError:
            return False
        return new in cls.ALLOWED_TRANSITIONS.get(curr, [])

    @classmethod
    def sources_for(cls, new_status: PaymentStatus) -> list[str]:
        return [s.value for s, targets in cls.ALLOWED_TRANSITIONS.items() if new_status in targets]
