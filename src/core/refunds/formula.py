# src/core/refunds/formula.py
"""
Формула возврата при отмене поездки.

    к_возврату = max(0, итог - доля_оператора) - комиссия_провайдера

Результат не бывает отрицательным и не превышает остаток списанной суммы
(списано минус уже возвращённое другими возвратами).
Расчёт котировки и исполнение возврата используют одну и ту же функцию.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RefundQuote:
    """Котировка возврата в минорных единицах."""
    refundable_amount_minor: int
    total_fare_minor: int
    operator_share_minor: int
    provider_fee_minor: int
    captured_amount_minor: int
    currency: str
    already_refunded_minor: int = 0


def compute_refund_quote(
    total_fare_minor: int,
    operator_share_minor: int,
    provider_fee_minor: int,
    captured_amount_minor: int,
    currency: str,
    already_refunded_minor: int = 0,
) -> RefundQuote:
    """
    Args:
        total_fare_minor: Стоимость поездки по таблице тарифов
        operator_share_minor: Доля оператора (calculator.operator_share)
        provider_fee_minor: Комиссия провайдера за списание (0, если неизвестна)
        captured_amount_minor: Фактически списанная сумма
        currency: Валюта
        already_refunded_minor: Уже возвращено по платежу другими возвратами
    """
    base = max(0, total_fare_minor - max(0, operator_share_minor))
    refundable = max(0, base - max(0, provider_fee_minor))
    remaining = max(0, captured_amount_minor - max(0, already_refunded_minor))
    refundable = min(refundable, remaining)
    return RefundQuote(
        refundable_amount_minor=refundable,
        total_fare_minor=total_fare_minor,
        operator_share_minor=operator_share_minor,
        provider_fee_minor=provider_fee_minor,
        captured_amount_minor=captured_amount_minor,
        currency=currency,
        already_refunded_minor=already_refunded_minor,
    )
