# src/core/fares/calculator.py
"""
Расчёт стоимости поездки и распределения между водителем и оператором.

Чистые функции без ввода-вывода. Каждая составляющая округляется
до минорной единицы валюты до суммирования, поэтому разложение
всегда складывается в итог без копеечных расхождений.

    водитель  = (ставка_за_милю * мили + мин_чаевые) * машины
    оператор  = ставка_за_минуту * минуты * машины
    доплаты   = сбор_за_человека * люди + сбор_за_питомца * питомцы
    бонус     = машины * бонус_за_машину, если машин больше одной
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP

from src.common.constants import ZERO_DECIMAL_CURRENCIES
from src.core.fares.models import FareBreakdown, RateTableEntry, TripMetrics

ZERO = Decimal("0")


# =============================================================================
# ДЕНЕЖНЫЕ УТИЛИТЫ
# =============================================================================

def currency_exponent(currency: str) -> int:
    """Число знаков после запятой для валюты."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def quantize_money(amount: Decimal, currency: str) -> Decimal:
    quantum = Decimal(1).scaleb(-currency_exponent(currency))
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal | int | float | str, currency: str) -> int:
    """Основные единицы -> минорные (центы), округление половины вверх."""
    value = Decimal(str(amount)).scaleb(currency_exponent(currency))
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor(amount_minor: int, currency: str) -> Decimal:
    """Минорные единицы -> основные."""
    return quantize_money(Decimal(amount_minor).scaleb(-currency_exponent(currency)), currency)


# =============================================================================
# НОРМАЛИЗАЦИЯ ВХОДА
# =============================================================================

def _non_negative(value: Decimal | float | int | None) -> Decimal:
    if value is None:
        return ZERO
    dec = Decimal(str(value))
    return dec if dec > 0 else ZERO


def _passengers(value: int | None) -> int:
    if value is None or value < 1:
        return 1
    return int(value)


def _pets(value: int | None) -> int:
    if value is None or value < 0:
        return 0
    return int(value)


def vehicle_count(passenger_count: int | None, vehicle_capacity: int) -> int:
    """Сколько машин нужно для группы. Минимум одна."""
    capacity = max(1, vehicle_capacity)
    return max(1, math.ceil(_passengers(passenger_count) / capacity))


# =============================================================================
# РАСЧЁТ
# =============================================================================

def operator_share(rate: RateTableEntry, metrics: TripMetrics) -> Decimal:
    """
    «Невидимая» доля оператора: ставка_за_минуту * минуты * машины.
    Единственная формула доли оператора для расчёта, сплита и возвратов.
    """
    vehicles = vehicle_count(metrics.passenger_count, rate.vehicle_capacity)
    minutes = _non_negative(metrics.duration_minutes)
    return quantize_money(rate.operator_rate_per_minute * minutes * vehicles, rate.currency)


def compute_fare(
    rate: RateTableEntry | None,
    metrics: TripMetrics,
    default_rate: RateTableEntry | None = None,
) -> FareBreakdown:
    """
    Рассчитывает стоимость поездки.

    Args:
        rate: Тариф типа поездки или None, если тип не найден
        metrics: Дистанция, длительность, пассажиры, питомцы
        default_rate: Тариф по умолчанию для случая rate=None

    Returns:
        FareBreakdown; used_fallback_rate=True, если применён тариф по умолчанию
    """
    used_fallback = rate is None
    if rate is None:
        rate = default_rate or DEFAULT_RATE

    currency = rate.currency
    passengers = _passengers(metrics.passenger_count)
    pets = _pets(metrics.pet_count)
    miles = _non_negative(metrics.distance_miles)
    vehicles = vehicle_count(passengers, rate.vehicle_capacity)

    driver_visible = rate.driver_rate_per_mile * miles + rate.min_tip
    driver_amount = quantize_money(driver_visible * vehicles, currency)
    operator_amount = operator_share(rate, metrics)
    extras = quantize_money(rate.per_person_fee * passengers + rate.per_pet_fee * pets, currency)
    bonus = quantize_money(rate.multi_vehicle_bonus * vehicles, currency) if vehicles > 1 else quantize_money(ZERO, currency)

    return FareBreakdown(
        driver_amount=driver_amount,
        operator_amount=operator_amount,
        extras=extras,
        multi_vehicle_tip=bonus,
        total_fare=driver_amount + operator_amount + extras + bonus,
        vehicle_count=vehicles,
        currency=currency,
        used_fallback_rate=used_fallback,
    )


def tip_bounds(rate: RateTableEntry | None, default_rate: RateTableEntry | None = None) -> tuple[Decimal, Decimal | None]:
    """Допустимый диапазон чаевых (min, max). max=None — без ограничения."""
    rate = rate or default_rate or DEFAULT_RATE
    return rate.min_tip, rate.max_tip


def build_default_rate(fares_settings) -> RateTableEntry:
    """Тариф по умолчанию из секции fares конфигурации."""
    return RateTableEntry(
        id="default",
        name="default",
        driver_rate_per_mile=fares_settings.DEFAULT_DRIVER_RATE_PER_MILE,
        operator_rate_per_minute=fares_settings.DEFAULT_OPERATOR_RATE_PER_MINUTE,
        per_person_fee=fares_settings.DEFAULT_PER_PERSON_FEE,
        per_pet_fee=fares_settings.DEFAULT_PER_PET_FEE,
        min_tip=fares_settings.DEFAULT_MIN_TIP,
        max_tip=fares_settings.DEFAULT_MAX_TIP,
        vehicle_capacity=fares_settings.VEHICLE_CAPACITY,
        multi_vehicle_bonus=fares_settings.MULTI_VEHICLE_BONUS,
        currency=fares_settings.CURRENCY,
    )


DEFAULT_RATE = RateTableEntry(
    id="default",
    name="default",
    driver_rate_per_mile=Decimal("2.00"),
    operator_rate_per_minute=Decimal("0.30"),
    per_person_fee=Decimal("2.00"),
    per_pet_fee=Decimal("5.00"),
    min_tip=Decimal("5.00"),
    max_tip=Decimal("100.00"),
    vehicle_capacity=4,
    multi_vehicle_bonus=Decimal("5.00"),
    currency="USD",
)


def allocate_split(breakdown: FareBreakdown, captured_minor: int) -> tuple[int, int, int]:
    """
    Распределение списанной суммы (driver, operator, extras) в минорных единицах.

    Если списано ровно по расчёту, доли берутся из расчёта как есть.
    Иначе доли оператора и доплат масштабируются вниз пропорционально,
    остаток целиком у водителя, так что сумма всегда равна captured_minor.
    """
    currency = breakdown.currency
    driver = to_minor(breakdown.driver_payable, currency)
    operator = to_minor(breakdown.operator_amount, currency)
    extras = to_minor(breakdown.extras, currency)
    total = driver + operator + extras
    captured_minor = max(0, captured_minor)

    if total == captured_minor:
        return driver, operator, extras
    if total <= 0:
        return captured_minor, 0, 0

    operator = operator * captured_minor // total
    extras = extras * captured_minor // total
    return captured_minor - operator - extras, operator, extras
