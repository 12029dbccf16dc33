# tests/core/test_fare_calculator.py
"""
Тесты расчёта стоимости и распределения.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from src.core.fares.calculator import (
    DEFAULT_RATE,
    allocate_split,
    compute_fare,
    from_minor,
    operator_share,
    tip_bounds,
    to_minor,
    vehicle_count,
)
from src.core.fares.models import FareBreakdown, RateTableEntry, TripMetrics


class TestMoney:
    """Тесты денежных утилит."""

    def test_to_minor_usd(self) -> None:
        """Доллары переводятся в центы с округлением половины вверх."""
        assert to_minor(Decimal("87.00"), "USD") == 8700
        assert to_minor("0.005", "USD") == 1
        assert to_minor(12.345, "USD") == 1235

    def test_zero_decimal_currency(self) -> None:
        """У JPY минорная единица равна основной."""
        assert to_minor(Decimal("1500"), "JPY") == 1500
        assert from_minor(1500, "jpy") == Decimal("1500")

    def test_from_minor(self) -> None:
        """Центы -> доллары с двумя знаками."""
        assert from_minor(8700, "USD") == Decimal("87.00")
        assert from_minor(1, "USD") == Decimal("0.01")


class TestVehicleCount:
    """Тесты числа машин."""

    @pytest.mark.parametrize(
        "passengers,expected",
        [(None, 1), (0, 1), (-3, 1), (1, 1), (4, 1), (5, 2), (8, 2), (9, 3)],
    )
    def test_vehicle_count(self, passengers: int | None, expected: int) -> None:
        """Минимум одна машина, округление вверх по вместимости."""
        assert vehicle_count(passengers, 4) == expected

    def test_zero_capacity_treated_as_one(self) -> None:
        assert vehicle_count(3, 0) == 3


class TestComputeFare:
    """Тесты compute_fare."""

    def test_worked_example(self, sample_rate: RateTableEntry) -> None:
        """10 миль, 20 минут, 5 пассажиров, 1 питомец -> 87.00."""
        metrics = TripMetrics(distance_miles=10, duration_minutes=20, passenger_count=5, pet_count=1)

        fare = compute_fare(sample_rate, metrics)

        assert fare.vehicle_count == 2
        assert fare.driver_amount == Decimal("50.00")
        assert fare.operator_amount == Decimal("12.00")
        assert fare.extras == Decimal("15.00")
        assert fare.multi_vehicle_tip == Decimal("10.00")
        assert fare.total_fare == Decimal("87.00")
        assert fare.used_fallback_rate is False

    def test_single_vehicle_has_no_bonus(self, sample_rate: RateTableEntry) -> None:
        """Одна машина: бонус за несколько машин не начисляется."""
        fare = compute_fare(sample_rate, TripMetrics(distance_miles=3, duration_minutes=10, passenger_count=2))

        assert fare.vehicle_count == 1
        assert fare.multi_vehicle_tip == Decimal("0.00")
        # (2.00*3 + 5.00) + 0.30*10 + 2.00*2
        assert fare.total_fare == Decimal("11.00") + Decimal("3.00") + Decimal("4.00")

    def test_missing_inputs_normalized(self, sample_rate: RateTableEntry) -> None:
        """Отсутствующие метрики: 0 миль, 0 минут, 1 пассажир, 0 питомцев."""
        fare = compute_fare(sample_rate, TripMetrics())

        assert fare.driver_amount == Decimal("5.00")
        assert fare.operator_amount == Decimal("0.00")
        assert fare.extras == Decimal("2.00")
        assert fare.total_fare == Decimal("7.00")

    def test_negative_inputs_clamped(self, sample_rate: RateTableEntry) -> None:
        fare = compute_fare(sample_rate, TripMetrics(distance_miles=-5, duration_minutes=-1, pet_count=-2))
        assert fare.total_fare == Decimal("7.00")

    def test_fallback_rate(self) -> None:
        """Неизвестный тип поездки считается по тарифу по умолчанию."""
        fare = compute_fare(None, TripMetrics(distance_miles=10, duration_minutes=20, passenger_count=5, pet_count=1))

        assert fare.used_fallback_rate is True
        assert fare.currency == DEFAULT_RATE.currency
        assert fare.total_fare == Decimal("87.00")

    @pytest.mark.parametrize(
        "miles,minutes,passengers,pets",
        [
            ("0.33", "7.7", 1, 0),
            ("12.345", "19.99", 7, 2),
            ("1.005", "0.015", 13, 3),
            ("99.999", "123.456", 4, 0),
        ],
    )
    def test_parts_sum_to_total(self, sample_rate: RateTableEntry, miles: str, minutes: str, passengers: int, pets: int) -> None:
        """Составляющие всегда складываются в итог без расхождений."""
        fare = compute_fare(
            sample_rate,
            TripMetrics(Decimal(miles), Decimal(minutes), passengers, pets),
        )
        assert fare.driver_amount + fare.operator_amount + fare.extras + fare.multi_vehicle_tip == fare.total_fare
        assert fare.driver_payable + fare.operator_amount + fare.extras == fare.total_fare

    def test_operator_share_matches_fare(self, sample_rate: RateTableEntry) -> None:
        """operator_share: та же формула, что в compute_fare."""
        metrics = TripMetrics(distance_miles=10, duration_minutes=20, passenger_count=5)
        assert operator_share(sample_rate, metrics) == compute_fare(sample_rate, metrics).operator_amount


class TestTipBounds:
    """Тесты границ чаевых."""

    def test_rate_bounds(self, sample_rate: RateTableEntry) -> None:
        assert tip_bounds(sample_rate) == (Decimal("5.00"), Decimal("100.00"))

    def test_default_bounds(self) -> None:
        assert tip_bounds(None) == (DEFAULT_RATE.min_tip, DEFAULT_RATE.max_tip)


class TestAllocateSplit:
    """Тесты распределения списанной суммы."""

    @pytest.fixture
    def breakdown(self) -> FareBreakdown:
        return FareBreakdown(
            driver_amount=Decimal("50.00"),
            operator_amount=Decimal("12.00"),
            extras=Decimal("15.00"),
            multi_vehicle_tip=Decimal("10.00"),
            total_fare=Decimal("87.00"),
            vehicle_count=2,
            currency="USD",
        )

    def test_exact_capture(self, breakdown: FareBreakdown) -> None:
        """Списано по расчёту: доли как в расчёте, бонус у водителя."""
        assert allocate_split(breakdown, 8700) == (6000, 1200, 1500)

    def test_partial_capture_sums_to_captured(self, breakdown: FareBreakdown) -> None:
        """Частичное списание: доли масштабируются, сумма равна списанному."""
        driver, operator, extras = allocate_split(breakdown, 4351)

        assert driver + operator + extras == 4351
        assert operator == 1200 * 4351 // 8700
        assert extras == 1500 * 4351 // 8700

    def test_zero_capture(self, breakdown: FareBreakdown) -> None:
        assert allocate_split(breakdown, 0) == (0, 0, 0)
