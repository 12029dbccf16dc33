# tests/services/test_payment_service.py
"""
Тесты PaymentService: расчёт, авторизация, чаевые, списание.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from src.common.exceptions import NotFoundError, ProviderDeclineError, ProviderTransientError, ValidationError
from src.core.fares.calculator import compute_fare
from src.core.fares.models import TripMetrics
from src.core.fares.service import metrics_for_ride
from src.services.payments.providers.base import ProviderOutcome, ProviderResult
from src.services.payments.service import PaymentService
from src.shared.events.payment_events import PaymentFailed
from src.shared.models.payment import PaymentStatus, PaymentType
from src.shared.models.ride import RideStatus


@pytest.fixture
def repo(make_ride, make_payment):
    repo = AsyncMock()
    repo.get_ride = AsyncMock(return_value=make_ride())
    repo.list_ride_payments = AsyncMock(return_value=[])
    repo.create_payment = AsyncMock(side_effect=lambda payment: payment)
    repo.get_payment = AsyncMock(return_value=make_payment())
    return repo


@pytest.fixture
def fares(sample_rate, make_ride):
    service = AsyncMock()
    service.price_ride = AsyncMock(return_value=compute_fare(sample_rate, metrics_for_ride(make_ride())))
    service.price = AsyncMock(return_value=compute_fare(sample_rate, TripMetrics(3, 10, 2, 0)))
    service.tip_bounds_for_ride = AsyncMock(return_value=(Decimal("5.00"), Decimal("100.00")))
    return service


@pytest.fixture
def service(repo, fares, providers, mock_event_bus):
    return PaymentService(repo, fares, providers, mock_event_bus, primary_provider="adyen", tip_provider="rapyd")


class TestQuoteFare:
    """Тесты расчёта стоимости."""

    @pytest.mark.asyncio
    async def test_delegates_to_fares(self, service, fares) -> None:
        breakdown = await service.quote_fare("standard", TripMetrics(3, 10, 2, 0))

        assert breakdown.total_fare == Decimal("18.00")
        fares.price.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_ride(self, service, repo) -> None:
        repo.get_ride.return_value = None

        with pytest.raises(NotFoundError):
            await service.get_ride("missing")


class TestAuthorizeRide:
    """Тесты авторизации оплаты поездки."""

    @pytest.mark.asyncio
    async def test_authorizes_fare_amount(self, service, repo, adyen_mock) -> None:
        """Сумма авторизации: стоимость по таблице тарифов."""
        await service.authorize_ride("ride-1", {"type": "scheme"}, driver_id="driver-1")

        created = repo.create_payment.await_args.args[0]
        assert created.amount_minor == 8700
        assert created.provider == "adyen"
        assert created.payment_type == PaymentType.RIDE
        assert created.driver_id == "driver-1"

        call = adyen_mock.authorize.await_args
        assert call.args[0] == 8700
        assert call.kwargs["reference"] == created.id
        assert call.kwargs["idempotency_key"] == f"authorize:{created.id}"
        repo.set_external_ref.assert_awaited_once_with(created.id, "adyen_psp_1")
        repo.set_ride_total_fare.assert_awaited_once_with("ride-1", Decimal("87.00"))
        # статус выставит вебхук
        repo.transition_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_override(self, service, repo, stripe_mock) -> None:
        await service.authorize_ride("ride-1", {"id": "pm_1"}, provider="Stripe")

        assert repo.create_payment.await_args.args[0].provider == "stripe"
        stripe_mock.authorize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_declined(self, service, repo, adyen_mock, mock_event_bus) -> None:
        adyen_mock.authorize.return_value = ProviderResult(ProviderOutcome.DECLINED, reason="Refused")

        with pytest.raises(ProviderDeclineError):
            await service.authorize_ride("ride-1", {})

        assert repo.transition_payment.await_args.args[1] == PaymentStatus.FAILED
        assert isinstance(mock_event_bus.publish.await_args.args[0], PaymentFailed)

    @pytest.mark.asyncio
    async def test_transient(self, service, adyen_mock) -> None:
        adyen_mock.authorize.return_value = ProviderResult(ProviderOutcome.TRANSIENT_ERROR, reason="timeout")

        with pytest.raises(ProviderTransientError):
            await service.authorize_ride("ride-1", {})

    @pytest.mark.asyncio
    async def test_reuses_active_authorization(self, service, repo, make_payment, adyen_mock) -> None:
        existing = make_payment(id="pay-0", status=PaymentStatus.PENDING)
        repo.list_ride_payments.return_value = [existing]

        payment = await service.authorize_ride("ride-1", {})

        assert payment.id == "pay-0"
        adyen_mock.authorize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminal_ride(self, service, repo, make_ride) -> None:
        repo.get_ride.return_value = make_ride(status=RideStatus.COMPLETED)

        with pytest.raises(ValidationError):
            await service.authorize_ride("ride-1", {})

    @pytest.mark.asyncio
    async def test_unknown_provider(self, service) -> None:
        with pytest.raises(ValidationError):
            await service.authorize_ride("ride-1", {}, provider="paypal")


class TestTips:
    """Тесты чаевых."""

    @pytest.mark.asyncio
    async def test_tip_within_bounds(self, service, repo, rapyd_mock) -> None:
        await service.add_tip("ride-1", Decimal("10.00"), {"id": "card_1"})

        created = repo.create_payment.await_args.args[0]
        assert created.payment_type == PaymentType.TIP
        assert created.amount_minor == 1000
        assert created.provider == "rapyd"
        assert created.driver_id == "driver-1"
        rapyd_mock.authorize.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("4.99"), Decimal("100.01")])
    async def test_tip_out_of_bounds(self, service, repo, amount: Decimal) -> None:
        with pytest.raises(ValidationError):
            await service.add_tip("ride-1", amount, {})

        repo.create_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tip_without_driver(self, service, repo, make_ride) -> None:
        repo.get_ride.return_value = make_ride(driver_id=None)

        with pytest.raises(ValidationError):
            await service.add_tip("ride-1", Decimal("10.00"), {})

    @pytest.mark.asyncio
    async def test_tip_bounds(self, service) -> None:
        assert await service.get_tip_bounds("ride-1") == (Decimal("5.00"), Decimal("100.00"))


class TestCapture:
    """Тесты списания."""

    @pytest.mark.asyncio
    async def test_full_capture(self, service, repo, adyen_mock) -> None:
        adyen_mock.capture.return_value = ProviderResult(ProviderOutcome.CAPTURED, external_ref="CAP1", fee_minor=282)

        await service.capture_payment("pay-1")

        adyen_mock.capture.assert_awaited_once_with("PSP123", 8700, "USD", "capture:pay-1")
        repo.set_provider_fee.assert_awaited_once_with("pay-1", 282)

    @pytest.mark.asyncio
    async def test_partial_capture(self, service, adyen_mock) -> None:
        await service.capture_payment("pay-1", 5000)
        assert adyen_mock.capture.await_args.args[1] == 5000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, 8701])
    async def test_invalid_amount(self, service, adyen_mock, amount: int) -> None:
        with pytest.raises(ValidationError):
            await service.capture_payment("pay-1", amount)
        adyen_mock.capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_authorised(self, service, repo, make_payment) -> None:
        repo.get_payment.return_value = make_payment(status=PaymentStatus.PENDING)

        with pytest.raises(ValidationError):
            await service.capture_payment("pay-1")

    @pytest.mark.asyncio
    async def test_declined(self, service, repo, adyen_mock) -> None:
        adyen_mock.capture.return_value = ProviderResult(ProviderOutcome.DECLINED, reason="expired")

        with pytest.raises(ProviderDeclineError):
            await service.capture_payment("pay-1")

        repo.set_failure_reason.assert_awaited_once_with("pay-1", "expired")

    @pytest.mark.asyncio
    async def test_transient(self, service, repo, adyen_mock) -> None:
        adyen_mock.capture.return_value = ProviderResult(ProviderOutcome.TRANSIENT_ERROR, reason="timeout")

        with pytest.raises(ProviderTransientError):
            await service.capture_payment("pay-1")

        repo.set_failure_reason.assert_not_awaited()
