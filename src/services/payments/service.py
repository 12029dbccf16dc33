# src/services/payments/service.py
"""
Синхронная часть платежей: расчёт стоимости, авторизация, списание, чаевые.

Статусы Authorised/Captured выставляет сверка вебхуков (webhooks.py);
здесь фиксируются только ссылка провайдера и синхронные отказы.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping

from src.common.constants import TypeMsg
from src.common.exceptions import NotFoundError, ProviderDeclineError, ProviderTransientError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.fares.calculator import to_minor
from src.core.fares.models import FareBreakdown, TripMetrics
from src.core.rides.state_machine import RideStateMachine
from src.services.payments.providers.base import ProviderOutcome, ProviderResult
from src.shared.events.payment_events import PaymentFailed
from src.shared.models.payment import PaymentDTO, PaymentStatus, PaymentType
from src.shared.models.ride import RideDTO, RideStatus

if TYPE_CHECKING:
    from src.core.fares.service import FareService
    from src.infra.event_bus import EventBus
    from src.services.payments.providers import ProviderRegistry
    from src.services.payments.repository import PaymentRepository

# платежи, которые ещё могут быть списаны
_ACTIVE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.AUTHORISED)


class PaymentService:
    """
    Сервис платежей.

    Ответственности:
    - Расчёт стоимости поездки
    - Авторизация оплаты поездки и чаевых через провайдера
    - Списание авторизованной суммы
    """

    def __init__(
        self,
        repo: "PaymentRepository",
        fares: "FareService",
        providers: "ProviderRegistry",
        event_bus: "EventBus",
        primary_provider: str | None = None,
        tip_provider: str | None = None,
    ) -> None:
        from src.config import settings

        self.repo = repo
        self.fares = fares
        self.providers = providers
        self.event_bus = event_bus
        self.primary_provider = primary_provider or settings.payments.PRIMARY_PROVIDER
        self.tip_provider = tip_provider or settings.payments.TIP_PROVIDER

    # === РАСЧЁТ ===

    async def quote_fare(self, ride_type_id: str | None, metrics: TripMetrics) -> FareBreakdown:
        return await self.fares.price(ride_type_id, metrics)

    async def get_ride(self, ride_id: str) -> RideDTO:
        ride = await self.repo.get_ride(ride_id)
        if ride is None:
            raise NotFoundError("ride", ride_id)
        return ride

    async def get_payment(self, payment_id: str) -> PaymentDTO:
        payment = await self.repo.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment

    # === АВТОРИЗАЦИЯ ===

    async def authorize_ride(
        self,
        ride_id: str,
        method: Mapping[str, Any],
        provider: str | None = None,
        driver_id: str | None = None,
    ) -> PaymentDTO:
        """
        Авторизовать оплату поездки на сумму по таблице тарифов.

        driver_id — водитель, выбранный клиентом (подтверждение выбора):
        после успешной авторизации сверка переведёт поездку в accepted.
        Повторный вызов при активной авторизации возвращает её же.
        """
        ride = await self.get_ride(ride_id)
        if ride.status in RideStateMachine.TERMINAL:
            raise ValidationError(f"ride {ride_id} is {ride.status.value}", {"ride_id": ride_id})

        for existing in await self.repo.list_ride_payments(ride_id):
            if existing.payment_type == PaymentType.RIDE and existing.status in _ACTIVE_STATUSES and existing.external_ref:
                await log_info(f"Повторная авторизация поездки {ride_id}: используется платёж {existing.id}")
                return existing

        breakdown = await self.fares.price_ride(ride)
        await self.repo.set_ride_total_fare(ride_id, breakdown.total_fare)

        payment = PaymentDTO(
            id=str(uuid.uuid4()),
            ride_id=ride_id,
            provider=(provider or self.primary_provider).lower(),
            payment_type=PaymentType.RIDE,
            amount_minor=to_minor(breakdown.total_fare, breakdown.currency),
            currency=breakdown.currency,
            driver_id=driver_id,
        )
        return await self._authorize(payment, method)

    async def get_tip_bounds(self, ride_id: str) -> tuple[Decimal, Decimal | None]:
        ride = await self.get_ride(ride_id)
        return await self.fares.tip_bounds_for_ride(ride)

    async def add_tip(
        self,
        ride_id: str,
        amount: Decimal,
        method: Mapping[str, Any],
        provider: str | None = None,
    ) -> PaymentDTO:
        """Авторизовать чаевые водителю в пределах тарифа."""
        ride = await self.get_ride(ride_id)
        if ride.status == RideStatus.CANCELLED:
            raise ValidationError(f"ride {ride_id} is cancelled", {"ride_id": ride_id})
        if not ride.driver_id:
            raise ValidationError(f"ride {ride_id} has no driver", {"ride_id": ride_id})

        min_tip, max_tip = await self.fares.tip_bounds_for_ride(ride)
        if amount < min_tip or (max_tip is not None and amount > max_tip):
            raise ValidationError(
                f"tip {amount} is outside [{min_tip}, {max_tip}]",
                {"min_tip": str(min_tip), "max_tip": str(max_tip) if max_tip is not None else None},
            )

        payment = PaymentDTO(
            id=str(uuid.uuid4()),
            ride_id=ride_id,
            provider=(provider or self.tip_provider).lower(),
            payment_type=PaymentType.TIP,
            amount_minor=to_minor(amount, ride.currency),
            currency=ride.currency,
            driver_id=ride.driver_id,
        )
        return await self._authorize(payment, method)

    async def _authorize(self, payment: PaymentDTO, method: Mapping[str, Any]) -> PaymentDTO:
        adapter = self.providers.get(payment.provider)
        payment = await self.repo.create_payment(payment)

        result = await adapter.authorize(
            payment.amount_minor,
            payment.currency,
            method,
            reference=payment.id,
            idempotency_key=f"authorize:{payment.id}",
        )
        if result.external_ref:
            await self.repo.set_external_ref(payment.id, result.external_ref)

        if not result.ok:
            await self._fail(payment, adapter.name, result)

        await log_info(
            f"Авторизация {payment.payment_type.value} {payment.id}: {result.outcome.value}",
            extra={"ride_id": payment.ride_id, "provider": adapter.name, "external_ref": result.external_ref},
        )
        return await self.get_payment(payment.id)

    async def _fail(self, payment: PaymentDTO, provider: str, result: ProviderResult) -> None:
        """Фиксирует отказ и пробрасывает его типизированной ошибкой."""
        await self.repo.transition_payment(payment.id, PaymentStatus.FAILED, failure_reason=result.reason)
        await self.event_bus.publish(
            PaymentFailed(
                payment_id=payment.id,
                ride_id=payment.ride_id,
                provider=provider,
                reason=result.reason,
            )
        )
        if result.outcome == ProviderOutcome.TRANSIENT_ERROR:
            raise ProviderTransientError(provider, result.reason)
        raise ProviderDeclineError(provider, result.reason)

    # === СПИСАНИЕ ===

    async def capture_payment(self, payment_id: str, amount_minor: int | None = None) -> PaymentDTO:
        """
        Списать авторизованную сумму (или её часть).
        Статус Captured и распределение выставляет вебхук CAPTURE.
        """
        payment = await self.get_payment(payment_id)
        if payment.status != PaymentStatus.AUTHORISED or not payment.external_ref:
            raise ValidationError(
                f"payment {payment_id} is {payment.status.value}, expected Authorised",
                {"payment_id": payment_id, "status": payment.status.value},
            )

        amount = payment.amount_minor if amount_minor is None else amount_minor
        if amount <= 0 or amount > payment.amount_minor:
            raise ValidationError(
                f"capture amount {amount} exceeds authorised {payment.amount_minor}",
                {"payment_id": payment_id, "authorised_minor": payment.amount_minor},
            )

        adapter = self.providers.get(payment.provider)
        result = await adapter.capture(payment.external_ref, amount, payment.currency, f"capture:{payment.id}")

        if result.outcome == ProviderOutcome.TRANSIENT_ERROR:
            await log_warning(f"Списание {payment_id} не выполнено: {result.reason}")
            raise ProviderTransientError(adapter.name, result.reason)
        if not result.ok:
            await self.repo.set_failure_reason(payment.id, result.reason)
            raise ProviderDeclineError(adapter.name, result.reason)

        if result.fee_minor is not None:
            await self.repo.set_provider_fee(payment.id, result.fee_minor)

        await log_info(
            f"Списание {payment_id} принято провайдером, ждём CAPTURE",
            type_msg=TypeMsg.DEBUG,
            extra={"amount_minor": amount},
        )
        return await self.get_payment(payment.id)
