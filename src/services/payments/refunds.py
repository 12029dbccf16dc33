# src/services/payments/refunds.py
"""
Котировка и исполнение возвратов, отмена поездки.

quote_refund и execute_refund строят котировку одним и тем же
_build_quote: стоимость пересчитывается по таблице тарифов, доля
оператора берётся из того же расчёта, комиссия провайдера — из платежа.
Поэтому котировка до и после исполнения совпадает.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.common.exceptions import NotFoundError, ProviderDeclineError, ProviderTransientError, ValidationError
from src.common.logger import log_error, log_info, log_warning
from src.core.fares.calculator import to_minor
from src.core.refunds.formula import RefundQuote, compute_refund_quote
from src.core.rides.state_machine import RideStateMachine
from src.services.payments.providers.base import ProviderOutcome
from src.shared.events.payment_events import RideCancelled
from src.shared.models.payment import (
    PaymentDTO,
    PaymentStatus,
    PaymentType,
    RefundDTO,
    RefundKind,
    RefundStatus,
)
from src.shared.models.ride import RideDTO, RideStatus

if TYPE_CHECKING:
    from src.core.fares.service import FareService
    from src.infra.event_bus import EventBus
    from src.services.payments.providers import ProviderRegistry
    from src.services.payments.repository import PaymentRepository


@dataclass(frozen=True)
class RefundExecution:
    refund_id: str | None
    refunded_amount_minor: int
    status: RefundStatus
    currency: str


@dataclass
class CancellationResult:
    ride_id: str
    status: RideStatus
    refund: RefundExecution | None = None
    voided_payment_ids: list[str] = field(default_factory=list)


async def void_authorization(
    repo: "PaymentRepository",
    providers: "ProviderRegistry",
    payment: PaymentDTO,
) -> bool:
    """Отменяет неподтверждённую авторизацию у провайдера и помечает платёж Voided."""
    if not payment.external_ref:
        return False
    adapter = providers.get(payment.provider)
    result = await adapter.void(payment.external_ref, f"void:{payment.id}")
    if not result.ok:
        await log_error(
            f"Не удалось отменить авторизацию {payment.id}: {result.outcome.value} {result.reason}",
            extra={"ride_id": payment.ride_id},
        )
        return False
    await repo.transition_payment(payment.id, PaymentStatus.VOIDED)
    await log_info(f"Авторизация {payment.id} отменена у провайдера")
    return True


class RefundQuoteEngine:
    """
    Возвраты по поездкам.

    - quote_refund: сколько вернётся при отмене (только чтение)
    - execute_refund: возврат по отмене, не больше одного на поездку
    - refund_payment: ручной частичный возврат
    - cancel_ride: отмена поездки с void/возвратом
    """

    def __init__(
        self,
        repo: "PaymentRepository",
        fares: "FareService",
        providers: "ProviderRegistry",
        event_bus: "EventBus",
    ) -> None:
        self.repo = repo
        self.fares = fares
        self.providers = providers
        self.event_bus = event_bus

    async def _get_ride(self, ride_id: str) -> RideDTO:
        ride = await self.repo.get_ride(ride_id)
        if ride is None:
            raise NotFoundError("ride", ride_id)
        return ride

    async def _provider_fee(self, payment: PaymentDTO | None) -> int:
        """Комиссия из платежа, иначе у провайдера (и сохраняем), иначе 0."""
        if payment is None:
            return 0
        if payment.provider_fee_minor is not None:
            return payment.provider_fee_minor
        if not payment.external_ref:
            return 0

        fee = await self.providers.get(payment.provider).fetch_processing_fee(payment.external_ref)
        if fee is None:
            return 0
        await self.repo.set_provider_fee(payment.id, fee)
        return fee

    async def _already_refunded(self, payment: PaymentDTO) -> int:
        """Возвращено по платежу помимо возврата по отмене: ручные возвраты в пути и завершённые."""
        already = max(payment.refunded_amount_minor, await self.repo.sum_open_refunds(payment.id))
        cancellation = await self.repo.get_cancellation_refund(payment.ride_id)
        if cancellation is not None and cancellation.status != RefundStatus.FAILED:
            already -= cancellation.amount_minor
        return max(0, already)

    async def _build_quote(self, ride: RideDTO, payment: PaymentDTO | None) -> RefundQuote:
        breakdown = await self.fares.price_ride(ride)
        currency = breakdown.currency
        return compute_refund_quote(
            total_fare_minor=to_minor(breakdown.total_fare, currency),
            operator_share_minor=to_minor(breakdown.operator_amount, currency),
            provider_fee_minor=await self._provider_fee(payment),
            captured_amount_minor=payment.captured_amount_minor if payment else 0,
            currency=currency,
            already_refunded_minor=await self._already_refunded(payment) if payment else 0,
        )

    async def quote_refund(self, ride_id: str) -> RefundQuote:
        ride = await self._get_ride(ride_id)
        payment = await self.repo.get_captured_ride_payment(ride_id)
        return await self._build_quote(ride, payment)

    # =========================================================================
    # ИСПОЛНЕНИЕ
    # =========================================================================

    async def execute_refund(self, ride_id: str, reason: str | None = None) -> RefundExecution:
        """
        Возврат по отмене. Идемпотентен: строка возврата создаётся один раз,
        повтор либо возвращает её, либо довызывает провайдера с тем же ключом.
        """
        ride = await self._get_ride(ride_id)
        payment = await self.repo.get_captured_ride_payment(ride_id)
        if payment is None:
            raise ValidationError(f"ride {ride_id} has no captured payment", {"ride_id": ride_id})

        existing = await self.repo.get_cancellation_refund(ride_id)
        if existing is not None and (existing.status != RefundStatus.PENDING or existing.external_ref):
            return RefundExecution(existing.id, existing.amount_minor, existing.status, payment.currency)

        if existing is None:
            quote = await self._build_quote(ride, payment)
            refund_id = str(uuid.uuid4())
            refund = await self.repo.create_refund(
                RefundDTO(
                    id=refund_id,
                    ride_id=ride_id,
                    payment_id=payment.id,
                    kind=RefundKind.CANCELLATION,
                    amount_minor=quote.refundable_amount_minor,
                    operator_share_minor=quote.operator_share_minor,
                    provider_fee_minor=quote.provider_fee_minor,
                    idempotency_key=f"refund:{refund_id}",
                    reason=reason,
                )
            )
        else:
            refund = existing

        if refund.amount_minor <= 0:
            await self.repo.update_refund(refund.id, RefundStatus.SUCCEEDED)
            await log_info(f"Возврат по поездке {ride_id}: к возврату 0")
            return RefundExecution(refund.id, 0, RefundStatus.SUCCEEDED, payment.currency)

        return await self._send(payment, refund)

    async def refund_payment(self, payment_id: str, amount_minor: int, reason: str | None = None) -> RefundExecution:
        """Ручной возврат части списанной суммы."""
        payment = await self.repo.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        if payment.status not in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED):
            raise ValidationError(
                f"payment {payment_id} is {payment.status.value}, nothing to refund",
                {"payment_id": payment_id, "status": payment.status.value},
            )
        if amount_minor <= 0:
            raise ValidationError("refund amount must be positive", {"amount_minor": amount_minor})

        already = max(payment.refunded_amount_minor, await self.repo.sum_open_refunds(payment_id))
        available = max(0, payment.captured_amount_minor - already)
        if amount_minor > available:
            raise ValidationError(
                f"refund {amount_minor} exceeds refundable {available}",
                {"payment_id": payment_id, "requested_minor": amount_minor, "refundable_minor": available},
            )

        refund_id = str(uuid.uuid4())
        refund = await self.repo.create_refund(
            RefundDTO(
                id=refund_id,
                ride_id=payment.ride_id,
                payment_id=payment.id,
                kind=RefundKind.MANUAL,
                amount_minor=amount_minor,
                idempotency_key=f"refund:{refund_id}",
                reason=reason,
            )
        )
        return await self._send(payment, refund)

    async def _send(self, payment: PaymentDTO, refund: RefundDTO) -> RefundExecution:
        """Вызов провайдера. Успех фиксирует вебхук REFUND; здесь — ссылка или отказ."""
        adapter = self.providers.get(payment.provider)
        result = await adapter.refund(payment.external_ref or "", refund.amount_minor, payment.currency, refund.idempotency_key)

        if result.outcome == ProviderOutcome.TRANSIENT_ERROR:
            await log_warning(f"Возврат {refund.id} отложен: {result.reason}")
            raise ProviderTransientError(adapter.name, result.reason)
        if not result.ok:
            await self.repo.update_refund(refund.id, RefundStatus.FAILED)
            raise ProviderDeclineError(adapter.name, result.reason)

        await self.repo.update_refund(refund.id, RefundStatus.PENDING, external_ref=result.external_ref)
        await log_info(
            f"Возврат {refund.id} принят провайдером",
            extra={"payment_id": payment.id, "amount_minor": refund.amount_minor, "kind": refund.kind.value},
        )
        return RefundExecution(refund.id, refund.amount_minor, RefundStatus.PENDING, payment.currency)

    # =========================================================================
    # ОТМЕНА ПОЕЗДКИ
    # =========================================================================

    async def cancel_ride(self, ride_id: str, reason: str | None = None) -> CancellationResult:
        """
        Отмена поездки.

        Авторизованные платежи отменяются у провайдера, списанный — возвращается
        по формуле. Авторизация, которая ещё в пути, будет отменена при сверке.
        """
        async with self.repo.db.transaction() as conn:
            ride = await self.repo.get_ride(ride_id, conn, for_update=True)
            if ride is None:
                raise NotFoundError("ride", ride_id)
            already_cancelled = ride.status == RideStatus.CANCELLED
            if not already_cancelled:
                if ride.status in RideStateMachine.TERMINAL:
                    raise ValidationError(f"ride {ride_id} is {ride.status.value}", {"ride_id": ride_id})
                await self.repo.transition_ride(ride_id, RideStatus.CANCELLED, conn, reason=reason)

        result = CancellationResult(ride_id=ride_id, status=RideStatus.CANCELLED)
        for payment in await self.repo.list_ride_payments(ride_id):
            if payment.status == PaymentStatus.AUTHORISED:
                if await void_authorization(self.repo, self.providers, payment):
                    result.voided_payment_ids.append(payment.id)
            elif payment.payment_type == PaymentType.RIDE and payment.status in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED):
                result.refund = await self.execute_refund(ride_id, reason=reason)

        if not already_cancelled:
            await self.event_bus.publish(
                RideCancelled(
                    ride_id=ride_id,
                    reason=reason,
                    refund_id=result.refund.refund_id if result.refund else None,
                    refunded_amount_minor=result.refund.refunded_amount_minor if result.refund else 0,
                )
            )
        await log_info(f"Поездка {ride_id} отменена", extra={"reason": reason, "voided": result.voided_payment_ids})
        return result
