# src/services/payments/webhooks.py
"""
Сверка вебхуков провайдеров с состоянием поездок, платежей и выплат.

Порядок обработки одного события (одна транзакция):
1. INSERT в webhook_events (ON CONFLICT DO NOTHING по provider/external_ref/event_type)
2. SELECT ... FOR UPDATE строки события; уже обработанное — дубликат, no-op
3. Переход статусов через CAS (UPDATE ... WHERE status = ANY(...))
4. processed = TRUE в той же транзакции

Доменные события публикуются и void/возвраты вызываются после commit.
Падение посреди перехода откатывает всё, следующая доставка применит событие заново.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

from asyncpg import Connection

from src.common.exceptions import PaymentError, ReconciliationConflict, UnknownWebhookShape
from src.common.logger import log_audit, log_debug, log_error, log_info, log_warning
from src.core.fares.calculator import allocate_split, from_minor
from src.services.payments.providers.base import NormalizedWebhookEvent, WebhookEventType
from src.services.payments.refunds import void_authorization
from src.shared.events.base import DomainEvent
from src.shared.events.payment_events import PaymentAuthorized, PaymentCaptured, PaymentFailed, PaymentRefunded
from src.shared.events.payout_events import PayoutCompleted, PayoutFailed
from src.shared.models.payment import PaymentDTO, PaymentSplitDTO, PaymentStatus, PaymentType, RefundStatus
from src.shared.models.payout import PayoutStatus
from src.shared.models.ride import RideStatus

if TYPE_CHECKING:
    from src.core.fares.service import FareService
    from src.infra.event_bus import EventBus
    from src.services.payments.providers import ProviderRegistry
    from src.services.payments.refunds import RefundQuoteEngine
    from src.services.payments.repository import PaymentRepository
    from src.services.payouts.repository import PayoutRepository


@dataclass
class WebhookResult:
    """Итог обработки одной доставки. Провайдеру всегда отвечаем 200."""
    provider: str
    rejected: bool = False
    received: int = 0
    applied: int = 0
    duplicates: int = 0
    ignored: int = 0
    outcomes: list[str] = field(default_factory=list)


@dataclass
class _Effects:
    """Действия после commit."""
    events: list[DomainEvent] = field(default_factory=list)
    void_payments: list[PaymentDTO] = field(default_factory=list)
    refund_rides: list[str] = field(default_factory=list)


class WebhookReconciler:
    """
    Применяет нормализованные события провайдеров.

    strict=True (не production): нераспознанное тело вебхука — исключение.
    strict=False (production): логируется и игнорируется.
    """

    def __init__(
        self,
        repo: "PaymentRepository",
        payouts: "PayoutRepository",
        fares: "FareService",
        providers: "ProviderRegistry",
        event_bus: "EventBus",
        refunds: "RefundQuoteEngine | None" = None,
        operator_account_id: str | None = None,
        strict: bool | None = None,
    ) -> None:
        from src.config import settings

        self.repo = repo
        self.payouts = payouts
        self.fares = fares
        self.providers = providers
        self.event_bus = event_bus
        self.refunds = refunds
        self.operator_account_id = operator_account_id or settings.payouts.OPERATOR_ACCOUNT_ID
        self.strict = (not settings.system.is_production) if strict is None else strict

    # =========================================================================
    # ВХОД
    # =========================================================================

    async def handle(self, provider_name: str, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        """Проверка подписи, разбор и применение всех событий доставки."""
        adapter = self.providers.get(provider_name)
        result = WebhookResult(provider=adapter.name)

        if not adapter.verify_webhook(headers, body):
            rejection_id = await self.repo.record_rejection(adapter.name, "invalid signature", headers, body)
            await log_audit(
                f"Вебхук {adapter.name} отклонён: неверная подпись",
                extra={"provider": adapter.name, "rejection_id": rejection_id, "body_size": len(body)},
            )
            result.rejected = True
            return result

        try:
            events = adapter.parse_webhook(body)
        except UnknownWebhookShape as e:
            if self.strict:
                raise
            await log_error(f"Нераспознанный вебхук {adapter.name} проигнорирован: {e.message}")
            result.ignored += 1
            return result

        try:
            payload: Any = json.loads(body)
        except ValueError:
            payload = {}

        result.received = len(events)
        for event in events:
            outcome = await self.apply(event, payload)
            result.outcomes.append(outcome)
            if outcome == "duplicate":
                result.duplicates += 1
            elif outcome == "ignored":
                result.ignored += 1
            else:
                result.applied += 1
        return result

    async def apply(self, event: NormalizedWebhookEvent, payload: Any = None) -> str:
        """
        Применяет одно событие идемпотентно.

        Returns:
            Итог: duplicate, ignored, authorised, captured, refunded, anomaly и т.п.
        """
        effects = _Effects()
        normalized = asdict(event)
        normalized["event_type"] = event.event_type.value
        try:
            async with self.repo.db.transaction() as conn:
                await self.repo.record_webhook_event(
                    event.provider, event.external_ref, event.dedup_event_type, payload or {}, normalized, conn
                )
                row = await self.repo.lock_webhook_event(
                    event.provider, event.external_ref, event.dedup_event_type, conn
                )
                if row is None or row["processed"]:
                    raise ReconciliationConflict(
                        f"{event.provider} {event.dedup_event_type} {event.external_ref} already processed"
                    )
                outcome = await self._dispatch(event, conn, effects)
                await self.repo.mark_webhook_processed(row["id"], outcome, conn)
        except ReconciliationConflict as e:
            await log_debug(f"Дубликат вебхука: {e.message}")
            return "duplicate"

        await self._after_commit(effects)
        return outcome

    async def _dispatch(self, event: NormalizedWebhookEvent, conn: Connection, effects: _Effects) -> str:
        if event.event_type == WebhookEventType.AUTHORISATION:
            return await self._on_authorisation(event, conn, effects)
        if event.event_type == WebhookEventType.CAPTURE:
            return await self._on_capture(event, conn, effects)
        if event.event_type == WebhookEventType.REFUND:
            return await self._on_refund(event, conn, effects)
        if event.event_type == WebhookEventType.CANCELLATION:
            return await self._on_cancellation(event, conn)
        if event.event_type == WebhookEventType.PAYOUT:
            return await self._on_payout(event, conn, effects)

        await log_info(
            f"Вебхук {event.provider} {event.raw_event_code} не обрабатывается",
            extra={"external_ref": event.external_ref},
        )
        return "ignored"

    async def _find_payment(self, event: NormalizedWebhookEvent, conn: Connection) -> PaymentDTO | None:
        payment = await self.repo.get_payment_by_external_ref(event.provider, event.payment_ref, conn, for_update=True)
        if payment is not None:
            return payment

        # вебхук раньше ответа на авторизацию: ищем по нашему reference
        reference = event.merchant_reference
        if not reference:
            return None
        payment = await self.repo.get_payment(reference, conn, for_update=True)
        if payment is None or payment.provider != event.provider:
            return None
        if payment.external_ref is None:
            await self.repo.set_external_ref(payment.id, event.payment_ref, conn)
        return payment

    # =========================================================================
    # ПЛАТЕЖИ
    # =========================================================================

    async def _on_authorisation(self, event: NormalizedWebhookEvent, conn: Connection, effects: _Effects) -> str:
        payment = await self._find_payment(event, conn)
        if payment is None:
            await log_warning(
                f"Аномалия: AUTHORISATION для неизвестного платежа {event.provider}:{event.payment_ref}",
                extra={"external_ref": event.external_ref},
            )
            return "anomaly"

        if not event.success:
            if not await self.repo.transition_payment(payment.id, PaymentStatus.FAILED, conn, failure_reason=event.reason):
                return "stale"
            effects.events.append(
                PaymentFailed(payment_id=payment.id, ride_id=payment.ride_id, provider=payment.provider, reason=event.reason)
            )
            return "failed"

        if not await self.repo.transition_payment(payment.id, PaymentStatus.AUTHORISED, conn):
            return "stale"

        ride = await self.repo.get_ride(payment.ride_id, conn, for_update=True)
        if ride is not None and ride.status == RideStatus.CANCELLED:
            # поездку отменили, пока шла авторизация
            effects.void_payments.append(payment)
            await log_info(f"Авторизация {payment.id} пришла после отмены поездки {ride.id}, будет отменена")
            return "authorised_after_cancel"

        if ride is not None and payment.payment_type == PaymentType.RIDE and payment.driver_id:
            await self.repo.transition_ride(ride.id, RideStatus.ACCEPTED, conn, driver_id=payment.driver_id)

        effects.events.append(
            PaymentAuthorized(
                payment_id=payment.id,
                ride_id=payment.ride_id,
                provider=payment.provider,
                amount_minor=payment.amount_minor,
                currency=payment.currency,
                driver_id=payment.driver_id,
            )
        )
        return "authorised"

    async def _on_capture(self, event: NormalizedWebhookEvent, conn: Connection, effects: _Effects) -> str:
        payment = await self._find_payment(event, conn)
        if payment is None:
            await log_warning(
                f"Аномалия: CAPTURE без авторизации {event.provider}:{event.payment_ref}",
                extra={"external_ref": event.external_ref, "amount_minor": event.amount_minor},
            )
            return "anomaly"

        if not event.success:
            await self.repo.set_failure_reason(payment.id, event.reason or event.raw_event_code, conn)
            return "capture_failed"

        captured = min(event.amount_minor or payment.amount_minor, payment.amount_minor)
        if not await self.repo.transition_payment(payment.id, PaymentStatus.CAPTURED, conn, captured_amount_minor=captured):
            return "stale"

        ride = await self.repo.get_ride(payment.ride_id, conn, for_update=True)
        if ride is None:
            await log_error(f"Платёж {payment.id} ссылается на несуществующую поездку {payment.ride_id}")
            return "anomaly"
        driver_id = ride.driver_id or payment.driver_id

        if payment.payment_type == PaymentType.TIP:
            tip = from_minor(captured, payment.currency)
            await self.repo.adjust_ride_amounts(ride.id, tip, tip, conn)
            split = PaymentSplitDTO(
                payment_id=payment.id,
                ride_id=ride.id,
                driver_id=driver_id,
                driver_amount_minor=captured,
                operator_amount_minor=0,
                extras_minor=0,
                total_minor=captured,
            )
            if driver_id:
                await self.repo.record_driver_earning(
                    driver_id, captured, "tip", payment.currency, conn, ride_id=ride.id, payment_id=payment.id
                )
        else:
            breakdown = await self.fares.price_ride(ride)
            driver_minor, operator_minor, extras_minor = allocate_split(breakdown, captured)
            split = PaymentSplitDTO(
                payment_id=payment.id,
                ride_id=ride.id,
                driver_id=driver_id,
                driver_amount_minor=driver_minor,
                operator_amount_minor=operator_minor,
                extras_minor=extras_minor,
                total_minor=captured,
            )
            await self.repo.set_ride_total_fare(ride.id, breakdown.total_fare, conn)
            if driver_id:
                await self.repo.record_driver_earning(
                    driver_id, driver_minor, "ride_payment", payment.currency, conn, ride_id=ride.id, payment_id=payment.id
                )
            else:
                await log_warning(f"Списание {payment.id} без водителя: доля водителя не начислена")
            await self.repo.credit_operator(self.operator_account_id, operator_minor + extras_minor, conn)
            await self.repo.transition_ride(ride.id, RideStatus.COMPLETED, conn, driver_id=driver_id)

            if ride.status == RideStatus.CANCELLED:
                effects.refund_rides.append(ride.id)

        await self.repo.insert_split(split, conn)
        effects.events.append(
            PaymentCaptured(
                payment_id=payment.id,
                ride_id=ride.id,
                provider=payment.provider,
                payment_type=payment.payment_type.value,
                amount_minor=captured,
                currency=payment.currency,
                driver_amount_minor=split.driver_amount_minor,
                operator_amount_minor=split.operator_amount_minor,
                extras_minor=split.extras_minor,
            )
        )
        return "captured"

    async def _on_refund(self, event: NormalizedWebhookEvent, conn: Connection, effects: _Effects) -> str:
        payment = await self._find_payment(event, conn)
        if payment is None:
            await log_warning(
                f"Аномалия: REFUND для неизвестного платежа {event.provider}:{event.payment_ref}",
                extra={"external_ref": event.external_ref},
            )
            return "anomaly"

        refs = [ref for ref in (event.external_ref, event.metadata.get("object_id")) if ref]
        refund = await self.repo.find_refund_for_event(payment.id, refs, conn)

        if not event.success:
            if refund is not None:
                await self.repo.update_refund(refund.id, RefundStatus.FAILED, conn=conn)
            await log_warning(f"Возврат по платежу {payment.id} не прошёл: {event.reason or event.raw_event_code}")
            return "refund_failed"

        amount = refund.amount_minor if refund is not None else (event.amount_minor or 0)
        applied = await self.repo.apply_refund_amount(payment.id, amount, conn)
        if refund is not None:
            await self.repo.update_refund(refund.id, RefundStatus.SUCCEEDED, external_ref=event.external_ref, conn=conn)
        if applied <= 0:
            return "stale"

        applied_major = from_minor(applied, payment.currency)
        if payment.payment_type == PaymentType.TIP:
            await self.repo.adjust_ride_amounts(payment.ride_id, -applied_major, -applied_major, conn)
        else:
            await self.repo.adjust_ride_amounts(payment.ride_id, -applied_major, conn=conn)

        await self._reverse_earnings(payment, applied, conn)
        effects.events.append(
            PaymentRefunded(
                payment_id=payment.id,
                ride_id=payment.ride_id,
                provider=payment.provider,
                amount_minor=applied,
                currency=payment.currency,
                refund_id=refund.id if refund is not None else None,
            )
        )
        return "refunded"

    async def _reverse_earnings(self, payment: PaymentDTO, amount_minor: int, conn: Connection) -> None:
        """Сторнирование начислений: сначала доля водителя, остаток — с оператора."""
        split = await self.repo.get_split(payment.id, conn)
        if split is None:
            return
        driver_part = min(split.driver_amount_minor, amount_minor)
        operator_part = min(split.operator_amount_minor + split.extras_minor, amount_minor - driver_part)
        if split.driver_id and driver_part > 0:
            await self.repo.record_driver_earning(
                split.driver_id, -driver_part, "refund", payment.currency, conn,
                ride_id=payment.ride_id, payment_id=payment.id,
            )
        if operator_part > 0:
            await self.repo.credit_operator(self.operator_account_id, -operator_part, conn)

    async def _on_cancellation(self, event: NormalizedWebhookEvent, conn: Connection) -> str:
        payment = await self._find_payment(event, conn)
        if payment is None:
            await log_warning(f"Аномалия: CANCELLATION для неизвестного платежа {event.provider}:{event.payment_ref}")
            return "anomaly"
        if not event.success:
            return "cancellation_failed"
        if not await self.repo.transition_payment(payment.id, PaymentStatus.VOIDED, conn):
            return "stale"
        return "voided"

    # =========================================================================
    # ВЫПЛАТЫ
    # =========================================================================

    async def _on_payout(self, event: NormalizedWebhookEvent, conn: Connection, effects: _Effects) -> str:
        payout = await self.payouts.get_by_external_ref(event.provider, event.payment_ref, conn, for_update=True)
        if payout is None and event.merchant_reference:
            payout = await self.payouts.get_payout(event.merchant_reference, conn, for_update=True)
        if payout is None:
            await log_warning(f"Аномалия: PAYOUT для неизвестной выплаты {event.provider}:{event.payment_ref}")
            return "anomaly"

        if event.success:
            if payout.status == PayoutStatus.COMPLETED:
                return "stale"
            if payout.status == PayoutStatus.FAILED:
                # деньги ушли, хотя выплату считали неуспешной
                await log_warning(f"Подтверждение выплаты {payout.id}, уже отмеченной неуспешной")
                other = await self.payouts.get_period_payout(
                    payout.recipient_type, payout.recipient_id, payout.cadence, payout.period_start, conn
                )
                if other is not None:
                    # период уже занят новой выплатой: строку не трогаем, баланс списываем
                    await self.payouts.debit_balance(payout.recipient_type, payout.recipient_id, payout.amount_minor, conn)
                    await log_error(
                        f"Двойная выплата получателю {payout.recipient_id}: {payout.id} и {other.id}",
                        extra={"payout_id": payout.id, "amount_minor": payout.amount_minor},
                    )
                    return "anomaly"
            await self.payouts.mark_completed(payout.id, event.payment_ref, conn)
            if payout.status in (PayoutStatus.PROCESSING, PayoutStatus.FAILED):
                # синхронный ответ не дошёл или был отказом: списываем баланс здесь
                await self.payouts.debit_balance(payout.recipient_type, payout.recipient_id, payout.amount_minor, conn)
            effects.events.append(
                PayoutCompleted(
                    payout_id=payout.id,
                    recipient_type=payout.recipient_type.value,
                    recipient_id=payout.recipient_id,
                    cadence=payout.cadence.value,
                    amount_minor=payout.amount_minor,
                    currency=payout.currency,
                    external_ref=event.payment_ref,
                )
            )
            return "payout_completed"

        was_completed = payout.status == PayoutStatus.COMPLETED
        if not await self.payouts.mark_failed(payout.id, event.reason or event.raw_event_code, conn):
            return "stale"
        if was_completed:
            # баланс уже списан при успехе: возвращаем
            await self.payouts.credit_balance(payout.recipient_type, payout.recipient_id, payout.amount_minor, conn)
        effects.events.append(
            PayoutFailed(
                payout_id=payout.id,
                recipient_type=payout.recipient_type.value,
                recipient_id=payout.recipient_id,
                cadence=payout.cadence.value,
                amount_minor=payout.amount_minor,
                reason=event.reason or event.raw_event_code,
            )
        )
        return "payout_failed"

    # =========================================================================
    # ПОСЛЕ COMMIT
    # =========================================================================

    async def _after_commit(self, effects: _Effects) -> None:
        for domain_event in effects.events:
            await self.event_bus.publish(domain_event)

        # событие уже зафиксировано: ошибки здесь не должны менять ответ провайдеру
        for payment in effects.void_payments:
            try:
                await self.void_payment(payment)
            except PaymentError as e:
                await log_error(f"Отмена авторизации {payment.id} после сверки не удалась: {e.message}")

        for ride_id in effects.refund_rides:
            if self.refunds is None:
                await log_error(f"Списание по отменённой поездке {ride_id}: возврат не настроен")
                continue
            await log_warning(f"Списание по отменённой поездке {ride_id}, выполняется возврат")
            try:
                await self.refunds.execute_refund(ride_id, reason="captured after cancellation")
            except PaymentError as e:
                # строка возврата остаётся pending, повтор через execute_refund
                await log_error(
                    f"Возврат по отменённой поездке {ride_id} не выполнен: {e.message}",
                    extra={"ride_id": ride_id},
                )

    async def void_payment(self, payment: PaymentDTO) -> bool:
        return await void_authorization(self.repo, self.providers, payment)
