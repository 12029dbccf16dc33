# src/services/payouts/orchestrator.py
"""
Оркестратор выплат водителям и оператору.

Пакет по периодичности:
1. Снимок получателей и балансов на старте
2. Последовательно по получателю: строка payouts (processing) ->
   проверка баланса под блокировкой -> provider.payout вне транзакции ->
   списание баланса только после успеха
   Временная ошибка провайдера оставляет строку в processing,
   failed только при окончательном отказе.
3. Пауза DELAY_SECONDS между вызовами провайдера

Один пакет на периодичность: asyncio.Lock в процессе + Redis-блокировка
между процессами. Повторный запуск за тот же период не платит дважды:
частичный уникальный индекс по (получатель, cadence, period_start), а
зависшая в processing строка довызывается со своим ключом идемпотентности.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from src.common.constants import PAYOUT_LOCK_PREFIX, PayoutCadence, RecipientType, TypeMsg
from src.common.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    ProviderDeclineError,
    ProviderTransientError,
    ValidationError,
)
from src.common.logger import log_error, log_info, log_warning
from src.services.payments.providers.base import ProviderOutcome, ProviderResult
from src.services.payouts.schedule import PayoutSchedule
from src.shared.events.payout_events import PayoutBatchFinished, PayoutCompleted, PayoutFailed
from src.shared.models.payout import (
    BeneficiaryDTO,
    PayoutBatchReport,
    PayoutDTO,
    PayoutStats,
    PayoutStatus,
    RecipientBalance,
)

if TYPE_CHECKING:
    from src.infra.event_bus import EventBus
    from src.infra.redis_client import RedisClient
    from src.services.payments.providers import ProviderRegistry
    from src.services.payouts.repository import PayoutRepository

SCHEDULED_CADENCES = (PayoutCadence.DAILY, PayoutCadence.WEEKLY, PayoutCadence.MONTHLY)


class PayoutOrchestrator:
    """Плановые, ручные и мгновенные выплаты."""

    def __init__(
        self,
        repo: "PayoutRepository",
        providers: "ProviderRegistry",
        redis: "RedisClient",
        event_bus: "EventBus",
        provider_name: str | None = None,
        currency: str | None = None,
        delay_seconds: float | None = None,
        lock_ttl: int | None = None,
        stats_window_days: int | None = None,
        schedule: PayoutSchedule | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        from src.config import settings

        self.repo = repo
        self.providers = providers
        self.redis = redis
        self.event_bus = event_bus
        self.provider_name = provider_name or settings.payouts.PROVIDER
        self.currency = currency or settings.payouts.CURRENCY
        self.delay_seconds = settings.payouts.DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.lock_ttl = lock_ttl or settings.redis_ttl.PAYOUT_LOCK_TTL
        self.stats_window_days = stats_window_days or settings.payouts.STATS_WINDOW_DAYS
        self.schedule = schedule or PayoutSchedule.from_settings()
        self._sleep = sleep
        self._locks: dict[PayoutCadence, asyncio.Lock] = {c: asyncio.Lock() for c in PayoutCadence}
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # ПАКЕТ
    # =========================================================================

    async def run_batch(self, cadence: PayoutCadence, now: datetime | None = None) -> PayoutBatchReport:
        """Запуск пакета. Параллельный запуск той же периодичности ждёт завершения текущего."""
        if cadence not in SCHEDULED_CADENCES:
            raise ValidationError(f"cadence {cadence.value} cannot run as a batch")

        async with self._locks[cadence]:
            async with self.redis.lock(f"{PAYOUT_LOCK_PREFIX}:{cadence.value}", ttl=self.lock_ttl):
                return await self._run_batch(cadence, now or datetime.now(timezone.utc))

    async def _run_batch(self, cadence: PayoutCadence, now: datetime) -> PayoutBatchReport:
        period_start, period_end = self.schedule.period_bounds(cadence, now)
        snapshot: list[RecipientBalance] = []
        for recipient_type in RecipientType:
            snapshot.extend(await self.repo.list_balances(recipient_type, cadence))

        report = PayoutBatchReport(cadence=cadence, period_start=period_start, total=len(snapshot))
        await log_info(
            f"Пакет выплат {cadence.value}: {len(snapshot)} получателей",
            extra={"period_start": period_start.isoformat()},
        )

        for index, balance in enumerate(snapshot):
            if index and self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)
            try:
                payout = await self._pay_recipient(balance, cadence, period_start, period_end)
            except InsufficientBalanceError as e:
                await log_warning(f"Выплата пропущена: {e.message}")
                report.failed += 1
                continue
            except Exception as e:
                # сбой одного получателя не останавливает пакет
                await log_error(f"Ошибка выплаты {balance.recipient_type.value}:{balance.recipient_id}: {e}", exc_info=True)
                report.failed += 1
                continue

            if payout is None:
                report.skipped += 1
            elif payout.status == PayoutStatus.COMPLETED:
                report.succeeded += 1
                report.amount_minor += payout.amount_minor
            else:
                report.failed += 1

        await self.event_bus.publish(
            PayoutBatchFinished(
                cadence=cadence.value,
                period_start=period_start.isoformat(),
                total=report.total,
                succeeded=report.succeeded,
                failed=report.failed,
                skipped=report.skipped,
                amount_minor=report.amount_minor,
            )
        )
        await log_info(
            f"Пакет выплат {cadence.value} завершён: {report.succeeded} успешно, "
            f"{report.failed} с ошибкой, {report.skipped} пропущено"
        )
        return report

    async def _pay_recipient(
        self,
        balance: RecipientBalance,
        cadence: PayoutCadence,
        period_start: datetime,
        period_end: datetime,
    ) -> PayoutDTO | None:
        """None — получатель за этот период уже оплачен (или выплата в пути)."""
        existing = await self.repo.get_period_payout(
            balance.recipient_type, balance.recipient_id, cadence, period_start
        )
        if existing is not None:
            if existing.status != PayoutStatus.PROCESSING:
                return None
            # строка осталась после падения: довызываем с тем же ключом
            await log_warning(f"Довызов зависшей выплаты {existing.id}")
            payout = existing
        else:
            payout_id = str(uuid.uuid4())
            payout = await self.repo.create_payout(
                PayoutDTO(
                    id=payout_id,
                    recipient_type=balance.recipient_type,
                    recipient_id=balance.recipient_id,
                    cadence=cadence,
                    period_start=period_start,
                    period_end=period_end,
                    amount_minor=balance.pending_earnings_minor,
                    currency=balance.currency or self.currency,
                    status=PayoutStatus.PROCESSING,
                    provider=self.provider_name,
                    idempotency_key=f"payout:{payout_id}",
                )
            )
            if payout is None:
                return None

        beneficiary = await self._verified_beneficiary(payout)
        if beneficiary is None:
            await self.repo.mark_failed(payout.id, "no verified beneficiary")
            await log_warning(f"Выплата {payout.id}: нет подтверждённого получателя у {self.provider_name}")
            return await self.repo.get_payout(payout.id)

        payout, _ = await self._execute(payout, beneficiary)
        return payout

    async def _verified_beneficiary(self, payout: PayoutDTO) -> BeneficiaryDTO | None:
        beneficiary = await self.repo.get_beneficiary(payout.recipient_type, payout.recipient_id, self.provider_name)
        if beneficiary is None or not beneficiary.is_verified:
            return None
        return beneficiary

    async def _execute(self, payout: PayoutDTO, beneficiary: BeneficiaryDTO) -> tuple[PayoutDTO, ProviderResult]:
        """
        Проверяет баланс, вызывает провайдера и фиксирует итог.

        Вызов провайдера идёт вне транзакции: блокировка баланса держится
        только на время проверки и на время списания.
        InsufficientBalanceError — до вызова провайдера, строка помечается failed.
        TRANSIENT_ERROR оставляет строку в processing: следующий запуск
        довызовет её с тем же ключом идемпотентности.
        """
        adapter = self.providers.get(self.provider_name)
        try:
            async with self.repo.db.transaction() as conn:
                current = await self.repo.get_balance(payout.recipient_type, payout.recipient_id, conn, for_update=True)
                if current is None or current < payout.amount_minor:
                    raise InsufficientBalanceError(payout.recipient_id, payout.amount_minor, current or 0)
        except InsufficientBalanceError:
            await self.repo.mark_failed(payout.id, "insufficient balance")
            raise

        result = await adapter.payout(
            beneficiary,
            payout.amount_minor,
            payout.currency,
            reference=payout.id,
            idempotency_key=payout.idempotency_key,
        )

        if result.outcome != ProviderOutcome.TRANSIENT_ERROR:
            async with self.repo.db.transaction() as conn:
                row = await self.repo.get_payout(payout.id, conn, for_update=True)
                if result.ok:
                    # вебхук мог успеть раньше
                    if row is not None and row.status == PayoutStatus.PROCESSING:
                        await self.repo.mark_completed(payout.id, result.external_ref, conn)
                        await self.repo.debit_balance(payout.recipient_type, payout.recipient_id, payout.amount_minor, conn)
                else:
                    await self.repo.mark_failed(payout.id, result.reason or result.outcome.value, conn)

        updated = await self.repo.get_payout(payout.id) or payout
        if result.ok:
            await self.event_bus.publish(
                PayoutCompleted(
                    payout_id=updated.id,
                    recipient_type=updated.recipient_type.value,
                    recipient_id=updated.recipient_id,
                    cadence=updated.cadence.value,
                    amount_minor=updated.amount_minor,
                    currency=updated.currency,
                    external_ref=result.external_ref,
                )
            )
            await log_info(
                f"Выплата {updated.id} отправлена",
                type_msg=TypeMsg.DEBUG,
                extra={"recipient_id": updated.recipient_id, "amount_minor": updated.amount_minor},
            )
        elif result.outcome == ProviderOutcome.TRANSIENT_ERROR:
            await log_warning(f"Выплата {updated.id} осталась в processing: {result.reason}")
        else:
            await self.event_bus.publish(
                PayoutFailed(
                    payout_id=updated.id,
                    recipient_type=updated.recipient_type.value,
                    recipient_id=updated.recipient_id,
                    cadence=updated.cadence.value,
                    amount_minor=updated.amount_minor,
                    reason=result.reason,
                )
            )
            await log_warning(f"Выплата {updated.id} не прошла: {result.outcome.value} {result.reason}")
        return updated, result

    # =========================================================================
    # РУЧНОЙ ЗАПУСК
    # =========================================================================

    def trigger(self, cadence: PayoutCadence, requested_by: str | None = None) -> asyncio.Task:
        """Запускает пакет в фоне и сразу возвращает управление."""
        task = asyncio.create_task(self._run_triggered(cadence, requested_by), name=f"payout_batch_{cadence.value}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_triggered(self, cadence: PayoutCadence, requested_by: str | None) -> PayoutBatchReport | None:
        await log_info(f"Ручной запуск выплат {cadence.value}", extra={"requested_by": requested_by})
        try:
            return await self.run_batch(cadence)
        except Exception as e:
            await log_error(f"Ручной пакет выплат {cadence.value} упал: {e}", exc_info=True)
            return None

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # =========================================================================
    # МГНОВЕННАЯ ВЫПЛАТА
    # =========================================================================

    async def request_instant_payout(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        amount_minor: int | None = None,
    ) -> PayoutDTO:
        """Выплата по запросу получателя, вне расписания."""
        balance = await self.repo.get_balance(recipient_type, recipient_id)
        if balance is None:
            raise NotFoundError(recipient_type.value, recipient_id)

        amount = balance if amount_minor is None else amount_minor
        if amount <= 0:
            raise ValidationError("payout amount must be positive", {"amount_minor": amount})
        if amount > balance:
            raise InsufficientBalanceError(recipient_id, amount, balance)

        beneficiary = await self.repo.get_beneficiary(recipient_type, recipient_id, self.provider_name)
        if beneficiary is None or not beneficiary.is_verified:
            raise ValidationError(
                f"{recipient_type.value} {recipient_id} has no verified beneficiary",
                {"provider": self.provider_name},
            )

        # прошлая мгновенная выплата без ответа провайдера ещё не списана с баланса
        if await self.repo.get_processing_payout(recipient_type, recipient_id, PayoutCadence.INSTANT):
            raise ValidationError("instant payout already in progress", {"recipient_id": recipient_id})

        now = datetime.now(timezone.utc)
        payout_id = str(uuid.uuid4())
        payout = await self.repo.create_payout(
            PayoutDTO(
                id=payout_id,
                recipient_type=recipient_type,
                recipient_id=recipient_id,
                cadence=PayoutCadence.INSTANT,
                period_start=now,
                period_end=now,
                amount_minor=amount,
                currency=beneficiary.currency or self.currency,
                status=PayoutStatus.PROCESSING,
                provider=self.provider_name,
                idempotency_key=f"payout:{payout_id}",
            )
        )
        if payout is None:
            raise ValidationError("instant payout already in progress", {"recipient_id": recipient_id})

        payout, result = await self._execute(payout, beneficiary)
        if result.outcome == ProviderOutcome.TRANSIENT_ERROR:
            raise ProviderTransientError(self.provider_name, result.reason)
        if not result.ok:
            raise ProviderDeclineError(self.provider_name, result.reason)
        return payout

    # =========================================================================
    # ОТЧЁТЫ
    # =========================================================================

    async def get_payout_stats(self, window_days: int | None = None) -> PayoutStats:
        days = window_days or self.stats_window_days
        counts = await self.repo.stats_since(datetime.now(timezone.utc) - timedelta(days=days))
        total = counts["total"]
        return PayoutStats(
            window_days=days,
            total=total,
            successful=counts["successful"],
            failed=counts["failed"],
            total_amount_minor=counts["total_amount_minor"],
            success_rate=round(counts["successful"] / total, 4) if total else 0.0,
        )

    async def get_history(self, recipient_type: RecipientType, recipient_id: str, limit: int = 50) -> list[PayoutDTO]:
        return await self.repo.list_history(recipient_type, recipient_id, limit)
