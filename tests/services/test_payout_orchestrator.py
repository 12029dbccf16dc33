# tests/services/test_payout_orchestrator.py
"""
Тесты оркестратора выплат поверх репозитория в памяти.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.common.constants import PayoutCadence, RecipientType
from src.common.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    ProviderDeclineError,
    ProviderTransientError,
    ValidationError,
)
from src.services.payments.providers.base import ProviderOutcome, ProviderResult
from src.services.payouts.orchestrator import PayoutOrchestrator
from src.services.payouts.schedule import PayoutSchedule
from src.shared.events.payout_events import PayoutBatchFinished, PayoutCompleted, PayoutFailed
from src.shared.models.payout import BeneficiaryDTO, PayoutDTO, PayoutStatus, RecipientBalance

NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
WEEK_START = datetime(2026, 10, 12, tzinfo=timezone.utc)


class InMemoryPayoutRepository:
    """Репозиторий выплат в памяти с той же семантикой, что и PostgreSQL-версия."""

    def __init__(self, db: Any) -> None:
        self.db = db
        self.balances: dict[tuple[RecipientType, str], int] = {}
        self.beneficiaries: dict[tuple[RecipientType, str], BeneficiaryDTO] = {}
        self.payouts: dict[str, PayoutDTO] = {}
        self.snapshot_override: list[RecipientBalance] | None = None

    def add_recipient(self, recipient_type: RecipientType, recipient_id: str, balance: int, verified: bool = True) -> None:
        self.balances[(recipient_type, recipient_id)] = balance
        self.beneficiaries[(recipient_type, recipient_id)] = BeneficiaryDTO(
            id=f"ben-{recipient_id}",
            owner_type=recipient_type,
            owner_id=recipient_id,
            provider="adyen",
            external_id=f"ext-{recipient_id}",
            is_verified=verified,
        )

    async def list_balances(self, recipient_type: RecipientType, cadence: PayoutCadence) -> list[RecipientBalance]:
        if self.snapshot_override is not None:
            return [b for b in self.snapshot_override if b.recipient_type == recipient_type]
        return [
            RecipientBalance(recipient_type=rt, recipient_id=rid, pending_earnings_minor=amount)
            for (rt, rid), amount in self.balances.items()
            if rt == recipient_type and amount > 0
        ]

    async def get_balance(self, recipient_type, recipient_id, conn=None, for_update=False) -> int | None:
        return self.balances.get((recipient_type, recipient_id))

    async def debit_balance(self, recipient_type, recipient_id, amount_minor, conn=None) -> None:
        self.balances[(recipient_type, recipient_id)] -= amount_minor

    async def credit_balance(self, recipient_type, recipient_id, amount_minor, conn=None) -> None:
        self.balances[(recipient_type, recipient_id)] += amount_minor

    async def get_beneficiary(self, owner_type, owner_id, provider) -> BeneficiaryDTO | None:
        return self.beneficiaries.get((owner_type, owner_id))

    async def get_period_payout(self, recipient_type, recipient_id, cadence, period_start, conn=None) -> PayoutDTO | None:
        for payout in self.payouts.values():
            if payout.status == PayoutStatus.FAILED:
                continue
            key = (payout.recipient_type, payout.recipient_id, payout.cadence, payout.period_start)
            if key == (recipient_type, recipient_id, cadence, period_start):
                return payout.model_copy()
        return None

    async def get_processing_payout(self, recipient_type, recipient_id, cadence, conn=None) -> PayoutDTO | None:
        for payout in reversed(list(self.payouts.values())):
            key = (payout.recipient_type, payout.recipient_id, payout.cadence)
            if key == (recipient_type, recipient_id, cadence) and payout.status == PayoutStatus.PROCESSING:
                return payout.model_copy()
        return None

    async def create_payout(self, payout: PayoutDTO, conn=None) -> PayoutDTO | None:
        if payout.cadence != PayoutCadence.INSTANT and await self.get_period_payout(
            payout.recipient_type, payout.recipient_id, payout.cadence, payout.period_start
        ):
            return None
        self.payouts[payout.id] = payout.model_copy()
        return payout.model_copy()

    async def get_payout(self, payout_id, conn=None, for_update=False) -> PayoutDTO | None:
        payout = self.payouts.get(payout_id)
        return payout.model_copy() if payout else None

    async def mark_completed(self, payout_id, external_ref, conn=None) -> None:
        payout = self.payouts[payout_id]
        self.payouts[payout_id] = payout.model_copy(update={"status": PayoutStatus.COMPLETED, "external_ref": external_ref})

    async def mark_failed(self, payout_id, reason, conn=None) -> bool:
        payout = self.payouts[payout_id]
        if payout.status == PayoutStatus.FAILED:
            return False
        self.payouts[payout_id] = payout.model_copy(update={"status": PayoutStatus.FAILED, "failure_reason": reason})
        return True

    async def list_history(self, recipient_type, recipient_id, limit=50) -> list[PayoutDTO]:
        rows = [p for p in self.payouts.values() if (p.recipient_type, p.recipient_id) == (recipient_type, recipient_id)]
        return rows[:limit]

    async def stats_since(self, since: datetime) -> dict[str, int]:
        rows = list(self.payouts.values())
        completed = [p for p in rows if p.status == PayoutStatus.COMPLETED]
        return {
            "total": len(rows),
            "successful": len(completed),
            "failed": sum(1 for p in rows if p.status == PayoutStatus.FAILED),
            "total_amount_minor": sum(p.amount_minor for p in completed),
        }


@pytest.fixture
def repo(mock_db) -> InMemoryPayoutRepository:
    repo = InMemoryPayoutRepository(mock_db)
    repo.add_recipient(RecipientType.DRIVER, "driver-1", 5000)
    repo.add_recipient(RecipientType.OPERATOR, "operator", 2700)
    return repo


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def orchestrator(repo, providers, mock_redis, mock_event_bus, sleep) -> PayoutOrchestrator:
    return PayoutOrchestrator(
        repo,
        providers,
        mock_redis,
        mock_event_bus,
        provider_name="adyen",
        currency="USD",
        delay_seconds=0.5,
        lock_ttl=60,
        stats_window_days=30,
        schedule=PayoutSchedule(),
        sleep=sleep,
    )


def published(bus: AsyncMock, event_cls: type) -> list:
    return [c.args[0] for c in bus.publish.await_args_list if isinstance(c.args[0], event_cls)]


class TestRunBatch:
    """Тесты пакета выплат."""

    @pytest.mark.asyncio
    async def test_pays_all_recipients(self, orchestrator, repo, adyen_mock, mock_event_bus, sleep) -> None:
        report = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert report.total == 2
        assert report.succeeded == 2
        assert report.amount_minor == 7700
        assert report.period_start == WEEK_START
        assert adyen_mock.payout.await_count == 2
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 0
        assert repo.balances[(RecipientType.OPERATOR, "operator")] == 0
        assert all(p.status == PayoutStatus.COMPLETED for p in repo.payouts.values())

        # пауза только между получателями
        sleep.assert_awaited_once_with(0.5)
        assert len(published(mock_event_bus, PayoutCompleted)) == 2
        finished = published(mock_event_bus, PayoutBatchFinished)[0]
        assert finished.succeeded == 2

    @pytest.mark.asyncio
    async def test_idempotency_key_per_payout(self, orchestrator, repo, adyen_mock) -> None:
        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        for call in adyen_mock.payout.await_args_list:
            payout = repo.payouts[call.kwargs["reference"]]
            assert call.kwargs["idempotency_key"] == payout.idempotency_key == f"payout:{payout.id}"

    @pytest.mark.asyncio
    async def test_rerun_same_period_does_not_pay_twice(self, orchestrator, repo, adyen_mock) -> None:
        """Новые начисления после пакета ждут следующего периода."""
        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)
        repo.balances[(RecipientType.DRIVER, "driver-1")] = 3000

        report = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert report.skipped == 1
        assert report.succeeded == 0
        assert adyen_mock.payout.await_count == 2
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 3000

    @pytest.mark.asyncio
    async def test_processing_row_redriven_with_same_key(self, orchestrator, repo, adyen_mock) -> None:
        """Строка, зависшая в processing после падения, довызывается со своим ключом."""
        repo.payouts["po-old"] = PayoutDTO(
            id="po-old",
            recipient_type=RecipientType.DRIVER,
            recipient_id="driver-1",
            cadence=PayoutCadence.WEEKLY,
            period_start=WEEK_START,
            amount_minor=5000,
            status=PayoutStatus.PROCESSING,
            provider="adyen",
            idempotency_key="payout:po-old",
        )

        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        keys = [c.kwargs["idempotency_key"] for c in adyen_mock.payout.await_args_list]
        assert "payout:po-old" in keys
        assert repo.payouts["po-old"].status == PayoutStatus.COMPLETED
        driver_rows = [p for p in repo.payouts.values() if p.recipient_id == "driver-1"]
        assert len(driver_rows) == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance_skips_provider(self, orchestrator, repo, adyen_mock) -> None:
        """Баланс уменьшился после снимка: провайдер не вызывается, выплата failed."""
        repo.snapshot_override = [
            RecipientBalance(recipient_type=RecipientType.DRIVER, recipient_id="driver-1", pending_earnings_minor=9000)
        ]

        report = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert report.failed == 1
        adyen_mock.payout.assert_not_awaited()
        payout = next(iter(repo.payouts.values()))
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "insufficient balance"
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 5000

    @pytest.mark.asyncio
    async def test_missing_beneficiary(self, orchestrator, repo, adyen_mock) -> None:
        repo.add_recipient(RecipientType.DRIVER, "driver-1", 5000, verified=False)

        report = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert report.failed == 1
        assert report.succeeded == 1
        failed = [p for p in repo.payouts.values() if p.recipient_id == "driver-1"][0]
        assert failed.failure_reason == "no verified beneficiary"
        assert adyen_mock.payout.await_count == 1

    @pytest.mark.asyncio
    async def test_declined_keeps_balance(self, orchestrator, repo, adyen_mock, mock_event_bus) -> None:
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.DECLINED, reason="closed account")

        report = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert report.failed == 2
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 5000
        assert all(p.status == PayoutStatus.FAILED for p in repo.payouts.values())
        assert len(published(mock_event_bus, PayoutFailed)) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(self, orchestrator, repo, adyen_mock) -> None:
        adyen_mock.payout.side_effect = [
            RuntimeError("boom"),
            ProviderResult(ProviderOutcome.PAID_OUT, external_ref="PO2"),
        ]

        with patch("src.services.payouts.orchestrator.log_error", new_callable=AsyncMock):
            report = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert report.failed == 1
        assert report.succeeded == 1

    @pytest.mark.asyncio
    async def test_transient_error_keeps_row_processing(self, orchestrator, repo, adyen_mock, mock_event_bus) -> None:
        """Временная ошибка не закрывает строку: следующий запуск идёт с тем же ключом."""
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.TRANSIENT_ERROR, reason="timeout")

        first = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert first.failed == 2
        assert all(p.status == PayoutStatus.PROCESSING for p in repo.payouts.values())
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 5000
        assert published(mock_event_bus, PayoutFailed) == []
        first_keys = [c.kwargs["idempotency_key"] for c in adyen_mock.payout.await_args_list]

        adyen_mock.payout.reset_mock()
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.PAID_OUT, external_ref="PO1")
        second = await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        second_keys = [c.kwargs["idempotency_key"] for c in adyen_mock.payout.await_args_list]
        assert second_keys == first_keys
        assert second.succeeded == 2
        assert len(repo.payouts) == 2
        assert all(p.status == PayoutStatus.COMPLETED for p in repo.payouts.values())
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 0

    @pytest.mark.asyncio
    async def test_declined_recipient_paid_on_next_run(self, orchestrator, repo, adyen_mock) -> None:
        """После отказа период открыт: повторный запуск платит только отказанного."""
        adyen_mock.payout.side_effect = [
            ProviderResult(ProviderOutcome.DECLINED, reason="closed account"),
            ProviderResult(ProviderOutcome.PAID_OUT, external_ref="PO2"),
        ]
        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        adyen_mock.payout.side_effect = None
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.PAID_OUT, external_ref="PO3")
        task = orchestrator.trigger(PayoutCadence.WEEKLY, requested_by="admin")
        await orchestrator.wait_background()

        report = task.result()
        assert report.succeeded == 1
        assert report.skipped == 1
        driver_rows = [p for p in repo.payouts.values() if p.recipient_id == "driver-1"]
        assert {p.status for p in driver_rows} == {PayoutStatus.FAILED, PayoutStatus.COMPLETED}
        assert len({p.idempotency_key for p in driver_rows}) == 2
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 0
        assert repo.balances[(RecipientType.OPERATOR, "operator")] == 0

    @pytest.mark.asyncio
    async def test_provider_called_outside_transaction(self, orchestrator, repo, mock_db, mock_conn, adyen_mock) -> None:
        """Блокировка баланса не держится во время сетевого вызова."""
        events: list[str] = []

        class RecordingTransaction:
            async def __aenter__(self) -> Any:
                events.append("begin")
                return mock_conn

            async def __aexit__(self, exc_type, exc, tb) -> bool:
                events.append("end")
                return False

        async def pay(*args: Any, **kwargs: Any) -> ProviderResult:
            events.append("payout")
            return ProviderResult(ProviderOutcome.PAID_OUT, external_ref="PO1")

        mock_db.transaction = MagicMock(side_effect=RecordingTransaction)
        adyen_mock.payout.side_effect = pay
        repo.balances.pop((RecipientType.OPERATOR, "operator"))

        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        assert events == ["begin", "end", "payout", "begin", "end"]
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 0

    @pytest.mark.asyncio
    async def test_uses_distributed_lock(self, orchestrator, mock_redis) -> None:
        await orchestrator.run_batch(PayoutCadence.DAILY, now=NOW)

        mock_redis.lock.assert_called_once_with("payout_batch_lock:daily", ttl=60)

    @pytest.mark.asyncio
    async def test_instant_is_not_a_batch(self, orchestrator) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.run_batch(PayoutCadence.INSTANT, now=NOW)


class TestTrigger:
    """Тесты ручного запуска."""

    @pytest.mark.asyncio
    async def test_trigger_runs_in_background(self, orchestrator, adyen_mock) -> None:
        task = orchestrator.trigger(PayoutCadence.MONTHLY, requested_by="admin")

        await orchestrator.wait_background()

        assert task.done()
        assert task.result().succeeded == 2
        assert adyen_mock.payout.await_count == 2

    @pytest.mark.asyncio
    async def test_trigger_swallows_errors(self, orchestrator, mock_redis) -> None:
        mock_redis.lock.side_effect = RuntimeError("redis down")

        with patch("src.services.payouts.orchestrator.log_error", new_callable=AsyncMock):
            task = orchestrator.trigger(PayoutCadence.DAILY)
            await orchestrator.wait_background()

        assert task.result() is None


class TestInstantPayout:
    """Тесты мгновенной выплаты."""

    @pytest.mark.asyncio
    async def test_full_balance(self, orchestrator, repo, adyen_mock) -> None:
        payout = await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.cadence == PayoutCadence.INSTANT
        assert payout.amount_minor == 5000
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 0

    @pytest.mark.asyncio
    async def test_partial_amount(self, orchestrator, repo) -> None:
        await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1", 2000)
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 3000

    @pytest.mark.asyncio
    async def test_more_than_balance(self, orchestrator, adyen_mock) -> None:
        with pytest.raises(InsufficientBalanceError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1", 6000)
        adyen_mock.payout.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "ghost")

    @pytest.mark.asyncio
    async def test_zero_balance(self, orchestrator, repo) -> None:
        repo.balances[(RecipientType.DRIVER, "driver-1")] = 0
        with pytest.raises(ValidationError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

    @pytest.mark.asyncio
    async def test_unverified_beneficiary(self, orchestrator, repo) -> None:
        repo.add_recipient(RecipientType.DRIVER, "driver-1", 5000, verified=False)
        with pytest.raises(ValidationError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

    @pytest.mark.asyncio
    async def test_declined(self, orchestrator, repo, adyen_mock) -> None:
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.DECLINED, reason="limit")

        with pytest.raises(ProviderDeclineError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 5000

    @pytest.mark.asyncio
    async def test_transient(self, orchestrator, adyen_mock) -> None:
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.TRANSIENT_ERROR, reason="timeout")

        with pytest.raises(ProviderTransientError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

    @pytest.mark.asyncio
    async def test_transient_blocks_second_request(self, orchestrator, repo, adyen_mock) -> None:
        """Выплата без окончательного ответа не даёт запросить ту же сумму снова."""
        adyen_mock.payout.return_value = ProviderResult(ProviderOutcome.TRANSIENT_ERROR, reason="timeout")
        with pytest.raises(ProviderTransientError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

        with pytest.raises(ValidationError):
            await orchestrator.request_instant_payout(RecipientType.DRIVER, "driver-1")

        assert adyen_mock.payout.await_count == 1
        assert [p.status for p in repo.payouts.values()] == [PayoutStatus.PROCESSING]
        assert repo.balances[(RecipientType.DRIVER, "driver-1")] == 5000


class TestReports:
    """Тесты статистики и истории."""

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator, repo, adyen_mock) -> None:
        adyen_mock.payout.side_effect = [
            ProviderResult(ProviderOutcome.PAID_OUT, external_ref="PO1"),
            ProviderResult(ProviderOutcome.DECLINED, reason="closed"),
        ]
        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        stats = await orchestrator.get_payout_stats()

        assert stats.window_days == 30
        assert stats.total == 2
        assert stats.successful == 1
        assert stats.failed == 1
        assert stats.success_rate == 0.5

    @pytest.mark.asyncio
    async def test_empty_stats(self, orchestrator) -> None:
        stats = await orchestrator.get_payout_stats(7)
        assert stats.window_days == 7
        assert stats.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_history(self, orchestrator) -> None:
        await orchestrator.run_batch(PayoutCadence.WEEKLY, now=NOW)

        history = await orchestrator.get_history(RecipientType.DRIVER, "driver-1")

        assert len(history) == 1
        assert history[0].amount_minor == 5000
