# src/services/payments/repository.py
"""
Репозиторий платёжных данных (PostgreSQL).
Таблицы: rides, payments, payment_splits, refunds, driver_earnings,
drivers, operator_accounts, webhook_events, webhook_rejections.

Каждый метод принимает необязательный conn: внутри db.transaction()
передаётся соединение транзакции, иначе запрос идёт через пул.
Смена статусов — compare-and-set: UPDATE ... WHERE status = ANY(<допустимые источники>).
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Mapping
from uuid import uuid4

from asyncpg import Connection, Record

from src.core.payments.state_machine import PaymentStateMachine
from src.core.rides.state_machine import RideStateMachine
from src.infra.database import DatabaseManager
from src.shared.models.payment import (
    PaymentDTO,
    PaymentSplitDTO,
    PaymentStatus,
    RefundDTO,
    RefundKind,
    RefundStatus,
)
from src.shared.models.ride import RideDTO, RideStatus

_RIDE_COLUMNS = """
    id, customer_id, driver_id, ride_type_id, distance_miles, duration_minutes,
    rider_count, pet_count, status, total_fare, tip_amount, currency,
    cancellation_reason, created_at, accepted_at, completed_at, cancelled_at
"""

_PAYMENT_COLUMNS = """
    id, ride_id, provider, external_ref, payment_type, amount_minor, currency, status,
    captured_amount_minor, refunded_amount_minor, provider_fee_minor, driver_id,
    failure_reason, created_at, updated_at
"""

_REFUND_COLUMNS = """
    id, ride_id, payment_id, kind, amount_minor, operator_share_minor, provider_fee_minor,
    status, idempotency_key, external_ref, reason, created_at
"""


class PaymentRepository:
    """Репозиторий поездок, платежей, возвратов и журнала вебхуков."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def _q(self, conn: Connection | None) -> Connection | DatabaseManager:
        return conn if conn is not None else self.db

    # =========================================================================
    # ПОЕЗДКИ
    # =========================================================================

    async def get_ride(self, ride_id: str, conn: Connection | None = None, for_update: bool = False) -> RideDTO | None:
        query = f"SELECT {_RIDE_COLUMNS} FROM rides WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self._q(conn).fetchrow(query, ride_id)
        return RideDTO.model_validate(dict(row)) if row else None

    async def transition_ride(
        self,
        ride_id: str,
        new_status: RideStatus,
        conn: Connection | None = None,
        driver_id: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """CAS-переход статуса поездки. False, если переход недопустим из текущего статуса."""
        timestamp_column = {
            RideStatus.ACCEPTED: "accepted_at",
            RideStatus.COMPLETED: "completed_at",
            RideStatus.CANCELLED: "cancelled_at",
        }.get(new_status)

        sets = ["status = $2", "driver_id = COALESCE($4, driver_id)"]
        if timestamp_column:
            sets.append(f"{timestamp_column} = COALESCE({timestamp_column}, NOW())")
        if new_status == RideStatus.CANCELLED:
            sets.append("cancellation_reason = $5")
        else:
            sets.append("cancellation_reason = COALESCE($5, cancellation_reason)")

        result = await self._q(conn).execute(
            f"""
            UPDATE rides SET {", ".join(sets)}
            WHERE id = $1 AND status = ANY($3::text[])
            """,
            ride_id,
            new_status.value,
            RideStateMachine.sources_for(new_status),
            driver_id,
            reason,
        )
        return result.endswith(" 1")

    async def set_ride_total_fare(self, ride_id: str, total_fare: Decimal, conn: Connection | None = None) -> bool:
        """Сохраняет стоимость поездки один раз; повторная запись игнорируется."""
        result = await self._q(conn).execute(
            "UPDATE rides SET total_fare = $2 WHERE id = $1 AND total_fare IS NULL",
            ride_id,
            total_fare,
        )
        return result.endswith(" 1")

    async def adjust_ride_amounts(
        self,
        ride_id: str,
        fare_delta: Decimal,
        tip_delta: Decimal = Decimal("0"),
        conn: Connection | None = None,
    ) -> None:
        """Корректирует стоимость и чаевые поездки (чаевые, возвраты). Не опускает ниже нуля."""
        await self._q(conn).execute(
            """
            UPDATE rides
            SET total_fare = GREATEST(0, COALESCE(total_fare, 0) + $2),
                tip_amount = GREATEST(0, tip_amount + $3)
            WHERE id = $1
            """,
            ride_id,
            fare_delta,
            tip_delta,
        )

    # =========================================================================
    # ПЛАТЕЖИ
    # =========================================================================

    async def create_payment(self, payment: PaymentDTO, conn: Connection | None = None) -> PaymentDTO:
        row = await self._q(conn).fetchrow(
            f"""
            INSERT INTO payments (id, ride_id, provider, external_ref, payment_type,
                                  amount_minor, currency, status, driver_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {_PAYMENT_COLUMNS}
            """,
            payment.id,
            payment.ride_id,
            payment.provider,
            payment.external_ref,
            payment.payment_type.value,
            payment.amount_minor,
            payment.currency,
            payment.status.value,
            payment.driver_id,
        )
        return PaymentDTO.model_validate(dict(row))

    async def get_payment(self, payment_id: str, conn: Connection | None = None, for_update: bool = False) -> PaymentDTO | None:
        query = f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self._q(conn).fetchrow(query, payment_id)
        return PaymentDTO.model_validate(dict(row)) if row else None

    async def get_payment_by_external_ref(
        self,
        provider: str,
        external_ref: str,
        conn: Connection | None = None,
        for_update: bool = False,
    ) -> PaymentDTO | None:
        query = f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE provider = $1 AND external_ref = $2"
        if for_update:
            query += " FOR UPDATE"
        row = await self._q(conn).fetchrow(query, provider, external_ref)
        return PaymentDTO.model_validate(dict(row)) if row else None

    async def list_ride_payments(self, ride_id: str, conn: Connection | None = None) -> list[PaymentDTO]:
        rows = await self._q(conn).fetch(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE ride_id = $1 ORDER BY created_at",
            ride_id,
        )
        return [PaymentDTO.model_validate(dict(r)) for r in rows]

    async def get_captured_ride_payment(self, ride_id: str, conn: Connection | None = None) -> PaymentDTO | None:
        """Списанный (или частично возвращённый) платёж за поездку."""
        row = await self._q(conn).fetchrow(
            f"""
            SELECT {_PAYMENT_COLUMNS} FROM payments
            WHERE ride_id = $1 AND payment_type = 'ride' AND status = ANY($2::text[])
            ORDER BY created_at DESC
            LIMIT 1
            """,
            ride_id,
            [PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value],
        )
        return PaymentDTO.model_validate(dict(row)) if row else None

    async def set_external_ref(self, payment_id: str, external_ref: str, conn: Connection | None = None) -> None:
        await self._q(conn).execute(
            "UPDATE payments SET external_ref = $2, updated_at = NOW() WHERE id = $1 AND external_ref IS NULL",
            payment_id,
            external_ref,
        )

    async def set_provider_fee(self, payment_id: str, fee_minor: int, conn: Connection | None = None) -> None:
        await self._q(conn).execute(
            "UPDATE payments SET provider_fee_minor = $2, updated_at = NOW() WHERE id = $1",
            payment_id,
            fee_minor,
        )

    async def set_failure_reason(self, payment_id: str, reason: str | None, conn: Connection | None = None) -> None:
        await self._q(conn).execute(
            "UPDATE payments SET failure_reason = $2, updated_at = NOW() WHERE id = $1",
            payment_id,
            reason,
        )

    async def transition_payment(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        conn: Connection | None = None,
        *,
        captured_amount_minor: int | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """CAS-переход статуса платежа по таблице PaymentStateMachine."""
        result = await self._q(conn).execute(
            """
            UPDATE payments
            SET status = $2,
                captured_amount_minor = COALESCE($4, captured_amount_minor),
                failure_reason = COALESCE($5, failure_reason),
                updated_at = NOW()
            WHERE id = $1 AND status = ANY($3::text[])
            """,
            payment_id,
            new_status.value,
            PaymentStateMachine.sources_for(new_status),
            captured_amount_minor,
            failure_reason,
        )
        return result.endswith(" 1")

    async def apply_refund_amount(self, payment_id: str, amount_minor: int, conn: Connection | None = None) -> int:
        """
        Увеличивает возвращённую сумму (не больше списанной) и переводит платёж в Refunded.
        Возвращает фактически учтённую сумму.
        """
        row = await self._q(conn).fetchrow(
            """
            UPDATE payments p
            SET refunded_amount_minor = LEAST(p.captured_amount_minor, p.refunded_amount_minor + $2),
                status = $3,
                updated_at = NOW()
            FROM (SELECT id, refunded_amount_minor AS before FROM payments WHERE id = $1) old
            WHERE p.id = old.id AND p.status = ANY($4::text[])
            RETURNING p.refunded_amount_minor - old.before AS applied
            """,
            payment_id,
            amount_minor,
            PaymentStatus.REFUNDED.value,
            PaymentStateMachine.sources_for(PaymentStatus.REFUNDED),
        )
        return int(row["applied"]) if row else 0

    # =========================================================================
    # РАСПРЕДЕЛЕНИЯ
    # =========================================================================

    async def insert_split(self, split: PaymentSplitDTO, conn: Connection | None = None) -> bool:
        """Одно распределение на платёж. False, если уже существует."""
        result = await self._q(conn).execute(
            """
            INSERT INTO payment_splits (payment_id, ride_id, driver_id, driver_amount_minor,
                                        operator_amount_minor, extras_minor, total_minor)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (payment_id) DO NOTHING
            """,
            split.payment_id,
            split.ride_id,
            split.driver_id,
            split.driver_amount_minor,
            split.operator_amount_minor,
            split.extras_minor,
            split.total_minor,
        )
        return result.endswith(" 1")

    async def get_split(self, payment_id: str, conn: Connection | None = None) -> PaymentSplitDTO | None:
        row = await self._q(conn).fetchrow(
            """
            SELECT payment_id, ride_id, driver_id, driver_amount_minor,
                   operator_amount_minor, extras_minor, total_minor
            FROM payment_splits WHERE payment_id = $1
            """,
            payment_id,
        )
        return PaymentSplitDTO.model_validate(dict(row)) if row else None

    # =========================================================================
    # ВОЗВРАТЫ
    # =========================================================================

    async def create_refund(self, refund: RefundDTO, conn: Connection | None = None) -> RefundDTO:
        """
        Создаёт строку возврата. Для повторного вызова с тем же ключом
        (или второго возврата по отмене той же поездки) возвращает существующую.
        """
        row = await self._q(conn).fetchrow(
            f"""
            INSERT INTO refunds (id, ride_id, payment_id, kind, amount_minor, operator_share_minor,
                                 provider_fee_minor, status, idempotency_key, reason)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT DO NOTHING
            RETURNING {_REFUND_COLUMNS}
            """,
            refund.id,
            refund.ride_id,
            refund.payment_id,
            refund.kind.value,
            refund.amount_minor,
            refund.operator_share_minor,
            refund.provider_fee_minor,
            refund.status.value,
            refund.idempotency_key,
            refund.reason,
        )
        if row is not None:
            return RefundDTO.model_validate(dict(row))

        if refund.kind == RefundKind.CANCELLATION:
            existing = await self.get_cancellation_refund(refund.ride_id, conn)
        else:
            existing = await self.get_refund_by_key(refund.idempotency_key, conn)
        if existing is None:
            raise RuntimeError(f"refund {refund.id} conflicted but no existing row found")
        return existing

    async def get_refund(self, refund_id: str, conn: Connection | None = None) -> RefundDTO | None:
        row = await self._q(conn).fetchrow(f"SELECT {_REFUND_COLUMNS} FROM refunds WHERE id = $1", refund_id)
        return RefundDTO.model_validate(dict(row)) if row else None

    async def get_refund_by_key(self, idempotency_key: str, conn: Connection | None = None) -> RefundDTO | None:
        row = await self._q(conn).fetchrow(
            f"SELECT {_REFUND_COLUMNS} FROM refunds WHERE idempotency_key = $1",
            idempotency_key,
        )
        return RefundDTO.model_validate(dict(row)) if row else None

    async def get_cancellation_refund(self, ride_id: str, conn: Connection | None = None) -> RefundDTO | None:
        row = await self._q(conn).fetchrow(
            f"SELECT {_REFUND_COLUMNS} FROM refunds WHERE ride_id = $1 AND kind = $2",
            ride_id,
            RefundKind.CANCELLATION.value,
        )
        return RefundDTO.model_validate(dict(row)) if row else None

    async def find_refund_for_event(
        self,
        payment_id: str,
        external_refs: list[str],
        conn: Connection | None = None,
    ) -> RefundDTO | None:
        """
        Возврат, к которому относится вебхук REFUND: сначала по ссылке провайдера,
        иначе самый старый ожидающий возврат по платежу.
        """
        row = await self._q(conn).fetchrow(
            f"""
            SELECT {_REFUND_COLUMNS} FROM refunds
            WHERE payment_id = $1
              AND (external_ref = ANY($2::text[]) OR status = $3)
            ORDER BY (external_ref = ANY($2::text[])) DESC NULLS LAST, created_at
            LIMIT 1
            FOR UPDATE
            """,
            payment_id,
            external_refs,
            RefundStatus.PENDING.value,
        )
        return RefundDTO.model_validate(dict(row)) if row else None

    async def sum_open_refunds(self, payment_id: str, conn: Connection | None = None) -> int:
        """Сумма возвратов по платежу, кроме неуспешных."""
        value = await self._q(conn).fetchval(
            "SELECT COALESCE(SUM(amount_minor), 0) FROM refunds WHERE payment_id = $1 AND status <> $2",
            payment_id,
            RefundStatus.FAILED.value,
        )
        return int(value or 0)

    async def update_refund(
        self,
        refund_id: str,
        status: RefundStatus,
        external_ref: str | None = None,
        conn: Connection | None = None,
    ) -> None:
        await self._q(conn).execute(
            """
            UPDATE refunds
            SET status = $2, external_ref = COALESCE($3, external_ref), updated_at = NOW()
            WHERE id = $1
            """,
            refund_id,
            status.value,
            external_ref,
        )

    # =========================================================================
    # НАЧИСЛЕНИЯ
    # =========================================================================

    async def record_driver_earning(
        self,
        driver_id: str,
        amount_minor: int,
        entry_type: str,
        currency: str,
        conn: Connection | None = None,
        ride_id: str | None = None,
        payment_id: str | None = None,
    ) -> None:
        """
        Запись в журнал заработка и изменение накопленного баланса водителя.
        Отрицательная сумма (возврат) не опускает баланс ниже нуля.
        """
        q = self._q(conn)
        await q.execute(
            """
            INSERT INTO driver_earnings (id, driver_id, ride_id, payment_id, entry_type, amount_minor, currency)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            str(uuid4()),
            driver_id,
            ride_id,
            payment_id,
            entry_type,
            amount_minor,
            currency,
        )
        await q.execute(
            "UPDATE drivers SET pending_earnings_minor = GREATEST(0, pending_earnings_minor + $2) WHERE id = $1",
            driver_id,
            amount_minor,
        )

    async def credit_operator(self, operator_id: str, amount_minor: int, conn: Connection | None = None) -> None:
        await self._q(conn).execute(
            """
            UPDATE operator_accounts
            SET pending_earnings_minor = GREATEST(0, pending_earnings_minor + $2)
            WHERE id = $1
            """,
            operator_id,
            amount_minor,
        )

    # =========================================================================
    # ЖУРНАЛ ВЕБХУКОВ
    # =========================================================================

    async def record_webhook_event(
        self,
        provider: str,
        external_ref: str,
        event_type: str,
        payload: Any,
        normalized: Mapping[str, Any],
        conn: Connection | None = None,
    ) -> bool:
        """Вставляет событие. False, если (provider, external_ref, event_type) уже есть."""
        result = await self._q(conn).execute(
            """
            INSERT INTO webhook_events (id, provider, external_ref, event_type, payload, normalized)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb)
            ON CONFLICT (provider, external_ref, event_type) DO NOTHING
            """,
            str(uuid4()),
            provider,
            external_ref,
            event_type,
            json.dumps(payload, default=str),
            json.dumps(dict(normalized), default=str),
        )
        return result.endswith(" 1")

    async def lock_webhook_event(
        self,
        provider: str,
        external_ref: str,
        event_type: str,
        conn: Connection,
    ) -> Record | None:
        return await conn.fetchrow(
            """
            SELECT id, processed, outcome FROM webhook_events
            WHERE provider = $1 AND external_ref = $2 AND event_type = $3
            FOR UPDATE
            """,
            provider,
            external_ref,
            event_type,
        )

    async def mark_webhook_processed(self, event_id: str, outcome: str, conn: Connection | None = None) -> None:
        await self._q(conn).execute(
            "UPDATE webhook_events SET processed = TRUE, outcome = $2, processed_at = NOW() WHERE id = $1",
            event_id,
            outcome,
        )

    async def record_rejection(
        self,
        provider: str,
        reason: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> str:
        rejection_id = str(uuid4())
        await self.db.execute(
            """
            INSERT INTO webhook_rejections (id, provider, reason, headers, body)
            VALUES ($1, $2, $3, $4::jsonb, $5)
            """,
            rejection_id,
            provider,
            reason,
            json.dumps(dict(headers)),
            body.decode("utf-8", errors="replace"),
        )
        return rejection_id
