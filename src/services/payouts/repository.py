# src/services/payouts/repository.py
"""
Репозиторий выплат (PostgreSQL).
Таблицы: payouts, drivers, operator_accounts, beneficiaries.
"""

from __future__ import annotations

import json
from datetime import datetime

from asyncpg import Connection

from src.common.constants import PayoutCadence, RecipientType
from src.infra.database import DatabaseManager
from src.shared.models.payout import BeneficiaryDTO, PayoutDTO, PayoutStatus, RecipientBalance

# таблица накопленного баланса по типу получателя
_BALANCE_TABLES = {
    RecipientType.DRIVER: "drivers",
    RecipientType.OPERATOR: "operator_accounts",
}

_PAYOUT_COLUMNS = """
    id, recipient_type, recipient_id, cadence, period_start, period_end, amount_minor,
    currency, status, provider, external_ref, idempotency_key, failure_reason,
    created_at, completed_at
"""


def _table(recipient_type: RecipientType | str) -> str:
    return _BALANCE_TABLES[RecipientType(recipient_type)]


class PayoutRepository:
    """Балансы получателей и записи выплат."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def _q(self, conn: Connection | None) -> Connection | DatabaseManager:
        return conn if conn is not None else self.db

    # =========================================================================
    # БАЛАНСЫ
    # =========================================================================

    async def list_balances(self, recipient_type: RecipientType, cadence: PayoutCadence) -> list[RecipientBalance]:
        """Активные получатели с данной периодичностью и положительным балансом."""
        rows = await self.db.fetch(
            f"""
            SELECT id, pending_earnings_minor, currency
            FROM {_table(recipient_type)}
            WHERE status = 'active' AND payout_frequency = $1 AND pending_earnings_minor > 0
            ORDER BY id
            """,
            cadence.value,
        )
        return [
            RecipientBalance(
                recipient_type=recipient_type,
                recipient_id=r["id"],
                pending_earnings_minor=r["pending_earnings_minor"],
                currency=r["currency"],
            )
            for r in rows
        ]

    async def get_balance(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        conn: Connection | None = None,
        for_update: bool = False,
    ) -> int | None:
        query = f"SELECT pending_earnings_minor FROM {_table(recipient_type)} WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        value = await self._q(conn).fetchval(query, recipient_id)
        return int(value) if value is not None else None

    async def debit_balance(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        amount_minor: int,
        conn: Connection | None = None,
    ) -> None:
        """Списывает выплаченную сумму с баланса (не ниже нуля) и отмечает время выплаты."""
        await self._q(conn).execute(
            f"""
            UPDATE {_table(recipient_type)}
            SET pending_earnings_minor = GREATEST(0, pending_earnings_minor - $2),
                last_payout_at = NOW()
            WHERE id = $1
            """,
            recipient_id,
            amount_minor,
        )

    async def credit_balance(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        amount_minor: int,
        conn: Connection | None = None,
    ) -> None:
        await self._q(conn).execute(
            f"UPDATE {_table(recipient_type)} SET pending_earnings_minor = pending_earnings_minor + $2 WHERE id = $1",
            recipient_id,
            amount_minor,
        )

    # =========================================================================
    # ПОЛУЧАТЕЛИ У ПРОВАЙДЕРА
    # =========================================================================

    async def get_beneficiary(
        self,
        owner_type: RecipientType,
        owner_id: str,
        provider: str,
    ) -> BeneficiaryDTO | None:
        row = await self.db.fetchrow(
            """
            SELECT id, owner_type, owner_id, provider, external_id, country, currency,
                   payment_method, is_verified, account_details
            FROM beneficiaries
            WHERE owner_type = $1 AND owner_id = $2 AND provider = $3
            """,
            owner_type.value,
            owner_id,
            provider,
        )
        if row is None:
            return None
        data = dict(row)
        if isinstance(data.get("account_details"), str):
            data["account_details"] = json.loads(data["account_details"])
        return BeneficiaryDTO.model_validate(data)

    # =========================================================================
    # ВЫПЛАТЫ
    # =========================================================================

    async def get_period_payout(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        cadence: PayoutCadence,
        period_start: datetime,
        conn: Connection | None = None,
    ) -> PayoutDTO | None:
        """Неуспешные выплаты не блокируют период."""
        row = await self._q(conn).fetchrow(
            f"""
            SELECT {_PAYOUT_COLUMNS} FROM payouts
            WHERE recipient_type = $1 AND recipient_id = $2 AND cadence = $3
              AND period_start = $4 AND status <> $5
            """,
            recipient_type.value,
            recipient_id,
            cadence.value,
            period_start,
            PayoutStatus.FAILED.value,
        )
        return PayoutDTO.model_validate(dict(row)) if row else None

    async def get_processing_payout(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        cadence: PayoutCadence,
        conn: Connection | None = None,
    ) -> PayoutDTO | None:
        """Выплата в пути: провайдер ещё не дал окончательного ответа."""
        row = await self._q(conn).fetchrow(
            f"""
            SELECT {_PAYOUT_COLUMNS} FROM payouts
            WHERE recipient_type = $1 AND recipient_id = $2 AND cadence = $3 AND status = $4
            ORDER BY created_at DESC
            LIMIT 1
            """,
            recipient_type.value,
            recipient_id,
            cadence.value,
            PayoutStatus.PROCESSING.value,
        )
        return PayoutDTO.model_validate(dict(row)) if row else None

    async def create_payout(self, payout: PayoutDTO, conn: Connection | None = None) -> PayoutDTO | None:
        """None, если за этот период у получателя уже есть выплата."""
        row = await self._q(conn).fetchrow(
            f"""
            INSERT INTO payouts (id, recipient_type, recipient_id, cadence, period_start, period_end,
                                 amount_minor, currency, status, provider, idempotency_key)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT DO NOTHING
            RETURNING {_PAYOUT_COLUMNS}
            """,
            payout.id,
            payout.recipient_type.value,
            payout.recipient_id,
            payout.cadence.value,
            payout.period_start,
            payout.period_end,
            payout.amount_minor,
            payout.currency,
            payout.status.value,
            payout.provider,
            payout.idempotency_key,
        )
        return PayoutDTO.model_validate(dict(row)) if row else None

    async def get_payout(self, payout_id: str, conn: Connection | None = None, for_update: bool = False) -> PayoutDTO | None:
        query = f"SELECT {_PAYOUT_COLUMNS} FROM payouts WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self._q(conn).fetchrow(query, payout_id)
        return PayoutDTO.model_validate(dict(row)) if row else None

    async def get_by_external_ref(
        self,
        provider: str,
        external_ref: str,
        conn: Connection | None = None,
        for_update: bool = False,
    ) -> PayoutDTO | None:
        query = f"SELECT {_PAYOUT_COLUMNS} FROM payouts WHERE provider = $1 AND external_ref = $2"
        if for_update:
            query += " FOR UPDATE"
        row = await self._q(conn).fetchrow(query, provider, external_ref)
        return PayoutDTO.model_validate(dict(row)) if row else None

    async def mark_completed(self, payout_id: str, external_ref: str | None, conn: Connection | None = None) -> None:
        await self._q(conn).execute(
            """
            UPDATE payouts
            SET status = $2, external_ref = COALESCE($3, external_ref), completed_at = NOW()
            WHERE id = $1
            """,
            payout_id,
            PayoutStatus.COMPLETED.value,
            external_ref,
        )

    async def mark_failed(self, payout_id: str, reason: str | None, conn: Connection | None = None) -> bool:
        """False, если выплата уже была отмечена неуспешной."""
        result = await self._q(conn).execute(
            "UPDATE payouts SET status = $2, failure_reason = $3 WHERE id = $1 AND status <> $2",
            payout_id,
            PayoutStatus.FAILED.value,
            reason,
        )
        return result.endswith(" 1")

    async def list_history(
        self,
        recipient_type: RecipientType,
        recipient_id: str,
        limit: int = 50,
    ) -> list[PayoutDTO]:
        rows = await self.db.fetch(
            f"""
            SELECT {_PAYOUT_COLUMNS} FROM payouts
            WHERE recipient_type = $1 AND recipient_id = $2
            ORDER BY created_at DESC
            LIMIT $3
            """,
            recipient_type.value,
            recipient_id,
            limit,
        )
        return [PayoutDTO.model_validate(dict(r)) for r in rows]

    async def stats_since(self, since: datetime) -> dict[str, int]:
        row = await self.db.fetchrow(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE status = 'completed') AS successful,
                   COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                   COALESCE(SUM(amount_minor) FILTER (WHERE status = 'completed'), 0) AS total_amount_minor
            FROM payouts
            WHERE created_at >= $1
            """,
            since,
        )
        return {key: int(row[key] or 0) for key in ("total", "successful", "failed", "total_amount_minor")}
