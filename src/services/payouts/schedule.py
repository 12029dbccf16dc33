# src/services/payouts/schedule.py
"""
Расписание пакетов выплат и границы периода.

По умолчанию: daily 02:00, weekly воскресенье 03:00, monthly 1-е число 04:00
в часовом поясе payouts.TIMEZONE. Период выплаты — календарные сутки,
неделя (с понедельника) или месяц, в котором сработал пакет; он же ключ
защиты от повторной выплаты получателю.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from src.common.constants import PayoutCadence


def _clamp_day(year: int, month: int, day: int) -> int:
    return min(max(1, day), calendar.monthrange(year, month)[1])


def _add_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


@dataclass(frozen=True)
class PayoutSchedule:
    timezone: str = "UTC"
    daily_hour: int = 2
    weekly_weekday: int = 6
    weekly_hour: int = 3
    monthly_day: int = 1
    monthly_hour: int = 4

    @classmethod
    def from_settings(cls) -> "PayoutSchedule":
        from src.config import settings
        p = settings.payouts
        return cls(
            timezone=p.TIMEZONE,
            daily_hour=p.DAILY_HOUR,
            weekly_weekday=p.WEEKLY_WEEKDAY,
            weekly_hour=p.WEEKLY_HOUR,
            monthly_day=p.MONTHLY_DAY,
            monthly_hour=p.MONTHLY_HOUR,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def _local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def next_run_after(self, cadence: PayoutCadence, now: datetime) -> datetime:
        """Ближайшее время запуска строго после now (UTC)."""
        local = self._local(now)
        tz = self.tz

        if cadence == PayoutCadence.DAILY:
            candidate = datetime.combine(local.date(), time(self.daily_hour), tzinfo=tz)
            if candidate <= local:
                candidate = datetime.combine(local.date() + timedelta(days=1), time(self.daily_hour), tzinfo=tz)

        elif cadence == PayoutCadence.WEEKLY:
            days_ahead = (self.weekly_weekday - local.weekday()) % 7
            candidate = datetime.combine(local.date() + timedelta(days=days_ahead), time(self.weekly_hour), tzinfo=tz)
            if candidate <= local:
                candidate = datetime.combine(candidate.date() + timedelta(days=7), time(self.weekly_hour), tzinfo=tz)

        elif cadence == PayoutCadence.MONTHLY:
            year, month = local.year, local.month
            day = _clamp_day(year, month, self.monthly_day)
            candidate = datetime(year, month, day, self.monthly_hour, tzinfo=tz)
            if candidate <= local:
                year, month = _add_month(year, month)
                candidate = datetime(year, month, _clamp_day(year, month, self.monthly_day), self.monthly_hour, tzinfo=tz)

        else:
            raise ValueError(f"cadence {cadence.value} has no schedule")

        return candidate.astimezone(timezone.utc)

    def period_bounds(self, cadence: PayoutCadence, now: datetime) -> tuple[datetime, datetime]:
        """[начало, конец) периода, в который попадает now (UTC)."""
        local = self._local(now)
        tz = self.tz
        day_start = datetime.combine(local.date(), time(0), tzinfo=tz)

        if cadence == PayoutCadence.DAILY:
            start, end = day_start, day_start + timedelta(days=1)
        elif cadence == PayoutCadence.WEEKLY:
            start = day_start - timedelta(days=local.weekday())
            end = start + timedelta(days=7)
        elif cadence == PayoutCadence.MONTHLY:
            start = datetime(local.year, local.month, 1, tzinfo=tz)
            year, month = _add_month(local.year, local.month)
            end = datetime(year, month, 1, tzinfo=tz)
        else:
            # мгновенная выплата: период из одного момента
            start = end = local

        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def next_run_after(cadence: PayoutCadence, now: datetime, schedule: PayoutSchedule | None = None) -> datetime:
    return (schedule or PayoutSchedule.from_settings()).next_run_after(cadence, now)
