# src/core/rides/state_machine.py
"""
Переходы статусов поездки.

Поездка движется только вперёд; вебхук может «перепрыгнуть» промежуточный
статус (авторизация сразу переводит pending в accepted, списание —
accepted в completed). cancelled доступен из любого нетерминального статуса.
"""

from __future__ import annotations

from src.shared.models.ride import RideStatus


class RideStateMachine:
    RANK = {
        RideStatus.PENDING: 0,
        RideStatus.SEARCHING_DRIVER: 1,
        RideStatus.ACCEPTED: 2,
        RideStatus.IN_PROGRESS: 3,
        RideStatus.COMPLETED: 4,
    }
    TERMINAL = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})

    @classmethod
    def can_transition(cls, current_status: str, new_status: str) -> bool:
        try:
            curr = RideStatus(current_status)
            new = RideStatus(new_status)
        except ValueError:
            return False

        if curr in cls.TERMINAL:
            return False
        if new == RideStatus.CANCELLED:
            return True
        return cls.RANK[new] > cls.RANK[curr]

    @classmethod
    def sources_for(cls, new_status: RideStatus) -> list[str]:
        """Статусы, из которых допустим переход в new_status (для CAS в UPDATE ... WHERE status = ANY)."""
        return [s.value for s in RideStatus if cls.can_transition(s.value, new_status.value)]
