# src/core/fares/__init__.py
"""
Расчёт стоимости поездки и распределения выручки.
"""

from src.core.fares.calculator import allocate_split, compute_fare, operator_share, tip_bounds, to_minor, from_minor
from src.core.fares.models import FareBreakdown, RateTableEntry, TripMetrics

__all__ = [
    "allocate_split",
    "compute_fare",
    "operator_share",
    "tip_bounds",
    "to_minor",
    "from_minor",
    "FareBreakdown",
    "RateTableEntry",
    "TripMetrics",
]
