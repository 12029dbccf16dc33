# src/shared/models/__init__.py
"""
Общие DTO и Pydantic-модели.
"""

from src.shared.models.common import ErrorResponse, HealthStatus
from src.shared.models.ride import RideDTO, RideStatus
from src.shared.models.payment import (
    PaymentDTO,
    PaymentSplitDTO,
    PaymentStatus,
    PaymentType,
    RefundDTO,
    RefundKind,
    RefundStatus,
)
from src.shared.models.payout import (
    BeneficiaryDTO,
    PayoutBatchReport,
    PayoutDTO,
    PayoutStats,
    PayoutStatus,
    RecipientBalance,
)

__all__ = [
    "ErrorResponse",
    "HealthStatus",
    "RideDTO",
    "RideStatus",
    "PaymentDTO",
    "PaymentSplitDTO",
    "PaymentStatus",
    "PaymentType",
    "RefundDTO",
    "RefundKind",
    "RefundStatus",
    "BeneficiaryDTO",
    "PayoutBatchReport",
    "PayoutDTO",
    "PayoutStats",
    "PayoutStatus",
    "RecipientBalance",
]
