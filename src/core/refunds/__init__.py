# src/core/refunds/__init__.py
from src.core.refunds.formula import RefundQuote, compute_refund_quote

__all__ = ["RefundQuote", "compute_refund_quote"]
