# src/core/payments/__init__.py
from src.core.payments.state_machine import PaymentStateMachine

__all__ = ["PaymentStateMachine"]
