# src/core/rides/__init__.py
from src.core.rides.state_machine import RideStateMachine

__all__ = ["RideStateMachine"]
