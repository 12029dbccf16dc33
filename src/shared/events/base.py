# src/shared/events/base.py
"""
Базовые классы доменных событий.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class EventMetadata(BaseModel):
    """Метаданные для трассировки и дедупликации."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = None
    source_service: str = "ride_settlement"
    version: int = 1


class DomainEvent(BaseModel):
    """
    Базовое доменное событие.

    Иммутабельно, сериализуется в JSON, обрабатывается
    идемпотентно по event_id.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_type: str = ""
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    def to_json(self) -> str:
        return self.model_dump_json()

    @property
    def event_id(self) -> str:
        return self.metadata.event_id

    @property
    def timestamp(self) -> datetime:
        return self.metadata.timestamp


EventT = TypeVar("EventT", bound=DomainEvent)
