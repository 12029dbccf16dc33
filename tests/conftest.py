# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("ADYEN_API_KEY", "test_adyen_key")
os.environ.setdefault("ADYEN_HMAC_KEY", "44782DEF547AAA06C910C43932B1EB0C71FC68D9D0C057550C48EC2ACF6BA056")
os.environ.setdefault("RAPYD_ACCESS_KEY", "test_rapyd_access")
os.environ.setdefault("RAPYD_SECRET_KEY", "test_rapyd_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

from src.core.fares.models import RateTableEntry
from src.services.payments.providers import ProviderRegistry
from src.services.payments.providers.base import ProviderOutcome, ProviderResult
from src.shared.models.payment import PaymentDTO, PaymentStatus, PaymentType
from src.shared.models.ride import RideDTO, RideStatus


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

class FakeTransaction:
    """Асинхронный контекст db.transaction(), отдающий мок соединения."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self.exited_with: type[BaseException] | None = None

    async def __aenter__(self) -> Any:
        return self.conn

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.exited_with = exc_type
        return False


class FakeLock:
    """Заглушка redis.asyncio Lock."""

    def __init__(self) -> None:
        self.entered = 0

    async def __aenter__(self) -> "FakeLock":
        self.entered += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


@pytest.fixture
def mock_conn() -> AsyncMock:
    """Мок соединения asyncpg внутри транзакции."""
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.fetchval = AsyncMock(return_value=None)
    return conn


@pytest.fixture
def mock_db(mock_conn: AsyncMock) -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    db.transaction = MagicMock(side_effect=lambda: FakeTransaction(mock_conn))
    db.health_check = AsyncMock(return_value=True)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.exists = AsyncMock(return_value=False)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    redis.health_check = AsyncMock(return_value=True)
    redis.lock = MagicMock(side_effect=lambda *args, **kwargs: FakeLock())
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    bus = AsyncMock()
    bus.publish = AsyncMock()
    bus.subscribe = AsyncMock()
    bus.health_check = AsyncMock(return_value=True)
    return bus


# =============================================================================
# ПРОВАЙДЕРЫ
# =============================================================================

def make_provider_mock(name: str) -> MagicMock:
    """Мок адаптера провайдера с успешными ответами по умолчанию."""
    provider = MagicMock()
    provider.name = name
    provider.authorize = AsyncMock(return_value=ProviderResult(ProviderOutcome.AUTHORIZED, external_ref=f"{name}_psp_1"))
    provider.capture = AsyncMock(return_value=ProviderResult(ProviderOutcome.CAPTURED, external_ref=f"{name}_cap_1"))
    provider.refund = AsyncMock(return_value=ProviderResult(ProviderOutcome.REFUNDED, external_ref=f"{name}_ref_1"))
    provider.void = AsyncMock(return_value=ProviderResult(ProviderOutcome.VOIDED, external_ref=f"{name}_psp_1"))
    provider.payout = AsyncMock(return_value=ProviderResult(ProviderOutcome.PAID_OUT, external_ref=f"{name}_po_1"))
    provider.fetch_processing_fee = AsyncMock(return_value=None)
    provider.verify_webhook = MagicMock(return_value=True)
    provider.parse_webhook = MagicMock(return_value=[])
    return provider


@pytest.fixture
def adyen_mock() -> MagicMock:
    return make_provider_mock("adyen")


@pytest.fixture
def rapyd_mock() -> MagicMock:
    return make_provider_mock("rapyd")


@pytest.fixture
def stripe_mock() -> MagicMock:
    return make_provider_mock("stripe")


@pytest.fixture
def providers(adyen_mock: MagicMock, rapyd_mock: MagicMock, stripe_mock: MagicMock) -> ProviderRegistry:
    """Реестр из моков всех трёх провайдеров."""
    return ProviderRegistry({"adyen": adyen_mock, "rapyd": rapyd_mock, "stripe": stripe_mock})


# =============================================================================
# ДАННЫЕ
# =============================================================================

@pytest.fixture
def sample_rate() -> RateTableEntry:
    """Тариф из примера: 2.00/миля, 0.30/мин, 2.00/чел, 5.00/питомец, мин. чаевые 5.00."""
    return RateTableEntry(
        id="standard",
        name="Standard",
        driver_rate_per_mile=Decimal("2.00"),
        operator_rate_per_minute=Decimal("0.30"),
        per_person_fee=Decimal("2.00"),
        per_pet_fee=Decimal("5.00"),
        min_tip=Decimal("5.00"),
        max_tip=Decimal("100.00"),
        vehicle_capacity=4,
        multi_vehicle_bonus=Decimal("5.00"),
        currency="USD",
    )


@pytest.fixture
def make_ride() -> Callable[..., RideDTO]:
    """Фабрика поездок: 10 миль, 20 минут, 5 пассажиров, 1 питомец (итого 87.00)."""
    def factory(**overrides: Any) -> RideDTO:
        data: dict[str, Any] = {
            "id": "ride-1",
            "customer_id": "customer-1",
            "driver_id": "driver-1",
            "ride_type_id": "standard",
            "distance_miles": Decimal("10"),
            "duration_minutes": Decimal("20"),
            "rider_count": 5,
            "pet_count": 1,
            "status": RideStatus.ACCEPTED,
            "currency": "USD",
        }
        data.update(overrides)
        return RideDTO(**data)
    return factory


@pytest.fixture
def make_payment() -> Callable[..., PaymentDTO]:
    """Фабрика платежей по поездке ride-1."""
    def factory(**overrides: Any) -> PaymentDTO:
        data: dict[str, Any] = {
            "id": "pay-1",
            "ride_id": "ride-1",
            "provider": "adyen",
            "external_ref": "PSP123",
            "payment_type": PaymentType.RIDE,
            "amount_minor": 8700,
            "currency": "USD",
            "status": PaymentStatus.AUTHORISED,
        }
        data.update(overrides)
        return PaymentDTO(**data)
    return factory
