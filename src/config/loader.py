# src/config/loader.py
"""
Загрузчик конфигурации сервиса расчётов.
Единственный источник истины — config/config.json.
Секреты провайдеров и инфраструктуры переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


def _secret(env_key: str, data: dict[str, Any], default: str = "") -> str:
    """Секрет из окружения, иначе из config.json."""
    return os.getenv(env_key) or data.get(env_key, default) or default


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ride_settlement"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


class DeploymentSettings(BaseModel):
    """Хосты и порты компонентов."""
    PAYMENTS_SERVICE_HOST: str = "0.0.0.0"
    PAYMENTS_SERVICE_PORT: int = 8087
    PAYOUT_WORKER_INSTANCES_COUNT: int = 1


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/settlement.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ride_settlement"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "settlement"
    REDIS_MAX_CONNECTIONS: int = 50

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RedisTTLSettings(BaseModel):
    """TTL кэша и блокировок (секунды)."""
    RATE_TABLE_TTL: int = 600
    PAYOUT_LOCK_TTL: int = 3600


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "settlement.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class FareSettings(BaseModel):
    """
    Тариф по умолчанию.
    Применяется, когда тип поездки не найден в таблице тарифов.
    """
    DEFAULT_DRIVER_RATE_PER_MILE: Decimal = Decimal("2.00")
    DEFAULT_OPERATOR_RATE_PER_MINUTE: Decimal = Decimal("0.30")
    DEFAULT_PER_PERSON_FEE: Decimal = Decimal("2.00")
    DEFAULT_PER_PET_FEE: Decimal = Decimal("5.00")
    DEFAULT_MIN_TIP: Decimal = Decimal("5.00")
    DEFAULT_MAX_TIP: Decimal = Decimal("100.00")
    VEHICLE_CAPACITY: int = 4
    MULTI_VEHICLE_BONUS: Decimal = Decimal("5.00")
    CURRENCY: str = "USD"

    @field_validator("VEHICLE_CAPACITY")
    @classmethod
    def capacity_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("VEHICLE_CAPACITY must be >= 1")
        return v


class ProviderRetrySettings(BaseModel):
    """Повторы вызовов провайдеров (экспоненциальная задержка с джиттером)."""
    MAX_ATTEMPTS: int = 3
    BASE_DELAY: float = 0.5
    MAX_DELAY: float = 8.0
    TIMEOUT: float = 15.0


class AdyenSettings(BaseModel):
    """Adyen: двухфазная авторизация карт и выплаты."""
    API_KEY: str = ""
    MERCHANT_ACCOUNT: str = ""
    HMAC_KEY: str = ""
    ENVIRONMENT: str = "test"
    CHECKOUT_URL: str = "https://checkout-test.adyen.com/v71"
    PAYOUT_URL: str = "https://pal-test.adyen.com/pal/servlet/Payout/v68"


class RapydSettings(BaseModel):
    """Rapyd: подписанные запросы, захват/возврат и выплаты."""
    ACCESS_KEY: str = ""
    SECRET_KEY: str = ""
    BASE_URL: str = "https://sandboxapi.rapyd.net"
    WEBHOOK_PATH: str = "/api/v1/webhooks/rapyd"


class StripeSettings(BaseModel):
    """Stripe: PaymentIntent и переводы на подключённые аккаунты."""
    SECRET_KEY: str = ""
    WEBHOOK_SECRET: str = ""
    BASE_URL: str = "https://api.stripe.com"
    WEBHOOK_TOLERANCE_SECONDS: int = 300


class PaymentSettings(BaseModel):
    """Маршрутизация платежей."""
    PRIMARY_PROVIDER: str = "adyen"
    TIP_PROVIDER: str = "stripe"


class PayoutSettings(BaseModel):
    """Расписание и параметры плановых выплат."""
    PROVIDER: str = "rapyd"
    CURRENCY: str = "USD"
    TIMEZONE: str = "UTC"
    DAILY_HOUR: int = 2
    WEEKLY_WEEKDAY: int = 6  # воскресенье (Monday=0)
    WEEKLY_HOUR: int = 3
    MONTHLY_DAY: int = 1
    MONTHLY_HOUR: int = 4
    DELAY_SECONDS: float = 1.0
    STATS_WINDOW_DAYS: int = 30
    OPERATOR_ACCOUNT_ID: str = "operator"


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    redis_ttl: RedisTTLSettings = Field(default_factory=RedisTTLSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    fares: FareSettings = Field(default_factory=FareSettings)
    provider_retry: ProviderRetrySettings = Field(default_factory=ProviderRetrySettings)
    adyen: AdyenSettings = Field(default_factory=AdyenSettings)
    rapyd: RapydSettings = Field(default_factory=RapydSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    payments: PaymentSettings = Field(default_factory=PaymentSettings)
    payouts: PayoutSettings = Field(default_factory=PayoutSettings)

    @classmethod
    def from_config_json(cls) -> "Settings":
        """Создаёт Settings из config.json."""
        return cls.from_dict(load_config_json())

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """
        Раскладывает плоский словарь config.json по секциям.
        Ключи `_comment_*` игнорируются, секреты берутся из окружения.
        """
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "ride_settlement"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "all")),
            ),
            deployment=DeploymentSettings(
                PAYMENTS_SERVICE_HOST=os.getenv("PAYMENTS_SERVICE_HOST", data.get("PAYMENTS_SERVICE_HOST", "0.0.0.0")),
                PAYMENTS_SERVICE_PORT=int(os.getenv("PAYMENTS_SERVICE_PORT", data.get("PAYMENTS_SERVICE_PORT", 8087))),
                PAYOUT_WORKER_INSTANCES_COUNT=data.get("PAYOUT_WORKER_INSTANCES_COUNT", 1),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=data.get("LOG_LEVEL", "DEBUG"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/settlement.log"),
                LOG_FORMAT=data.get("LOG_FORMAT", "json"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "ride_settlement")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=_secret("DB_PASSWORD", data),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=_secret("REDIS_PASSWORD", data),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", "settlement"),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            redis_ttl=RedisTTLSettings(
                RATE_TABLE_TTL=data.get("RATE_TABLE_TTL", 600),
                PAYOUT_LOCK_TTL=data.get("PAYOUT_LOCK_TTL", 3600),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=_secret("RABBITMQ_PASSWORD", data, "guest"),
                RABBITMQ_VHOST=data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=data.get("RABBITMQ_EXCHANGE", "settlement.events"),
                RABBITMQ_PREFETCH_COUNT=data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            fares=FareSettings(
                DEFAULT_DRIVER_RATE_PER_MILE=data.get("DEFAULT_DRIVER_RATE_PER_MILE", "2.00"),
                DEFAULT_OPERATOR_RATE_PER_MINUTE=data.get("DEFAULT_OPERATOR_RATE_PER_MINUTE", "0.30"),
                DEFAULT_PER_PERSON_FEE=data.get("DEFAULT_PER_PERSON_FEE", "2.00"),
                DEFAULT_PER_PET_FEE=data.get("DEFAULT_PER_PET_FEE", "5.00"),
                DEFAULT_MIN_TIP=data.get("DEFAULT_MIN_TIP", "5.00"),
                DEFAULT_MAX_TIP=data.get("DEFAULT_MAX_TIP", "100.00"),
                VEHICLE_CAPACITY=data.get("VEHICLE_CAPACITY", 4),
                MULTI_VEHICLE_BONUS=data.get("MULTI_VEHICLE_BONUS", "5.00"),
                CURRENCY=data.get("CURRENCY", "USD"),
            ),
            provider_retry=ProviderRetrySettings(
                MAX_ATTEMPTS=data.get("PROVIDER_MAX_ATTEMPTS", 3),
                BASE_DELAY=data.get("PROVIDER_BASE_DELAY", 0.5),
                MAX_DELAY=data.get("PROVIDER_MAX_DELAY", 8.0),
                TIMEOUT=data.get("PROVIDER_TIMEOUT", 15.0),
            ),
            adyen=AdyenSettings(
                API_KEY=_secret("ADYEN_API_KEY", data),
                MERCHANT_ACCOUNT=os.getenv("ADYEN_MERCHANT_ACCOUNT", data.get("ADYEN_MERCHANT_ACCOUNT", "")),
                HMAC_KEY=_secret("ADYEN_HMAC_KEY", data),
                ENVIRONMENT=data.get("ADYEN_ENVIRONMENT", "test"),
                CHECKOUT_URL=data.get("ADYEN_CHECKOUT_URL", "https://checkout-test.adyen.com/v71"),
                PAYOUT_URL=data.get("ADYEN_PAYOUT_URL", "https://pal-test.adyen.com/pal/servlet/Payout/v68"),
            ),
            rapyd=RapydSettings(
                ACCESS_KEY=_secret("RAPYD_ACCESS_KEY", data),
                SECRET_KEY=_secret("RAPYD_SECRET_KEY", data),
                BASE_URL=data.get("RAPYD_BASE_URL", "https://sandboxapi.rapyd.net"),
                WEBHOOK_PATH=data.get("RAPYD_WEBHOOK_PATH", "/api/v1/webhooks/rapyd"),
            ),
            stripe=StripeSettings(
                SECRET_KEY=_secret("STRIPE_SECRET_KEY", data),
                WEBHOOK_SECRET=_secret("STRIPE_WEBHOOK_SECRET", data),
                BASE_URL=data.get("STRIPE_BASE_URL", "https://api.stripe.com"),
                WEBHOOK_TOLERANCE_SECONDS=data.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300),
            ),
            payments=PaymentSettings(
                PRIMARY_PROVIDER=data.get("PRIMARY_PAYMENT_PROVIDER", "adyen"),
                TIP_PROVIDER=data.get("TIP_PAYMENT_PROVIDER", "stripe"),
            ),
            payouts=PayoutSettings(
                PROVIDER=data.get("PAYOUT_PROVIDER", "rapyd"),
                CURRENCY=data.get("PAYOUT_CURRENCY", data.get("CURRENCY", "USD")),
                TIMEZONE=data.get("PAYOUT_TIMEZONE", "UTC"),
                DAILY_HOUR=data.get("PAYOUT_DAILY_HOUR", 2),
                WEEKLY_WEEKDAY=data.get("PAYOUT_WEEKLY_WEEKDAY", 6),
                WEEKLY_HOUR=data.get("PAYOUT_WEEKLY_HOUR", 3),
                MONTHLY_DAY=data.get("PAYOUT_MONTHLY_DAY", 1),
                MONTHLY_HOUR=data.get("PAYOUT_MONTHLY_HOUR", 4),
                DELAY_SECONDS=data.get("PAYOUT_DELAY_SECONDS", 1.0),
                STATS_WINDOW_DAYS=data.get("PAYOUT_STATS_WINDOW_DAYS", 30),
                OPERATOR_ACCOUNT_ID=data.get("OPERATOR_ACCOUNT_ID", "operator"),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает кэшированные настройки приложения.
    Перед загрузкой подхватывает .env из корня проекта.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


settings = get_settings()
