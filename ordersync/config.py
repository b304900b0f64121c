import os
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("config")


class ConfigurationError(Exception):
    """Raised when an environment value cannot be parsed."""


def load_environment(env_path: Path = Path(".env")) -> None:
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")


def _int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from e


def _decimal(key: str, default: str) -> Decimal:
    raw = os.getenv(key) or default
    try:
        return Decimal(raw).quantize(Decimal("0.01"))
    except InvalidOperation as e:
        raise ConfigurationError(f"{key} must be a decimal amount, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///orders.db"
    temporal_address: str = "localhost:7233"
    payment_task_queue: str = "payment-tq"
    paystack_secret_key: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    paystack_currency: str = "GHS"
    paystack_callback_url: Optional[str] = None
    paystack_timeout_seconds: int = 15
    restaurant_id: str = "speedyspoon-main"
    delivery_fee: Decimal = Decimal("5.00")
    min_address_length: int = 10
    max_order_items: int = 5
    estimated_prep_minutes: int = 25
    estimated_transit_minutes: int = 15
    payment_sweep_seconds: int = 900
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            temporal_address=os.getenv("TEMPORAL_ADDRESS", cls.temporal_address),
            payment_task_queue=os.getenv("PAYMENT_TASK_QUEUE", cls.payment_task_queue),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY") or None,
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", cls.paystack_base_url).rstrip("/"),
            paystack_currency=os.getenv("PAYSTACK_CURRENCY", cls.paystack_currency),
            paystack_callback_url=os.getenv("PAYSTACK_CALLBACK_URL") or None,
            paystack_timeout_seconds=_int("PAYSTACK_TIMEOUT_SECONDS", cls.paystack_timeout_seconds),
            restaurant_id=os.getenv("RESTAURANT_ID", cls.restaurant_id),
            delivery_fee=_decimal("DELIVERY_FEE", "5.00"),
            min_address_length=_int("MIN_ADDRESS_LENGTH", cls.min_address_length),
            max_order_items=_int("MAX_ORDER_ITEMS", cls.max_order_items),
            estimated_prep_minutes=_int("ESTIMATED_PREP_MINUTES", cls.estimated_prep_minutes),
            estimated_transit_minutes=_int("ESTIMATED_TRANSIT_MINUTES", cls.estimated_transit_minutes),
            payment_sweep_seconds=_int("PAYMENT_SWEEP_SECONDS", cls.payment_sweep_seconds),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_environment()
    return Settings.from_env()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    logging.getLogger("temporalio").setLevel(logging.INFO)
    logging.getLogger("temporalio.activity").setLevel(logging.ERROR)
    logging.getLogger("temporalio.worker._workflow_instance").setLevel(logging.ERROR)
