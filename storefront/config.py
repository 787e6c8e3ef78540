import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


@dataclass(frozen=True)
class Settings:
    """Настройки витрины (из переменных окружения STOREFRONT_*)"""

    seed_path: str = "data/seed.json"
    upi_id: str = "sunny6060@axl"
    merchant_name: str = "My Store"
    log_level: str = "INFO"
    stock_retries: int = 3
    backend_latency: float = 0.0
    screenshot_bucket: str = "payment-screenshots"
    session_ttl: float = 1800.0  # секунды простоя вкладки до закрытия сессии


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    defaults = Settings()
    return Settings(
        seed_path=env.get("STOREFRONT_SEED_PATH", defaults.seed_path),
        upi_id=env.get("STOREFRONT_UPI_ID", defaults.upi_id),
        merchant_name=env.get("STOREFRONT_MERCHANT_NAME", defaults.merchant_name),
        log_level=env.get("STOREFRONT_LOG_LEVEL", defaults.log_level).upper(),
        stock_retries=max(1, int(env.get("STOREFRONT_STOCK_RETRIES", defaults.stock_retries))),
        backend_latency=float(env.get("STOREFRONT_BACKEND_LATENCY", defaults.backend_latency)),
        screenshot_bucket=env.get("STOREFRONT_SCREENSHOT_BUCKET", defaults.screenshot_bucket),
        session_ttl=float(env.get("STOREFRONT_SESSION_TTL", defaults.session_ttl)),
    )


def configure_logging(level: str = "INFO") -> logging.Logger:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    return logging.getLogger("shop")
