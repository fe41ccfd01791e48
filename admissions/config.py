import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "{asctime} {levelname} [{name}:{lineno}] {message}"


@dataclass
class Settings:
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./admissions.db"))
    default_currency: str = field(default_factory=lambda: os.getenv("DEFAULT_CURRENCY", "INR"))
    cashfree_base_url: str = field(default_factory=lambda: os.getenv("CASHFREE_BASE_URL", "https://sandbox.cashfree.com/pg"))
    cashfree_client_id: str = field(default_factory=lambda: os.getenv("CASHFREE_CLIENT_ID", ""))
    cashfree_client_secret: str = field(default_factory=lambda: os.getenv("CASHFREE_CLIENT_SECRET", ""))
    cashfree_api_version: str = field(default_factory=lambda: os.getenv("CASHFREE_API_VERSION", "2023-08-01"))
    gateway_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")))
    reconcile_interval_minutes: int = field(default_factory=lambda: int(os.getenv("RECONCILE_INTERVAL_MINUTES", "5")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @property
    def gateway_configured(self) -> bool:
        return bool(self.cashfree_client_id and self.cashfree_client_secret)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, style="{")
