import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Force-load .env (process env wins)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _clean_env(value):
    """Strip whitespace and stray quotes pasted around secrets."""
    return (value or "").strip().strip("'").strip('"')


def _split_csv(value):
    return [item.strip() for item in (value or "").split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    payment_provider: str = "stripe"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    mercadopago_access_token: str = ""
    mercadopago_webhook_secret: str = ""
    mercadopago_api_url: str = "https://api.mercadopago.com"
    frontend_url: str = "http://localhost:5173"
    webhook_base_url: str = "http://localhost:8000"
    currency: str = "ARS"
    max_payment_amount: int = 999_999_999
    platform_fee_percentage: float = 0.15
    provider_timeout_seconds: float = 10.0
    cors_origins: List[str] = field(default_factory=list)
    log_level: str = "INFO"

    @property
    def webhook_url(self) -> str:
        return f"{self.webhook_base_url.rstrip('/')}/payments/webhook"

    def redirect_url(self, outcome: str) -> str:
        return f"{self.frontend_url.rstrip('/')}/payment/{outcome}"


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    return Settings(
        database_url=database_url,
        jwt_secret=_clean_env(os.getenv("JWT_SECRET")),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        payment_provider=os.getenv("PAYMENT_PROVIDER", "stripe").lower(),
        stripe_secret_key=_clean_env(os.getenv("STRIPE_SECRET_KEY")),
        stripe_webhook_secret=_clean_env(os.getenv("STRIPE_WEBHOOK_SECRET")),
        mercadopago_access_token=_clean_env(os.getenv("MERCADOPAGO_ACCESS_TOKEN")),
        mercadopago_webhook_secret=_clean_env(os.getenv("MERCADOPAGO_WEBHOOK_SECRET")),
        mercadopago_api_url=os.getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
        webhook_base_url=os.getenv("WEBHOOK_BASE_URL", "http://localhost:8000"),
        currency=os.getenv("PAYMENT_CURRENCY", "ARS").upper(),
        max_payment_amount=int(os.getenv("MAX_PAYMENT_AMOUNT", "999999999")),
        platform_fee_percentage=float(os.getenv("PLATFORM_FEE_PERCENTAGE", "0.15")),
        provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10")),
        cors_origins=_split_csv(os.getenv("CORS_ORIGINS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
