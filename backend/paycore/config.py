"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "Payment Orchestration Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'payments.db'}"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"   # text | json
    LOG_FILE: str = ""

    # --- HTTP ---
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: list[str] = ["*"]

    # --- Payments ---
    SUPPORTED_CURRENCIES: list[str] = ["MXN", "USD"]
    MAX_PAYMENT_AMOUNT: float = 999999.99
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    CAS_MAX_RETRIES: int = 5
    REFUND_LOCK_TTL_SECONDS: int = 120

    # --- Stripe (card, cash-voucher) ---
    STRIPE_API_URL: str = "https://api.stripe.com"
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_REFUND_WINDOW_DAYS: int = 30
    CASH_VOUCHER_EXPIRES_AFTER_DAYS: int = 2

    # --- PayPal (wallet) ---
    PAYPAL_API_URL: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_WEBHOOK_ID: str = ""
    PAYPAL_WEBHOOK_CERT: str = ""      # PEM certificate or public key
    PAYPAL_BRAND_NAME: str = "Eqhuma Web"
    PAYPAL_RETURN_URL: str = ""
    PAYPAL_CANCEL_URL: str = ""
    PAYPAL_REFUND_WINDOW_DAYS: int = 180

    # --- STP (bank-transfer, bill-payment) ---
    STP_API_URL: str = "https://demo.stpmex.com/speiws/rest"
    STP_PRIVATE_KEY: str = ""          # PEM content or path to a PEM file
    STP_PRIVATE_KEY_PASSPHRASE: str = ""
    STP_ACCOUNT_NUMBER: str = ""
    STP_INSTITUTION: str = ""
    STP_WEBHOOK_SECRET: str = ""
    STP_UTILITY_API_URL: str = "https://demo.stpmex.com/servicios/rest"
    STP_UTILITY_API_KEY: str = ""
    STP_REFUND_WINDOW_DAYS: int = 30

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
