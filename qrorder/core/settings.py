from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录下的 .env
ENV_PATH = Path(__file__).resolve().parent.parent.parent / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH)


class Settings(BaseSettings):
    # --- App ---
    APP_NAME: str = "QR Order"

    # --- Auth ---
    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    JWT_EXPIRE_DAYS: int = 14
    COOKIE_NAME: str = "qrorder_token"
    MERCHANT_COOKIE_NAME: str = "qrorder_merchant_token"
    ADMIN_COOKIE_NAME: str = "qrorder_admin_token"

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./qrorder.db"

    # --- Admin bootstrap ---
    DEFAULT_ADMIN_USERNAME: str = "admin"
    DEFAULT_ADMIN_PASSWORD: str = "000000"

    # ================= Tokens =================
    # 1 token = $0.01
    TOKEN_UNIT_VALUE: Decimal = Decimal("0.01")
    TOKEN_EXPIRY_DAYS: int = 365
    NEW_USER_BONUS_TOKEN_TYPE: str = "reward_tokens"
    # ==========================================

    # ================= Stripe =================
    CURRENCY: str = "usd"
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com/v1"
    PAYMENT_TIMEOUT_SECONDS: float = 20.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    # ==========================================

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def payments_test_mode(self) -> bool:
        key = self.STRIPE_SECRET_KEY
        return not key or key == "your_stripe_secret_key_here" or len(key) < 20


settings = Settings()
