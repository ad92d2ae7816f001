from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_path: str = "ridepay.sqlite3"

    flw_base_url: str = "https://api.flutterwave.com/v3"
    flw_secret_key: str = ""
    flw_encryption_key: str = ""
    flw_webhook_hash: str = ""
    gateway_timeout_seconds: float = 15

    payment_currency: str = "RWF"
    payment_email: str = "payments@rushago.rw"
    redirect_url: str = "http://localhost:15000/api/v1/payments/subscription/redirect"

    basic_plan_price: int = 0
    pro_plan_price: int = 10000
    subscription_days: int = 30
    boost_days: int = 90

    poll_interval_seconds: int = 120
    poll_batch_size: int = 10

    telegram_token: str = ""
    telegram_admin_ids: list[int] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _default_encryption_key(self) -> "Settings":
        if not self.flw_encryption_key and self.flw_secret_key:
            self.flw_encryption_key = self.flw_secret_key[:24]
        return self

    def plan_price(self, plan: str) -> int:
        prices = {
            "basic": self.basic_plan_price,
            "pro": self.pro_plan_price,
        }
        return prices[plan]
