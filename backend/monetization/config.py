from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


PLACEHOLDER_RAZORPAY_KEY_IDS = {"your_razorpay_key_id"}
PLACEHOLDER_RAZORPAY_KEY_SECRETS = {"your_razorpay_secret_key", "your_razorpay_key_secret"}


class Settings(BaseSettings):
    supabase_url: str = ""
    supabase_key: str = ""

    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    cors_origins: str = "*"
    log_level: str = "INFO"

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    payment_timeout_seconds: float = 10.0
    currency: str = "INR"

    creator_share: str = "0.55"
    default_cpm: int = 100
    min_cpm: int = 10
    max_cpm: int = 1000
    min_withdrawal_amount: int = 1000

    ad_cooldown_hours: int = 24
    min_subscribers_for_monetization: int = 1000
    min_watch_hours_for_monetization: int = 4000

    ip_hourly_ad_limit: int = 30
    risk_flag_threshold: int = 50
    risk_block_threshold: int = 90

    scheduler_enabled: bool = True
    maintenance_interval_minutes: int = 60
    session_retention_hours: int = 48
    idempotency_ttl_hours: int = 24
    update_max_attempts: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @property
    def effective_jwt_secret(self) -> str:
        return self.jwt_secret or self.supabase_key

    @property
    def cors_origin_list(self) -> list[str]:
        if not self.cors_origins.strip():
            return ["*"]
        origins = [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]
        return origins or ["*"]

    @property
    def payment_provider_configured(self) -> bool:
        key_id = self.razorpay_key_id.strip()
        key_secret = self.razorpay_key_secret.strip()
        return (
            bool(key_id)
            and bool(key_secret)
            and key_id not in PLACEHOLDER_RAZORPAY_KEY_IDS
            and key_secret not in PLACEHOLDER_RAZORPAY_KEY_SECRETS
        )


settings = Settings()
