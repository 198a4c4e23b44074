from functools import lru_cache
import json
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors_origins(value: str) -> list[str]:
    if not value:
        return []

    parsed: list[str]
    raw = value.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
            parsed = [str(item).strip() for item in items if str(item).strip()]
        except (TypeError, ValueError):
            parsed = []
    else:
        parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]

    # Preserve order and remove duplicates.
    return list(dict.fromkeys(parsed))


MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = "COLLOSPOT"
    environment: str = "development"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Security
    secret_key: str
    access_token_expire_minutes: int = 60 * 24 * 7

    # Database
    database_url: str
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 15
    db_pool_recycle: int = 1200
    db_pool_pre_ping: bool = True

    # M-Pesa (Daraja STK push)
    mpesa_environment: str = "sandbox"  # sandbox|production
    mpesa_base_url: Optional[str] = None
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_callback_url: str = ""
    # Shared secret added to CallBackURL as ?token=... on every push; Daraja does not sign callbacks.
    mpesa_callback_token: Optional[str] = None
    mpesa_timeout_seconds: int = 30
    mpesa_retry_count: int = 2
    mpesa_simulate: bool = False
    mpesa_simulate_delay_seconds: float = 10.0

    # MikroTik hotspot router
    mikrotik_host: str = "192.168.88.1"
    mikrotik_port: int = 8728
    mikrotik_username: str = "admin"
    mikrotik_password: str = ""
    mikrotik_timeout_seconds: int = 10
    mikrotik_test_mode: bool = False

    # SMS
    sms_provider: str = "console"  # console|africastalking
    africastalking_username: str = "sandbox"
    africastalking_api_key: Optional[str] = None
    africastalking_sender_id: Optional[str] = None
    sms_workers: int = 2

    # Background maintenance
    sweeper_enabled: bool = True
    session_sweep_interval_seconds: int = 300
    payment_abandon_minutes: int = 15

    # CORS
    frontend_base_url: str = "http://localhost:3000"
    cors_origins: str = "http://localhost:3000,http://localhost:5173"
    auto_create_tables: bool = False
    rate_limit_enabled: bool = True

    @property
    def resolved_mpesa_base_url(self) -> str:
        if self.mpesa_base_url:
            return self.mpesa_base_url.rstrip("/")
        key = (self.mpesa_environment or "sandbox").strip().lower()
        return MPESA_BASE_URLS.get(key, MPESA_BASE_URLS["sandbox"])


@lru_cache
def get_settings() -> Settings:
    return Settings()
