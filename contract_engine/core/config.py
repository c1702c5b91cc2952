from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Tutoring Contract Engine"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_access_token_minutes: int = 1440  # 24 hours

    # ─────────── CONTRACT TERMS ───────────
    contract_expiry_days: int = 3
    price_per_session_min: int = 50_000
    price_per_session_max: int = 10_000_000
    total_sessions_min: int = 1
    total_sessions_max: int = 100
    allowed_session_durations: List[int] = [60, 90, 120, 150, 180]
    default_timezone: str = "Asia/Ho_Chi_Minh"

    # ─────────── SIGNING OTP ───────────
    otp_ttl_minutes: int = 5
    otp_rate_limit_window_minutes: int = 15
    otp_rate_limit_max_requests: int = 3

    # ─────────── PAYMENTS ───────────
    payment_expiry_minutes: int = 5
    overdue_grace_days: int = 3

    # ─────────── SWEEPER ───────────
    sweeper_enabled: bool = True
    sweeper_interval_seconds: int = 60

    # ─────────── GATEWAY (VNPAY) ───────────
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_return_url: str = "http://localhost:8000/api/v1/payments/gateway/return"
    vnpay_version: str = "2.1.0"
    vnpay_locale: str = "vn"

    # ─────────── EMAIL (BREVO) ───────────
    brevo_api_key: str = ""
    email_from_address: str = "no-reply@tutoring.local"
    email_from_name: str = "Tutoring Contracts"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
