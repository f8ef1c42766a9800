"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    supabase_url: str
    supabase_service_key: str
    admin_token: str
    mpesa_consumer_key: str
    mpesa_consumer_secret: str
    mpesa_business_short_code: str
    mpesa_passkey: str
    mpesa_callback_url: str
    mpesa_environment: str = "sandbox"
    payment_single_flight_seconds: int = 120
    payment_query_after_seconds: int = 30
    audit_interval_seconds: int = 0
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )
