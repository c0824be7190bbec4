from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "parsha-songs-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    sqlite_path: str = "parsha-songs.db"
    admin_token: str | None = None
    public_base_url: str | None = None
    reference_data_path: str | None = None
    notify_webhook: str | None = None
    notify_email: str | None = None
    notify_from: str | None = None
    notify_timeout_seconds: float = 10.0
    brevo_api_key: str | None = None
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_secure: bool = False
    otel_enabled: bool = True
    otel_service_name: str = "parsha-songs-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
