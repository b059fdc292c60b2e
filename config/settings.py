"""
Runtime settings for the discharge follow-up scheduling system

All values come from environment variables. Entry points call
``load_dotenv()`` before the first ``get_settings()`` so a local ``.env``
file is honoured.
"""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    """Process-wide settings resolved from the environment"""
    dispatch_queue_name: str = "discharge_dispatch"
    retry_max_attempts: int = 3
    retry_base_minutes: int = 5
    provider_timeout_seconds: float = 15.0
    call_provider_base_url: str = "https://api.vapi.ai"
    call_provider_api_key: Optional[str] = None
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    webhook_secret: Optional[str] = None
    default_clinic_timezone: str = "America/Los_Angeles"
    daily_run_cron: str = "0 9 * * *"
    http_port: int = 8081
    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def get_settings() -> Settings:
    """Build settings from the current environment"""
    return Settings(
        dispatch_queue_name=os.getenv("DISPATCH_QUEUE_NAME", "discharge_dispatch"),
        retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
        retry_base_minutes=_env_int("RETRY_BASE_MINUTES", 5),
        provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15")),
        call_provider_base_url=os.getenv("CALL_PROVIDER_BASE_URL", "https://api.vapi.ai"),
        call_provider_api_key=os.getenv("CALL_PROVIDER_API_KEY"),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
        default_clinic_timezone=os.getenv("DEFAULT_CLINIC_TIMEZONE", "America/Los_Angeles"),
        daily_run_cron=os.getenv("DAILY_RUN_CRON", "0 9 * * *"),
        http_port=_env_int("HTTP_PORT", 8081),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
