# /flowbot/config/settings.py

import sys
import re
from typing import List, Set
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Telegram Bot API
    telegram_bot_token: str
    telegram_api_base_url: str = "https://api.telegram.org"
    telegram_webhook_secret: str | None = None
    telegram_webhook_url: str | None = None  # registered with setWebhook on startup when set
    telegram_timeout_sec: float = 15.0

    # Flow definitions
    flows_path: str = "flows/bot.json"

    # Conversation behaviour
    default_ttl_minutes: int = 30
    cleanup_interval_seconds: int = 300
    strict_conditions: bool = False
    serialize_session_events: bool = True
    delete_user_input: bool = True

    # Comma-separated Telegram user ids; empty means everyone is allowed
    allowed_user_ids: str = ""

    # Security
    api_key: str | None = None

    # Deployment
    environment: str = "production"
    workers: int = 1

    # Observability
    alerting_webhook_url: str | None = None
    alert_cooldown_seconds: float = Field(default=300.0, ge=0)
    log_level: str | None = None  # overrides the per-environment default

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 300
    request_timeout_sec: float = Field(default=30.0, gt=0)

    # ---------------- Validators ---------------- #

    @field_validator("telegram_bot_token")
    @classmethod
    def token_must_look_like_bot_token(cls, v):
        if not re.match(r"^\d+:[\w-]+$", v):
            raise ValueError("TELEGRAM_BOT_TOKEN must look like '<bot_id>:<secret>'")
        return v

    @field_validator("default_ttl_minutes", "cleanup_interval_seconds")
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("TTL and cleanup interval must be positive")
        return v

    @field_validator("allowed_user_ids")
    @classmethod
    def user_ids_must_be_numeric(cls, v):
        for part in v.split(","):
            part = part.strip()
            if part and not re.match(r"^-?\d+$", part):
                raise ValueError(f"ALLOWED_USER_IDS contains a non-numeric id: {part}")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v):
        if v is None:
            return v
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL '{v}'")
        return v.upper()

    def get_allowed_user_ids(self) -> Set[int]:
        return {int(part.strip()) for part in self.allowed_user_ids.split(",") if part.strip()}

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production" and not settings_obj.telegram_webhook_secret:
            raise ValueError("TELEGRAM_WEBHOOK_SECRET is required in production")

        if settings_obj.environment not in ("production", "staging", "development", "test"):
            raise ValueError(f"Unknown ENVIRONMENT '{settings_obj.environment}'")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
