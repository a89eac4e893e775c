from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    environment: Environment = Environment.DEVELOPMENT

    # Database
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_pool_timeout: int = 30

    # Auth (tokens are issued by the auth service; only verified here)
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 15

    # Bot replies
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4.1"
    openai_temperature: float = 0.7
    openai_max_tokens: Optional[int] = 1000
    generation_timeout_seconds: float = 30.0
    generation_context_messages: int = 20

    # Chats and messages
    max_message_length: int = 4000
    chat_title_max_length: int = 100
    default_chat_title: str = "New Chat"
    max_tags: int = 20
    message_edit_window_hours: int = 24
    default_page_size: int = 50
    max_page_size: int = 200

    # Realtime delivery
    session_queue_size: int = 256
    heartbeat_interval_seconds: float = 30.0
    heartbeat_missed_limit: int = 2

    # Offline replay (client side)
    offline_max_attempts: int = 3
    offline_backoff_base_seconds: float = 1.0
    offline_backoff_max_seconds: float = 30.0

    # Rate limiting
    rate_limit_enabled: bool = True
    redis_url: Optional[str] = "redis://localhost:6379"

    # Notifications (push/email gateway listens on this channel)
    notifications_enabled: bool = True
    notification_channel: str = "speechbot:notifications"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    cors_allow_credentials: bool = True

    # Logging and metrics
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    metrics_enabled: bool = True

    # Application
    app_name: str = "SpeechBot Chat API"
    app_version: str = "0.1.0"
    app_description: str = "Chat sessions, real-time delivery and offline sync for SpeechBot"
    workers: int = 4
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("log_format")
    @classmethod
    def check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @field_validator("session_queue_size", "offline_max_attempts", "heartbeat_missed_limit")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def heartbeat_timeout_seconds(self) -> float:
        """A session missing this many heartbeats in a row is reaped"""
        return self.heartbeat_interval_seconds * self.heartbeat_missed_limit

    def get_cors_config(self) -> dict:
        return {
            "allow_origins": self.cors_origins,
            "allow_credentials": self.cors_allow_credentials,
            "allow_methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            "allow_headers": ["Authorization", "Content-Type", "X-Device-Id", "X-Request-Id"],
        }

    def get_openai_config(self) -> dict:
        return {
            "api_key": self.openai_api_key,
            "model": self.openai_model,
            "temperature": self.openai_temperature,
            "max_tokens": self.openai_max_tokens,
            "timeout": self.generation_timeout_seconds,
        }

    def get_offline_config(self) -> dict:
        """Retry policy for replaying the client's offline queue"""
        return {
            "max_attempts": self.offline_max_attempts,
            "backoff_base": self.offline_backoff_base_seconds,
            "backoff_max": self.offline_backoff_max_seconds,
        }


# Per-environment overrides, applied once at import
ENVIRONMENT_OVERRIDES: Dict[Environment, Dict[str, Any]] = {
    Environment.PRODUCTION: {
        "log_level": "WARNING",
        "rate_limit_enabled": True,
        "metrics_enabled": True,
    },
    Environment.STAGING: {
        "rate_limit_enabled": True,
    },
    Environment.TESTING: {
        "log_level": "DEBUG",
        "rate_limit_enabled": False,
        "notifications_enabled": False,
    },
    Environment.DEVELOPMENT: {
        "log_level": "DEBUG",
        "rate_limit_enabled": False,
    },
}


def apply_environment_overrides(target: Settings) -> Settings:
    for key, value in ENVIRONMENT_OVERRIDES.get(target.environment, {}).items():
        setattr(target, key, value)
    return target


settings = apply_environment_overrides(Settings())
