"""Engine Settings - Central Configuration"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = False  # Library default: stdout only

    # Localization
    default_locale: str = "en"

    # Approvals
    # One of: notify_only, delegate, auto_reject
    default_escalation_policy: str = "notify_only"

    # Validation
    default_max_file_size_mb: int = 10

    # Scheduler
    escalation_check_interval_seconds: int = 60


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
