"""Runtime configuration read from the environment."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Coordinator settings, overridable through ``QUICKROOM_*`` variables."""

    model_config = SettingsConfigDict(env_prefix="QUICKROOM_", env_file=".env", extra="ignore")

    environment: str = "development"
    log_level: str = "INFO"
    typing_timeout: float = 3.0  # seconds a typing indicator survives without refresh
    messages_link: str = "/messages"
    appointments_link: str = "/appointments"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Returns the process-wide settings"""
    return Settings()
