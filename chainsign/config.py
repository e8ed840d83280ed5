"""
Application configuration, loaded from the environment and an optional .env file.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "chainsign"
    APP_URL: str = "http://localhost:8000"
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    DATABASE_URL: Optional[str] = None

    # --- Tokens ---
    SECRET_KEY: str = "chainsign-dev-secret-change-in-production"
    MAGIC_LINK_TTL_DAYS: int = 7
    SESSION_TTL_MINUTES: int = 60
    ACCESS_TOKEN_TTL_MINUTES: int = 60

    # --- OTP ---
    OTP_TTL_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 3

    # --- File links ---
    VIEW_URL_TTL_SECONDS: int = 300
    COMPLETION_URL_TTL_SECONDS: int = 3600

    # --- Storage ---
    UPLOAD_DIR: str = "uploads"
    BLOB_READ_WRITE_TOKEN: Optional[str] = None

    # --- Mail ---
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "chainsign <no-reply@localhost>"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
