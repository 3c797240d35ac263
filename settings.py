"""Configuration settings loaded from environment and .env file."""

from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings, loaded from environment variables or .env."""

    # Database
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    # Auth
    secret_key: str = "super-secret-dev-key"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Ledger gateway
    ledger_api_url: str = "http://localhost:8545"
    ledger_api_key: Optional[str] = None
    ledger_timeout_seconds: float = 30.0

    # Content store (IPFS pinning service)
    content_store_url: str = "http://localhost:5001"
    content_gateway_url: str = "https://ipfs.io/ipfs"
    content_store_api_key: Optional[str] = None
    content_timeout_seconds: float = 60.0

    # Uploads
    upload_max_bytes: int = 50 * 1024 * 1024
    allowed_image_types: List[str] = ["image/jpeg", "image/png", "image/webp"]

    # Reading
    preview_page_count: int = 3

    # Concurrency
    max_update_retries: int = 3

    # Reconciliation (0 disables the background loop)
    reconcile_interval_seconds: int = 0

    # HTTP
    cors_origins: List[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path("./data/logs")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("ledger_timeout_seconds", "content_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v

    @field_validator("max_update_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_update_retries must be >= 1")
        return v

    @field_validator("preview_page_count", "reconcile_interval_seconds", "upload_max_bytes")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value must be non-negative")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
