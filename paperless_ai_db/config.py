# paperless_ai_db/config.py
import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/paperless_ai")
    db_echo: bool = Field(False)

    # Transactions (seconds)
    transaction_max_wait: float = Field(2.0)
    transaction_timeout: float = Field(5.0)

    # Secrets
    encryption_key: Optional[str] = Field(None)

    # Bootstrap
    admin_username: str = Field("admin")
    admin_initial_password: Optional[str] = Field(None)

    # Processing queue bookkeeping
    queue_retry_delay_minutes: int = Field(5)
    queue_stuck_after_minutes: int = Field(10)

    log_level: str = Field("INFO")

    # Prometheus
    prometheus_enabled: bool = Field(True)

    # Pydantic v2 config
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("log_level", mode="before")
    def _normalize_log_level(cls, v):
        if v is None:
            return "INFO"
        return str(v).strip().upper()

    @field_validator("transaction_max_wait", "transaction_timeout", mode="before")
    def _validate_positive_seconds(cls, v):
        """
        Accepts the env value as string or number and ensures it's positive.
        """
        if isinstance(v, str):
            v = float(v.strip())
        if v is None or v <= 0:
            raise ValueError("transaction timeouts must be positive numbers of seconds")
        return v

    @field_validator("encryption_key", "admin_initial_password", mode="before")
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the package loggers."""
    logging.getLogger("paperless_ai_db").setLevel(level or settings.log_level)
