# stratum/models/settings.py

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient provider errors."""

    attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.5, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)


class EngineSettings(BaseSettings):
    """
    Pydantic settings for a stratum run.
    By default, these fields map to environment variables prefixed with `STRATUM_`.
    For example, `STRATUM_PARALLELISM`, `STRATUM_STATE_PATH`, etc.
    CLI flags take precedence over anything set here.
    """

    model_config = SettingsConfigDict(env_prefix="STRATUM_")

    state_path: str = "stratum.state.json"
    provider: str = "local"
    provider_path: str = ".stratum/provider.json"
    parallelism: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)
    refresh: bool = True
    lock: bool = True
    log_level: str = "WARNING"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )
