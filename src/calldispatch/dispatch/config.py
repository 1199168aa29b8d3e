"""
Dispatch engine configuration.

Tick cadences, the global concurrency budget and the retry policy are all
configuration so the engine can be driven tick-by-tick in tests.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from calldispatch.providers.models import ProviderKind


class DispatchConfig(BaseSettings):
    """Dispatch engine configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Concurrency
    global_concurrency_limit: int = Field(default=20, ge=1, le=1000)

    # Tick cadences
    dispatch_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    probe_interval_seconds: float = Field(default=60.0, gt=0, le=3600)
    promotion_interval_seconds: float = Field(default=30.0, gt=0, le=3600)
    stall_sweep_interval_seconds: float = Field(default=300.0, gt=0, le=86400)
    resource_sync_interval_seconds: float = Field(default=3600.0, gt=0, le=86400)

    # Retry and stall policy
    max_retries: int = Field(default=3, ge=0, le=20)
    retry_base_delay_seconds: int = Field(default=60, ge=0, le=86400)
    stall_timeout_minutes: int = Field(default=30, ge=1, le=1440)
    stall_sweep_batch_size: int = Field(default=100, ge=1, le=10000)

    # Outbound timeouts
    initiation_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    probe_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    resource_sync_timeout_seconds: float = Field(default=30.0, gt=0, le=600)

    # Public base URL providers post call events to
    webhook_base_url: str = Field(default="http://localhost:8000")

    def callback_url(self, kind: ProviderKind) -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}/webhooks/calls/{kind.value}"


@lru_cache(maxsize=1)
def get_dispatch_config() -> DispatchConfig:
    return DispatchConfig()
