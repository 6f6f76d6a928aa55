"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from arkcore.constants import DEFAULT_DUST_AMOUNT
from arkcore.models import NetworkType
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WatcherConfig(BaseModel):
    """Contract watcher timing."""

    failsafe_poll_interval: float = Field(
        default=60.0, gt=0, description="Seconds between full polls of watched scripts"
    )
    reconnect_delay: float = Field(default=1.0, gt=0, description="First reconnect delay")
    max_reconnect_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(
        default=0, ge=0, description="Give up after this many attempts, 0 = unlimited"
    )

    @model_validator(mode="after")
    def check_delays(self) -> WatcherConfig:
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError("max_reconnect_delay must be >= reconnect_delay")
        return self

    def backoff(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.reconnect_delay * 2 ** (attempt - 1), self.max_reconnect_delay)


class SweeperConfig(BaseModel):
    """Contract sweeper settings."""

    enabled: bool = False
    poll_interval: float = Field(
        default=60.0, gt=0, description="Seconds between sweep checks"
    )
    min_sweep_value: int = Field(
        default=1_000, ge=0, description="Skip sweeps worth less than this many sats"
    )
    max_vtxos_per_sweep: int = Field(default=50, ge=1)
    # One sweep for all contracts instead of one per contract
    batch_sweeps: bool = True


class SettlementConfig(BaseModel):
    """Batch settlement and renewal settings."""

    renewal_threshold: int = Field(
        default=3 * 24 * 60 * 60,
        gt=0,
        description="Renew VTXOs expiring within this many seconds",
    )
    default_dust: int = Field(
        default=DEFAULT_DUST_AMOUNT, ge=0, description="Used when the server reports none"
    )


class ArkSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server_url: str = "http://localhost:7070"
    # Defaults to server_url
    indexer_url: str | None = None
    network: NetworkType = NetworkType.REGTEST
    request_timeout: float = Field(default=60.0, gt=0)

    log_level: str = "INFO"

    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)

    @property
    def effective_indexer_url(self) -> str:
        return self.indexer_url or self.server_url


def get_settings() -> ArkSettings:
    return ArkSettings()
