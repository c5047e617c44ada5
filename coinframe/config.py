"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coinframe.models import SubjectSelector


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Redis Configuration
    # ===================
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection string. Falls back to an in-process store when unset",
    )
    redis_pool_size: int = Field(default=10, ge=1, le=200)
    redis_socket_timeout: float = Field(default=5.0, gt=0)

    # ===================
    # CoinGecko Configuration
    # ===================
    coingecko_api_base: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="CoinGecko REST API base URL"
    )
    coingecko_api_key: Optional[str] = Field(default=None, description="CoinGecko pro API key")
    coingecko_demo_api_key: Optional[str] = Field(default=None, description="CoinGecko demo API key")
    upstream_timeout: float = Field(default=30.0, gt=0)
    upstream_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per CoinGecko request when rate limited (1 disables retry)"
    )

    # ===================
    # Subject Selection
    # ===================
    app_mode: Literal["exact", "random"] = Field(
        default="exact",
        description="exact: always serve exact_coingecko_id. random: pick from random_coin_category"
    )
    exact_coingecko_id: str = Field(default="higher")
    random_coin_category: str = Field(
        default="base-meme-coins",
        description="CoinGecko category slug; empty means the full /coins/list pool"
    )
    chart_days: int = Field(default=30, ge=1, le=365)

    # ===================
    # Cache / Refresh Coordination
    # ===================
    cache_key_prefix: str = Field(default="coinframe", min_length=1)
    cache_ttl_payload: int = Field(default=300, ge=1, description="Payload TTL in seconds")
    lock_ttl: int = Field(default=10, ge=1, description="Refresh lock TTL in seconds")
    refresh_retry_delay: float = Field(default=0.5, gt=0, description="First WAIT poll delay in seconds")
    refresh_retry_budget: int = Field(default=10, ge=1, le=1000)
    refresh_retry_backoff: float = Field(
        default=1.0,
        ge=1.0,
        description="Delay multiplier per poll (1.0 = fixed delay)"
    )
    refresh_retry_max_delay: float = Field(default=5.0, gt=0)

    # ===================
    # Web
    # ===================
    public_base_url: str = Field(default="", description="Absolute base URL used in frame meta tags")

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is one the logging module knows."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_ttls(self) -> "Settings":
        """A lock must expire well before the entry it protects."""
        if self.lock_ttl >= self.cache_ttl_payload:
            raise ValueError("lock_ttl must be shorter than cache_ttl_payload")
        return self

    @property
    def coingecko_key(self) -> Optional[str]:
        """Demo key wins over the pro key when both are set."""
        return self.coingecko_demo_api_key or self.coingecko_api_key

    def coingecko_headers(self) -> dict[str, str]:
        """Build request headers for CoinGecko."""
        headers = {"accept": "application/json"}
        key = self.coingecko_key
        if key:
            name = "x-cg-demo-api-key" if self.coingecko_demo_api_key else "x-cg-pro-api-key"
            headers[name] = key
        return headers

    def default_selector(self) -> SubjectSelector:
        """Selector for the configured app mode."""
        if self.app_mode == "random":
            return SubjectSelector(
                mode="random",
                category=self.random_coin_category,
                chart_days=self.chart_days,
            )
        return SubjectSelector(
            mode="exact",
            coin_id=self.exact_coingecko_id,
            chart_days=self.chart_days,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
