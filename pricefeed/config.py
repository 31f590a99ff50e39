"""Centralized configuration via pydantic-settings, loaded from .env."""

from __future__ import annotations

import functools

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Infrastructure ─────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"
    service_name: str = "pricefeed"
    log_level: str = "INFO"

    # ── Circuit breaker (symbol blacklist) ─────────────────────────────
    blacklist_max_failures: int = 3
    blacklist_cooldown_days: int = 7

    # ── Cache TTLs (seconds) ───────────────────────────────────────────
    cache_ttl_us_stock: int = 3600
    cache_ttl_jp_stock: int = 3600
    cache_ttl_mutual_fund: int = 10800
    cache_ttl_exchange_rate: int = 21600
    blacklisted_cache_ttl: int = 600
    fallback_cache_ttl: int = 300

    # ── Retry / pacing ─────────────────────────────────────────────────
    retry_max_retries: int = 2
    retry_base_delay: float = 0.3
    retry_max_delay: float = 10.0
    source_delay: float = 0.2
    batch_size: int = 10
    batch_delay: float = 0.5
    rate_limit_delay: float = 0.5

    # ── Source timeouts (seconds) ──────────────────────────────────────
    yahoo_api_timeout: float = 10.0
    us_stock_scraping_timeout: float = 20.0
    jp_stock_scraping_timeout: float = 30.0
    mutual_fund_timeout: float = 30.0
    exchange_rate_timeout: float = 5.0

    # ── Defaults ───────────────────────────────────────────────────────
    default_exchange_rate: float = 148.5
    default_us_stock_price: float = 100.0
    default_jp_stock_price: float = 2500.0
    default_mutual_fund_price: float = 10000.0

    # ── Snapshot fallback dataset ──────────────────────────────────────
    snapshot_base_url: str = (
        "https://raw.githubusercontent.com/portfolio-manager-team/market-data-fallbacks/main"
    )
    snapshot_refresh_seconds: int = 3600
    snapshot_local_dir: str = ""
    failure_log_ttl_seconds: int = 30 * 86400

    # ── Alerts ─────────────────────────────────────────────────────────
    alert_webhook_url: str = ""
    alert_sample_rate: float = 0.1
    alert_throttle_minutes: int = 30

    def cache_ttl_for(self, data_type: str) -> int:
        """Normal cache TTL for a data type (``us-stock`` → ``cache_ttl_us_stock``)."""
        attr = "cache_ttl_" + str(data_type).replace("-", "_")
        return int(getattr(self, attr, self.cache_ttl_us_stock))


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton accessor for the global settings."""
    return Settings()
