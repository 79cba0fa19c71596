from functools import lru_cache

from pydantic import PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict

from turnstile.core.cache.factory import CacheType
from turnstile.core.models import LimitDefaults, StrategyType


class Settings(BaseSettings):
    app_name: str = "Turnstile API"

    database_url: str = "sqlite+aiosqlite:///./turnstile.db"
    database_auto_create: bool = True
    redis_url: str | None = None

    rate_limit_strategy: StrategyType = StrategyType.SLIDING_WINDOW
    rate_limit_max_requests: PositiveInt = 100
    rate_limit_window_ms: PositiveInt = 60_000
    # Gate ceilings by API key tier instead of rate_limit_max_requests
    rate_limit_tiers_enabled: bool = False

    rate_limit_cache_type: CacheType = CacheType.AUTO
    rate_limit_cache_max_entries: PositiveInt = 10_000
    rate_limit_cache_key_prefix: str = "ratelimit:"

    rate_limit_cleanup_enabled: bool = True
    rate_limit_cleanup_interval_ms: PositiveInt = 300_000

    rate_limit_api_enabled: bool = True
    rate_limit_api_prefix: str = "/rate-limit"

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def limit_defaults(self) -> LimitDefaults:
        return LimitDefaults(
            window_ms=self.rate_limit_window_ms,
            max_requests=self.rate_limit_max_requests,
            strategy=self.rate_limit_strategy,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
