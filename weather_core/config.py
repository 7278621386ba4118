from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App
    app_name: str = "weather-core"
    log_level: str = "INFO"

    # Provider
    openweather_api_key: str
    openweather_base_url: str = "https://api.openweathermap.org/data/2.5"
    openweather_timeout_seconds: float = 5.0

    # Cache slot storage
    cache_backend: Literal["memory", "file", "redis"] = "redis"
    cache_path: str = ".weather_cache.json"
    redis_url: str = "redis://localhost:6379/0"
    cache_key: str = "weather_cache:slot"

    # Cache tuning
    cache_ttl_ms: int = 10 * 60 * 1000
    cache_coord_round_decimals: int = 2

    # Upstream rate limit (free tier allows 60 calls/minute)
    rate_limit_max_requests: int = 55
    rate_limit_window_ms: int = 60_000


settings = Settings()
