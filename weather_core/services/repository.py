import asyncio
import json
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from weather_core.errors import LocationPermissionDenied, ProviderUnavailable, RateLimitExceeded, UpstreamError
from weather_core.services.cache import WeatherCache
from weather_core.services.fingerprint import COORD_DECIMALS, city_fingerprint, coords_fingerprint
from weather_core.services.location import LocationResolver
from weather_core.services.openweather import OpenWeatherClient
from weather_core.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class WeatherResult:
    payload: Dict[str, Any]
    fingerprint: str
    from_cache: bool = False
    stale: bool = False
    age_seconds: Optional[int] = None


@dataclass
class CompleteWeatherResult:
    current: WeatherResult
    forecast: Optional[Dict[str, Any]] = None
    air_pollution: Optional[Dict[str, Any]] = None


class WeatherRepository:
    """Cache-first access to current weather.

    All cache traffic goes through one ``asyncio.Lock``, which gives the
    single-slot cache the serialized access it needs.
    """

    def __init__(
        self,
        cache: WeatherCache,
        client: OpenWeatherClient,
        rate_limiter: Optional[RateLimiter] = None,
        coord_decimals: int = COORD_DECIMALS,
    ):
        self.cache = cache
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.coord_decimals = coord_decimals
        self._lock = asyncio.Lock()

    async def get_weather_by_city(self, city: str, units: str = "metric") -> WeatherResult:
        key = city_fingerprint(city, units)
        return await self._cached_fetch(key, lambda: self.client.get_current_by_city(city, units))

    async def get_weather_by_coords(self, lat: float, lon: float, units: str = "metric") -> WeatherResult:
        key = coords_fingerprint(lat, lon, units, self.coord_decimals)
        return await self._cached_fetch(key, lambda: self.client.get_current_by_coords(lat, lon, units))

    async def force_refresh(self, city: str, units: str = "metric") -> WeatherResult:
        key = city_fingerprint(city, units)
        async with self._lock:
            return await self._fetch_and_store(key, lambda: self.client.get_current_by_city(city, units))

    async def get_complete_weather_by_city(self, city: str, units: str = "metric") -> CompleteWeatherResult:
        """Current weather for ``city`` plus its forecast and air quality.

        Only the current conditions are required and they go through the
        cache as usual. The forecast and air quality are fetched side by side
        afterwards, are never cached, and come back as ``None`` when the
        provider cannot supply them. Air quality needs the coordinates from
        the current payload and is skipped when they are missing.
        """
        current = await self.get_weather_by_city(city, units)
        coord = current.payload.get("coord") or {}
        lat, lon = coord.get("lat"), coord.get("lon")
        air_fetch = None
        if lat is not None and lon is not None:
            air_fetch = partial(self.client.get_air_pollution, lat, lon)
        return await self._complete(current, lambda: self.client.get_forecast_by_city(city, units), air_fetch)

    async def get_complete_weather_by_coords(
        self, lat: float, lon: float, units: str = "metric"
    ) -> CompleteWeatherResult:
        current = await self.get_weather_by_coords(lat, lon, units)
        return await self._complete(
            current,
            lambda: self.client.get_forecast_by_coords(lat, lon, units),
            lambda: self.client.get_air_pollution(lat, lon),
        )

    async def get_weather_for_device(
        self, resolver: LocationResolver, units: str = "metric", default_city: str = "Phnom Penh"
    ) -> WeatherResult:
        """Weather at the device position, or at ``default_city`` when it is unknown."""
        try:
            fix = await resolver.get_best_location()
        except LocationPermissionDenied:
            logger.info("No location permission, using default city %s", default_city)
            return await self.get_weather_by_city(default_city, units)
        if fix is None:
            logger.info("Device location unavailable, using default city %s", default_city)
            return await self.get_weather_by_city(default_city, units)
        return await self.get_weather_by_coords(fix.latitude, fix.longitude, units)

    async def _cached_fetch(self, key: str, fetch: Callable[[], Awaitable[str]]) -> WeatherResult:
        async with self._lock:
            entry = await self.cache.get_entry(key)
            if entry is not None:
                logger.debug("Cache hit for %s", key)
                return self._result(key, entry.payload, from_cache=True, stored_at=entry.stored_at)

            try:
                return await self._fetch_and_store(key, fetch)
            except (ProviderUnavailable, RateLimitExceeded) as exc:
                stale = await self.cache.get_entry(key, allow_stale=True)
                if stale is None:
                    raise
                logger.warning("Serving stale data for %s: %s", key, exc.detail)
                return self._result(key, stale.payload, from_cache=True, stale=True, stored_at=stale.stored_at)

    async def _fetch_and_store(self, key: str, fetch: Callable[[], Awaitable[str]]) -> WeatherResult:
        if not self.rate_limiter.can_make_request():
            wait_ms = self.rate_limiter.wait_time_ms()
            raise RateLimitExceeded(f"Rate limit exceeded, retry in {wait_ms // 1000 + 1}s")
        self.rate_limiter.record_request()

        raw = await fetch()
        await self.cache.put(key, raw)
        logger.info("Fetched fresh weather for %s", key)
        return self._result(key, raw, from_cache=False)

    async def _complete(
        self,
        current: WeatherResult,
        forecast_fetch: Callable[[], Awaitable[str]],
        air_fetch: Optional[Callable[[], Awaitable[str]]],
    ) -> CompleteWeatherResult:
        forecast, air_pollution = await asyncio.gather(
            self._optional("forecast", forecast_fetch),
            self._optional("air pollution", air_fetch),
        )
        return CompleteWeatherResult(current=current, forecast=forecast, air_pollution=air_pollution)

    async def _optional(self, what: str, fetch: Optional[Callable[[], Awaitable[str]]]) -> Optional[Dict[str, Any]]:
        if fetch is None:
            return None
        if not self.rate_limiter.can_make_request():
            logger.info("Rate limit reached, skipping %s", what)
            return None
        self.rate_limiter.record_request()
        try:
            raw = await fetch()
        except UpstreamError as exc:
            logger.warning("Failed to fetch %s: %s", what, exc.detail)
            return None
        return _decode(what, raw)

    def _result(
        self, key: str, raw: str, *, from_cache: bool, stale: bool = False, stored_at: Optional[int] = None
    ) -> WeatherResult:
        payload = _decode(key, raw)
        if payload is None:
            payload = {}
        age = None
        if stored_at is not None:
            age = max(0, self.cache.now_ms() - stored_at) // 1000
        return WeatherResult(payload=payload, fingerprint=key, from_cache=from_cache, stale=stale, age_seconds=age)


def _decode(what: str, raw: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("Payload for %s is not a JSON object", what)
        return None
    return payload
